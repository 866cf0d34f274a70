"""Tests for the interactive shell with scripted console input."""

import io
import json
import threading

import pytest
from rich.console import Console

from geminiweb.application.chat import ChatDispatcher, ChatSession
from geminiweb.domain.conversations.models import MessageRole
from geminiweb.domain.errors import ParseError
from geminiweb.domain.responses.models import Candidate, ModelOutput, WebImage
from geminiweb.domain.tokens import ContinuationTokens
from geminiweb.infrastructure.shell import ChatShell
from geminiweb.modules.attachments import AttachmentManager
from geminiweb.modules.downloads import ImageDownloader
from geminiweb.modules.gems import GemRegistry
from geminiweb.modules.parser.envelope import encode_envelope
from geminiweb.modules.transport import decode_generate_payload

from .conftest import ScriptedBackend, make_envelope


@pytest.fixture
def output():
    return io.StringIO()


def make_shell(backend, store, output, inputs=(), downloader=None):
    session = ChatSession(backend, store=store)
    shell = ChatShell(
        session,
        AttachmentManager(backend),
        GemRegistry(backend),
        store,
        ChatDispatcher(max_workers=2),
        console=Console(file=output, width=120, force_terminal=False),
        downloader=downloader,
    )
    pending = list(inputs)

    def scripted_input(prompt=""):
        if not pending:
            raise EOFError
        return pending.pop(0)

    shell.console.input = scripted_input
    return shell


class TestShell:

    def test_send_and_exit(self, store, output):
        backend = ScriptedBackend([make_envelope("**bold** answer")])
        shell = make_shell(backend, store, output, ["hello", "/exit"])

        shell.run()
        shell.dispatcher.shutdown()

        assert "bold answer" in output.getvalue()
        assert shell.session.state.value == "closed"
        assert len(store.list()) == 1

    def test_attachments_are_sent_once_and_cleared(self, store, output, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("data")
        backend = ScriptedBackend([make_envelope("got it"), make_envelope("and again")])
        shell = make_shell(backend, store, output, [f"/file {notes}", "read this", "and now?"])

        shell.run()
        shell.dispatcher.shutdown()

        first, second = (decode_generate_payload(p) for p in backend.payloads)
        assert first["files"] == [("/contrib_service/file_1", "notes.txt")]
        assert second["files"] == []

    def test_failed_send_keeps_pending_attachments(self, store, output, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("data")
        backend = ScriptedBackend([ParseError("broken")])
        shell = make_shell(backend, store, output)

        shell.handle_command(f"/file {notes}")
        assert shell.send("read this") is False
        shell.dispatcher.shutdown()

        assert len(shell.pending) == 1
        assert "unexpected response format" in output.getvalue()

    def test_clear_drops_attachments(self, store, output, tmp_path):
        notes = tmp_path / "notes.txt"
        notes.write_text("data")
        shell = make_shell(ScriptedBackend(), store, output)

        shell.handle_command(f"/file {notes}")
        shell.handle_command("/clear")
        shell.dispatcher.shutdown()

        assert shell.pending == []

    def test_missing_file_shows_banner(self, store, output, tmp_path):
        shell = make_shell(ScriptedBackend(), store, output)
        shell.handle_command(f"/image {tmp_path / 'missing.png'}")
        shell.dispatcher.shutdown()
        assert "not found" in output.getvalue()

    def test_model_and_gem_commands(self, store, output):
        backend = ScriptedBackend()
        backend.rpc_data["custom"] = json.dumps([None, None, [["g-1", ["Pirate", "Arr"], ["Arr"]]]])
        shell = make_shell(backend, store, output)

        shell.handle_command("/model gemini-2.5-pro")
        shell.handle_command("/gem pirate")
        shell.handle_command("/model nonsense")
        shell.dispatcher.shutdown()

        assert shell.session.model.value == "gemini-2.5-pro"
        assert shell.session.gem_id == "g-1"
        assert "invalid request" in output.getvalue()

    def test_export_command(self, store, output, tmp_path):
        backend = ScriptedBackend([make_envelope("answer")])
        shell = make_shell(backend, store, output)
        shell.send("question")

        shell.handle_command(f"/export {tmp_path / 'chat'} -f json")
        shell.dispatcher.shutdown()

        data = json.loads((tmp_path / "chat.json").read_text())
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]

    def test_unknown_command_keeps_running(self, store, output):
        shell = make_shell(ScriptedBackend(), store, output)
        assert shell.handle_command("/dance") is True
        assert shell.handle_command("/EXIT") is False
        shell.dispatcher.shutdown()

    def test_resumed_transcript_renders_history(self, store, output):
        conversation = store.create()
        store.append_message(conversation.id, MessageRole.USER, "lost question")
        store.append_message(conversation.id, MessageRole.USER, "asked again")
        store.append_message(conversation.id, MessageRole.ASSISTANT, "finally answered")
        session = ChatSession.restore(ScriptedBackend(), store, conversation.id)
        shell = make_shell(ScriptedBackend(), store, output)
        shell.session = session

        shell.render_transcript()
        shell.dispatcher.shutdown()

        text = output.getvalue()
        assert "lost question" in text
        assert "finally answered" in text

    def test_history_reference_resumes_conversation(self, store, output):
        conversation = store.create()
        store.append_message(conversation.id, MessageRole.USER, "old question")
        store.append_message(conversation.id, MessageRole.ASSISTANT, "old answer")
        store.update_tokens(conversation.id, "C1", "R1", "RC1")
        backend = ScriptedBackend([make_envelope("next answer", "C1", "R2", "RC2")])
        shell = make_shell(backend, store, output)
        fresh = shell.session

        shell.handle_command("/history 1")
        shell.send("follow up")
        shell.dispatcher.shutdown()

        assert fresh.state.value == "closed"
        assert shell.session.conversation_id == conversation.id
        assert decode_generate_payload(backend.payloads[0])["tokens"] == ContinuationTokens("C1", "R1", "RC1")
        assert "old answer" in output.getvalue()
        assert [m.content for m in store.get(conversation.id).messages][-1] == "next answer"

    def test_unknown_history_reference_keeps_session(self, store, output):
        shell = make_shell(ScriptedBackend(), store, output)
        before = shell.session

        shell.handle_command("/history nothing-like-this")
        shell.dispatcher.shutdown()

        assert shell.session is before
        assert "not found" in output.getvalue().lower()

    def test_export_without_path_uses_title(self, store, output, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        backend = ScriptedBackend([make_envelope("answer")])
        shell = make_shell(backend, store, output)
        shell.send("tide tables")

        shell.handle_command("/export")
        shell.dispatcher.shutdown()

        assert "answer" in (tmp_path / "tide tables.md").read_text(encoding="utf-8")

    def test_commands_do_not_touch_network_or_disk_on_the_ui_thread(self, store, output, monkeypatch, tmp_path):
        ui_thread = threading.current_thread()
        threads = []
        envelope = make_envelope("first", extra_candidates=[Candidate("rc_2", "second")])
        backend = ScriptedBackend([envelope])
        backend.rpc_data["custom"] = json.dumps([None, None, [["g-1", ["Pirate", "Arr"], ["Arr"]]]])
        original_execute = backend.execute

        def recording_execute(batch, cancel_event=None):
            threads.append(("execute", threading.current_thread()))
            return original_execute(batch, cancel_event)

        monkeypatch.setattr(backend, "execute", recording_execute)
        for name in ("get", "update_binding", "update_tokens", "select_candidate"):
            original = getattr(store, name)

            def recording(*args, _name=name, _original=original, **kwargs):
                threads.append((_name, threading.current_thread()))
                return _original(*args, **kwargs)

            monkeypatch.setattr(store, name, recording)

        shell = make_shell(backend, store, output)
        shell.send("question")
        threads.clear()

        shell.handle_command("/gem pirate")
        shell.handle_command("/model gemini-2.5-pro")
        shell.handle_command("/choose 2")
        shell.handle_command(f"/export {tmp_path / 'chat.md'}")
        shell.render_transcript()
        shell.dispatcher.shutdown()

        names = {name for name, _ in threads}
        assert {"execute", "get", "update_binding", "update_tokens", "select_candidate"} <= names
        assert all(thread is not ui_thread for _, thread in threads)
        assert (tmp_path / "chat.md").exists()


class TestDownloadCommand:

    @staticmethod
    def _image_reply():
        output = ModelOutput(candidates=[
            Candidate("rc_1", "here", web_images=[WebImage("https://example.com/cat.png", title="Cat")])
        ])
        return encode_envelope(output, ContinuationTokens("c_1", "r_1", "rc_1"))

    def test_download_saves_images(self, store, output, tmp_path):
        backend = ScriptedBackend([self._image_reply()])
        backend.images["https://example.com/cat.png"] = (b"png", "image/png")
        downloader = ImageDownloader(backend, tmp_path / "images", sleep=lambda _: None)
        shell = make_shell(backend, store, output, downloader=downloader)

        shell.send("show me a cat")
        shell.handle_command("/download")
        shell.dispatcher.shutdown()

        assert (tmp_path / "images" / "cat.png").read_bytes() == b"png"
        assert "Saved" in output.getvalue()

    def test_download_into_given_directory(self, store, output, tmp_path):
        backend = ScriptedBackend([self._image_reply()])
        backend.images["https://example.com/cat.png"] = (b"png", "image/png")
        downloader = ImageDownloader(backend, tmp_path / "images", sleep=lambda _: None)
        shell = make_shell(backend, store, output, downloader=downloader)

        shell.send("show me a cat")
        shell.handle_command(f"/download {tmp_path / 'picked'}")
        shell.dispatcher.shutdown()

        assert (tmp_path / "picked" / "cat.png").exists()

    def test_download_without_images(self, store, output, tmp_path):
        backend = ScriptedBackend([make_envelope("no pictures")])
        downloader = ImageDownloader(backend, tmp_path, sleep=lambda _: None)
        shell = make_shell(backend, store, output, downloader=downloader)

        shell.send("text only")
        shell.handle_command("/download")
        shell.dispatcher.shutdown()

        assert backend.fetched == []
        assert "no images" in output.getvalue()
