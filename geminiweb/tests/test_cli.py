"""Tests for the typer command-line interface."""

import json

import pytest
from rich.console import Console
from typer.testing import CliRunner

from geminiweb import chat_cli
from geminiweb.chat_cli import app, main, route_default_command
from geminiweb.domain.conversations.models import MessageRole
from geminiweb.domain.errors import AuthRequiredError, ValidationError
from geminiweb.domain.responses.models import Candidate, ModelOutput, WebImage
from geminiweb.domain.tokens import ContinuationTokens
from geminiweb.infrastructure.shell import ChatShell
from geminiweb.modules.chat_history import HistoryStore
from geminiweb.modules.parser.envelope import encode_envelope
from geminiweb.modules.transport import decode_generate_payload

from .conftest import ScriptedBackend, make_envelope

runner = CliRunner()


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep table cells on one line regardless of the test terminal."""
    monkeypatch.setattr(chat_cli, "console", Console(width=200))


@pytest.fixture
def history(home):
    store = HistoryStore(home / "history")
    for prompt in ("Tide tables", "Bread recipe"):
        conversation = store.create(model="gemini-2.5-flash")
        store.append_message(conversation.id, MessageRole.USER, prompt)
        store.append_message(conversation.id, MessageRole.ASSISTANT, f"About {prompt.lower()}")
    return store


@pytest.fixture
def scripted_backend(monkeypatch):
    backend = ScriptedBackend()
    backend.rpc_data["system"] = json.dumps([None, None, [["coder", ["Coding partner", "Code help"], [""]]]])
    backend.rpc_data["custom"] = json.dumps([None, None, [["g-1", ["Pirate", "Arr"], ["Talk like a pirate"]]]])
    monkeypatch.setattr(chat_cli, "build_backend", lambda manager: backend)
    return backend


class TestHistoryCommands:

    def test_list(self, history):
        result = runner.invoke(app, ["history", "list"])
        assert result.exit_code == 0, result.output
        assert "Bread recipe" in result.output
        assert "Tide tables" in result.output

    def test_list_search(self, history):
        result = runner.invoke(app, ["history", "list", "--search", "bread"])
        assert result.exit_code == 0, result.output
        assert "Bread recipe" in result.output
        assert "Tide tables" not in result.output

    def test_export_markdown_adds_extension(self, history, tmp_path):
        result = runner.invoke(app, ["history", "export", "@last", str(tmp_path / "latest")])
        assert result.exit_code == 0, result.output
        assert (tmp_path / "latest.md").read_text().startswith("# Bread recipe")

    def test_export_json(self, history, tmp_path):
        target = tmp_path / "tides"
        result = runner.invoke(app, ["history", "export", "tide", str(target), "--format", "json"])
        assert result.exit_code == 0, result.output
        data = json.loads((tmp_path / "tides.json").read_text())
        assert data["title"] == "Tide tables"

    def test_delete(self, history):
        result = runner.invoke(app, ["history", "delete", "bread", "--yes"])
        assert result.exit_code == 0, result.output
        assert [s.title for s in history.list()] == ["Tide tables"]

    def test_list_favorites(self, history):
        tide = history.list()[1]
        history.set_favorite(tide.id, True)

        result = runner.invoke(app, ["history", "list", "--favorites"])

        assert result.exit_code == 0, result.output
        assert "Tide tables" in result.output
        assert "Bread recipe" not in result.output

    def test_show(self, history):
        result = runner.invoke(app, ["history", "show", "tide"])
        assert result.exit_code == 0, result.output
        assert "You › Tide tables" in result.output
        assert "About tide tables" in result.output

    def test_export_to_stdout(self, history):
        result = runner.invoke(app, ["history", "export", "bread", "--format", "json"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["title"] == "Bread recipe"

    def test_rename(self, history):
        result = runner.invoke(app, ["history", "rename", "tide", "  Ocean tides  "])
        assert result.exit_code == 0, result.output
        assert sorted(s.title for s in history.list()) == ["Bread recipe", "Ocean tides"]

    def test_favorite_toggles(self, history):
        assert runner.invoke(app, ["history", "favorite", "bread"]).exit_code == 0
        bread = next(s for s in history.list() if s.title == "Bread recipe")
        assert bread.favorite is True

        result = runner.invoke(app, ["history", "favorite", "bread"])

        assert "removed from favorites" in result.output
        assert history.is_favorite(bread.id) is False

    def test_move_and_swap(self, history):
        assert [s.title for s in history.list()] == ["Bread recipe", "Tide tables"]

        result = runner.invoke(app, ["history", "move", "tide", "1"])
        assert result.exit_code == 0, result.output
        assert [s.title for s in history.list()] == ["Tide tables", "Bread recipe"]

        result = runner.invoke(app, ["history", "swap", "tide", "bread"])
        assert result.exit_code == 0, result.output
        assert [s.title for s in history.list()] == ["Bread recipe", "Tide tables"]

    def test_clear_asks_for_confirmation(self, history):
        result = runner.invoke(app, ["history", "clear"], input="n\n")
        assert "Cancelled" in result.output
        assert len(history.list()) == 2

        result = runner.invoke(app, ["history", "clear", "--yes"])

        assert result.exit_code == 0, result.output
        assert "Deleted 2 conversation(s)" in result.output
        assert history.list() == []

    def test_import(self, history, tmp_path):
        exported = tmp_path / "bread.json"
        exported.write_bytes(history.export_json(history.list()[0].id))

        result = runner.invoke(app, ["history", "import", str(exported)])

        assert result.exit_code == 0, result.output
        titles = [s.title for s in history.list()]
        assert titles.count("Bread recipe") == 2


class TestExitCodes:

    def test_usage_error(self, home):
        assert main(["history", "no-such-command"]) == 3

    def test_conflicting_export_format_is_usage_error(self, history, tmp_path):
        assert main(["history", "export", "tide", str(tmp_path / "t.json"), "--format", "md"]) == 3
        assert not (tmp_path / "t.json").exists()

    def test_prompt_required_for_new_gem(self, home, scripted_backend):
        assert main(["gems", "create", "Poet"]) == 3
        assert scripted_backend.batches == []

    def test_predefined_gem_is_read_only(self, home, scripted_backend):
        assert main(["gems", "delete", "coder", "--yes"]) == 1

    def test_unknown_reference_is_usage_error(self, home):
        assert main(["history", "delete", "conv-missing", "--yes"]) == 3

    def test_missing_cookies_is_failure(self, home):
        assert main(["gems", "list"]) == 1

    def test_auth_required(self, home, monkeypatch):
        def expired(manager):
            raise AuthRequiredError("Access token not found on app page")

        monkeypatch.setattr(chat_cli, "build_backend", expired)
        assert main(["gems", "list"]) == 2

    def test_success(self, history):
        assert main(["history", "list"]) == 0


class TestOtherCommands:

    def test_gems_list(self, home, scripted_backend):
        result = runner.invoke(app, ["gems", "list"])
        assert result.exit_code == 0, result.output
        assert "Pirate" in result.output
        assert "Coding partner" in result.output

    def test_config_show(self, home):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0, result.output
        assert "markdown_style" in result.output

    def test_env_file(self, home, tmp_path, monkeypatch):
        other_home = tmp_path / "other"
        env_file = tmp_path / "test.env"
        env_file.write_text(f"GEMINIWEB_HOME={other_home}\n")

        result = runner.invoke(app, ["--env-file", str(env_file), "config", "show"])

        assert result.exit_code == 0, result.output
        assert chat_cli.cli_state["config"].home == other_home

    def test_import_cookies(self, home, tmp_path):
        export = tmp_path / "browser.json"
        export.write_text(json.dumps([{"name": "__Secure-1PSID", "value": "abc"}]))

        result = runner.invoke(app, ["import-cookies", str(export)])

        assert result.exit_code == 0, result.output
        assert json.loads((home / "cookies.json").read_text())["c1"] == "abc"


class TestChatCommand:

    @pytest.fixture
    def captured(self, monkeypatch):
        seen = {}
        monkeypatch.setattr(ChatShell, "run", lambda shell: seen.update(shell=shell))
        return seen

    def test_resume_with_model_and_gem(self, history, scripted_backend, captured):
        result = runner.invoke(app, ["chat", "-c", "tide", "-m", "gemini-2.5-pro", "-g", "pirate"])

        assert result.exit_code == 0, result.output
        session = captured["shell"].session
        resumed = history.get(session.conversation_id)
        assert resumed.title == "Tide tables"
        assert resumed.model == "gemini-2.5-pro"
        assert resumed.gem_id == "g-1"

    def test_new_chat_uses_configured_default_model(self, home, scripted_backend, captured):
        (home / "config.json").write_text(json.dumps({"default_model": "gemini-3.0-pro"}))

        result = runner.invoke(app, ["chat"])

        assert result.exit_code == 0, result.output
        session = captured["shell"].session
        assert session.conversation_id is None
        assert session.model.value == "gemini-3.0-pro"

    def test_unknown_gem(self, home, scripted_backend, captured):
        assert main(["chat", "-g", "nobody"]) == 3
        assert "shell" not in captured


class TestGemCommands:

    def test_show(self, home, scripted_backend):
        result = runner.invoke(app, ["gems", "show", "pirate"])
        assert result.exit_code == 0, result.output
        assert "g-1" in result.output
        assert "Talk like a pirate" in result.output

    def test_create_with_prompt_file(self, home, scripted_backend, tmp_path):
        prompt_file = tmp_path / "poet.txt"
        prompt_file.write_text("Answer in verse")
        scripted_backend.rpc_data["create"] = json.dumps(["g-new"])

        result = runner.invoke(app, ["gems", "create", "Poet", "-f", str(prompt_file), "-d", "Rhymes"])

        assert result.exit_code == 0, result.output
        assert "g-new" in result.output
        (entry,) = scripted_backend.batches[-1]
        assert json.loads(entry.payload)[0][:3] == ["Poet", "Rhymes", "Answer in verse"]

    def test_update_by_name_keeps_other_fields(self, home, scripted_backend):
        result = runner.invoke(app, ["gems", "update", "pirate", "-p", "Yo ho"])

        assert result.exit_code == 0, result.output
        (entry,) = scripted_backend.batches[-1]
        gem_id, fields = json.loads(entry.payload)
        assert gem_id == "g-1"
        assert fields[:3] == ["Pirate", "Arr", "Yo ho"]

    def test_update_without_changes_is_rejected(self, home, scripted_backend):
        result = runner.invoke(app, ["gems", "update", "pirate"])
        assert isinstance(result.exception, ValidationError)
        assert scripted_backend.batches == []

    def test_delete(self, home, scripted_backend):
        result = runner.invoke(app, ["gems", "delete", "pirate", "--yes"])

        assert result.exit_code == 0, result.output
        (entry,) = scripted_backend.batches[-1]
        assert json.loads(entry.payload) == ["g-1"]


class TestQueryCommand:

    def test_positional_prompt_is_not_saved(self, home, scripted_backend):
        scripted_backend.replies.append(make_envelope("**Tides** follow the moon"))

        result = runner.invoke(app, ["query", "why tides?"])

        assert result.exit_code == 0, result.output
        assert "Tides follow the moon" in result.output
        assert decode_generate_payload(scripted_backend.payloads[0])["prompt"] == "why tides?"
        assert HistoryStore(home / "history").list() == []

    def test_prompt_from_file(self, home, scripted_backend, tmp_path):
        prompt_file = tmp_path / "question.txt"
        prompt_file.write_text("explain tides")
        scripted_backend.replies.append(make_envelope("answer"))

        result = runner.invoke(app, ["query", "-f", str(prompt_file)])

        assert result.exit_code == 0, result.output
        assert decode_generate_payload(scripted_backend.payloads[0])["prompt"] == "explain tides"

    def test_prompt_from_stdin(self, home, scripted_backend):
        scripted_backend.replies.append(make_envelope("answer"))

        result = runner.invoke(app, ["query"], input="piped question\n")

        assert result.exit_code == 0, result.output
        assert decode_generate_payload(scripted_backend.payloads[0])["prompt"].strip() == "piped question"
        assert scripted_backend.uploads == []

    def test_stdin_with_prompt_is_attached(self, home, scripted_backend):
        scripted_backend.replies.append(make_envelope("summary"))

        result = runner.invoke(app, ["query", "summarize this"], input="line one\nline two\n")

        assert result.exit_code == 0, result.output
        assert scripted_backend.uploads == [("file", "stdin.txt", "text/plain", len(b"line one\nline two\n"))]
        sent = decode_generate_payload(scripted_backend.payloads[0])
        assert sent["prompt"] == "summarize this"
        assert sent["files"] == [("/contrib_service/file_1", "stdin.txt")]

    def test_output_file(self, home, scripted_backend, tmp_path):
        scripted_backend.replies.append(make_envelope("saved text"))
        target = tmp_path / "answer.md"

        result = runner.invoke(app, ["query", "hello", "-o", str(target)])

        assert result.exit_code == 0, result.output
        assert target.read_text(encoding="utf-8") == "saved text"
        assert "Response saved to" in result.output

    def test_image_attachment_and_model(self, home, scripted_backend, tmp_path):
        image = tmp_path / "photo.png"
        image.write_bytes(b"\x89PNG\r\n\x1a\n" + b"0" * 16)
        scripted_backend.replies.append(make_envelope("a photo"))

        result = runner.invoke(app, ["query", "what is this?", "-i", str(image), "-m", "gemini-2.5-pro"])

        assert result.exit_code == 0, result.output
        assert scripted_backend.uploads[0][:3] == ("image", "photo.png", "image/png")
        assert scripted_backend.models[0].value == "gemini-2.5-pro"

    def test_download_images(self, home, scripted_backend, tmp_path):
        output = ModelOutput(candidates=[
            Candidate("rc_1", "a cat", web_images=[WebImage("https://example.com/cat.png", title="Cat")])
        ])
        scripted_backend.replies.append(encode_envelope(output, ContinuationTokens("c", "r", "rc_1")))
        scripted_backend.images["https://example.com/cat.png"] = (b"png", "image/png")

        result = runner.invoke(app, ["query", "draw a cat", "--download", str(tmp_path / "pics")])

        assert result.exit_code == 0, result.output
        assert (tmp_path / "pics" / "cat.png").read_bytes() == b"png"

    def test_missing_prompt(self, home, scripted_backend):
        result = runner.invoke(app, ["query"])
        assert isinstance(result.exception, ValidationError)
        assert scripted_backend.payloads == []

    def test_prompt_and_file_are_exclusive(self, home, scripted_backend, tmp_path):
        prompt_file = tmp_path / "q.txt"
        prompt_file.write_text("x")
        result = runner.invoke(app, ["query", "hello", "-f", str(prompt_file)])
        assert isinstance(result.exception, ValidationError)


class TestDefaultCommand:

    @pytest.mark.parametrize("argv, expected", [
        (["what is a tide?"], ["query", "what is a tide?"]),
        (["-v", "hello", "-m", "gemini-2.5-pro"], ["-v", "query", "hello", "-m", "gemini-2.5-pro"]),
        (["--env-file", "x.env", "hello"], ["--env-file", "x.env", "query", "hello"]),
        (["history", "list"], ["history", "list"]),
        (["--env-file", "x.env", "gems", "list"], ["--env-file", "x.env", "gems", "list"]),
        (["import-cookies", "c.json"], ["import-cookies", "c.json"]),
        (["query", "hi"], ["query", "hi"]),
        (["--help"], ["--help"]),
        ([], []),
    ])
    def test_routing(self, argv, expected):
        assert route_default_command(argv) == expected

    def test_piped_input_without_arguments_is_a_query(self):
        assert route_default_command([], stdin_piped=True) == ["query"]
        assert route_default_command(["-v"], stdin_piped=True) == ["-v", "query"]
