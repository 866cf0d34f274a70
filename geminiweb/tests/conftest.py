"""Shared fixtures: temporary config root, history store and a scripted backend."""

import threading
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from geminiweb.domain.model_catalog import ModelTag
from geminiweb.domain.responses.models import Candidate, ModelOutput
from geminiweb.domain.tokens import ContinuationTokens
from geminiweb.interfaces.backend import RPCEntry
from geminiweb.modules.chat_history.store import HistoryStore
from geminiweb.modules.parser.envelope import encode_envelope


def make_envelope(
    text: str = "Hello!",
    cid: str = "c_1",
    rid: str = "r_1",
    rcid: str = "rc_1",
    extra_candidates: Sequence[Candidate] = (),
    thoughts: Optional[str] = None,
) -> str:
    """Wire body for a response with one primary candidate."""
    candidates = [Candidate(rcid=rcid, text=text, thoughts=thoughts), *extra_candidates]
    return encode_envelope(ModelOutput(candidates=candidates), ContinuationTokens(cid, rid, rcid))


class ScriptedBackend:
    """In-memory ``ChatBackend``.

    ``replies`` is consumed one item per ``generate`` call; an exception
    instance is raised instead of returned, a callable is invoked with the
    payload. ``rpc_data`` maps an RPC identifier to the payload string
    ``execute`` answers with. ``images`` maps a URL to the
    ``(body, content_type)`` pair (or exception) ``fetch_image`` answers with.
    """

    def __init__(self, replies: Optional[List[Union[str, Exception, Callable]]] = None):
        self.replies = list(replies or [])
        self.payloads: List[str] = []
        self.models: List[ModelTag] = []
        self.batches: List[List[RPCEntry]] = []
        self.rpc_data: Dict[str, str] = {}
        self.uploads: List[tuple] = []
        self.images: Dict[str, Union[tuple, Exception]] = {}
        self.fetched: List[str] = []
        self.refreshes = 0

    def generate(self, payload, model=ModelTag.UNSPECIFIED, cancel_event: Optional[threading.Event] = None):
        self.payloads.append(payload)
        self.models.append(model)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(payload)
        return reply

    def execute(self, batch, cancel_event=None):
        self.batches.append(list(batch))
        return [self.rpc_data.get(entry.identifier, "") for entry in batch]

    def upload_file(self, data, filename, mime_type):
        self.uploads.append(("file", filename, mime_type, len(data)))
        return f"/contrib_service/file_{len(self.uploads)}"

    def upload_image(self, data, filename, mime_type):
        self.uploads.append(("image", filename, mime_type, len(data)))
        return f"/contrib_service/image_{len(self.uploads)}"

    def fetch_image(self, url, cancel_event=None):
        self.fetched.append(url)
        reply = self.images[url]
        if isinstance(reply, Exception):
            raise reply
        return reply

    def refresh_auth(self):
        self.refreshes += 1
        return False

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


@pytest.fixture
def home(tmp_path, monkeypatch):
    """Isolated config root exported through GEMINIWEB_HOME."""
    root = tmp_path / "geminiweb-home"
    root.mkdir()
    monkeypatch.setenv("GEMINIWEB_HOME", str(root))
    return root


@pytest.fixture
def store(tmp_path) -> HistoryStore:
    return HistoryStore(tmp_path / "history")


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()
