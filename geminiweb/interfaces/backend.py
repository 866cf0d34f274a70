"""Remote chat backend interface."""

import threading
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, Tuple, runtime_checkable

from geminiweb.domain.model_catalog import ModelTag


@dataclass(frozen=True)
class RPCEntry:
    """One call inside a batch RPC request."""
    rpcid: str
    payload: str
    identifier: str = "generic"

    def serialize(self) -> list:
        return [self.rpcid, self.payload, None, self.identifier]


@runtime_checkable
class ChatBackend(Protocol):
    """
    Port for the remote chat service.

    The session, attachment manager and gem registry only depend on this
    capability set, so tests can substitute a scripted stub for the
    httpx-based transport.
    """

    def generate(
        self,
        payload: str,
        model: ModelTag = ModelTag.UNSPECIFIED,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """
        Send one chat turn.

        Args:
            payload: Serialized ``f.req`` value (prompt, tokens, files, gem)
            model: Model whose routing header is attached
            cancel_event: Set by the caller to abandon the request

        Returns:
            Raw response body for the response parser
        """
        ...

    def execute(
        self,
        batch: Sequence[RPCEntry],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """
        Run a batch of RPCs.

        Returns:
            Payload strings, one per entry, in request order
        """
        ...

    def upload_file(self, data: bytes, filename: str, mime_type: str) -> str:
        """Upload a document and return its server resource id."""
        ...

    def upload_image(self, data: bytes, filename: str, mime_type: str) -> str:
        """Upload an image and return its server resource id."""
        ...

    def fetch_image(self, url: str, cancel_event: Optional[threading.Event] = None) -> Tuple[bytes, str]:
        """Download an image referenced by a response. Returns ``(body, content_type)``."""
        ...

    def refresh_auth(self) -> bool:
        """Re-read credentials and bootstrap again. True when new credentials were applied."""
        ...
