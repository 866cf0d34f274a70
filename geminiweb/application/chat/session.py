"""Conversation state machine driving one server-side thread."""

import logging
import threading
from enum import Enum
from typing import Optional, Sequence, Tuple, Union

from geminiweb.core.log_sanitizer import describe_text
from geminiweb.domain.attachments import UploadedFile
from geminiweb.domain.conversations.models import MessageRole
from geminiweb.domain.errors import (
    BusyError,
    CancelledError,
    ClosedError,
    DomainError,
    ValidationError,
)
from geminiweb.domain.model_catalog import ModelTag
from geminiweb.domain.responses.models import ModelOutput
from geminiweb.domain.tokens import ContinuationTokens
from geminiweb.interfaces.backend import ChatBackend
from geminiweb.modules.chat_history.store import HistoryStore
from geminiweb.modules.parser.envelope import parse_response
from geminiweb.modules.transport.payloads import build_generate_payload

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""
    IDLE = "idle"
    SENDING = "sending"
    CLOSED = "closed"


def _as_model(model: Union[ModelTag, str, None]) -> ModelTag:
    if isinstance(model, ModelTag):
        return model
    return ModelTag.parse(model or "")


class ChatSession:
    """
    Single conversation exposed to the UI.

    At most one ``send`` runs at a time; a concurrent call fails with
    ``BusyError`` instead of queueing. Failures return the session to idle
    with its tokens unchanged. When a history store is bound, the user turn
    is written before dispatch and the assistant turn after the tokens have
    been merged.
    """

    def __init__(
        self,
        backend: ChatBackend,
        store: Optional[HistoryStore] = None,
        conversation_id: Optional[str] = None,
        model: Union[ModelTag, str, None] = ModelTag.UNSPECIFIED,
        gem_id: Optional[str] = None,
        tokens: Optional[ContinuationTokens] = None,
    ):
        self.backend = backend
        self.store = store
        self._conversation_id = conversation_id
        self._model = _as_model(model)
        self._gem_id = gem_id or None
        self._tokens = tokens or ContinuationTokens()
        self._last_output: Optional[ModelOutput] = None
        self._state = SessionState.IDLE
        self._lock = threading.Lock()

    @classmethod
    def restore(cls, backend: ChatBackend, store: HistoryStore, conversation_id: str) -> "ChatSession":
        """Rebuild a session from a stored conversation."""
        conversation = store.get(conversation_id)
        model = ModelTag.parse(conversation.model) if conversation.model else ModelTag.UNSPECIFIED
        session = cls(
            backend,
            store=store,
            conversation_id=conversation.id,
            model=model,
            gem_id=conversation.gem_id,
        )
        session.set_metadata(*conversation.tokens.as_list())
        logger.info(
            "Restored session for %s (%d messages, new_thread=%s)",
            conversation.id, len(conversation.messages), conversation.tokens.is_new(),
        )
        return session

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def model(self) -> ModelTag:
        with self._lock:
            return self._model

    @property
    def gem_id(self) -> Optional[str]:
        with self._lock:
            return self._gem_id

    @property
    def conversation_id(self) -> Optional[str]:
        with self._lock:
            return self._conversation_id

    @property
    def last_output(self) -> Optional[ModelOutput]:
        with self._lock:
            return self._last_output

    @property
    def tokens(self) -> ContinuationTokens:
        with self._lock:
            return self._tokens

    def metadata(self) -> Tuple[str, str, str]:
        with self._lock:
            return self._tokens.cid, self._tokens.rid, self._tokens.rcid

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_metadata(self, cid: str = "", rid: str = "", rcid: str = "") -> None:
        """Restore the continuation triple verbatim (used when resuming)."""
        with self._lock:
            self._ensure_open()
            self._tokens = ContinuationTokens(cid or "", rid or "", rcid or "")

    def set_model(self, model: Union[ModelTag, str]) -> None:
        """Switch the model for subsequent turns; the thread tokens are kept."""
        tag = _as_model(model)
        with self._lock:
            self._ensure_open()
            self._model = tag
            conversation_id = self._conversation_id
        if self.store is not None and conversation_id:
            self.store.update_binding(conversation_id, model=tag.value)
        logger.info("Session model set to %s", tag.value)

    def set_gem(self, gem_id: Optional[str]) -> None:
        """Bind (or with ``None`` unbind) the persona for subsequent turns."""
        with self._lock:
            self._ensure_open()
            self._gem_id = gem_id or None
            conversation_id = self._conversation_id
        if self.store is not None and conversation_id:
            self.store.update_binding(conversation_id, gem_id=gem_id or None)
        logger.info("Session gem set to %s", gem_id or "none")

    def _ensure_open(self) -> None:
        if self._state is SessionState.CLOSED:
            raise ClosedError("Session is closed")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def send(
        self,
        prompt: str,
        attachments: Sequence[UploadedFile] = (),
        override_model: Union[ModelTag, str, None] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ModelOutput:
        """Send one user turn and block until the response is parsed.

        Raises:
            ValidationError: empty prompt
            BusyError: another send is in flight
            ClosedError: session was closed
            CancelledError: ``cancel_event`` was set before the response was parsed
            AuthRequiredError, RateLimitedError, TransientError, ProtocolError,
            ParseError: propagated from transport and parser
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt cannot be empty")

        with self._lock:
            self._ensure_open()
            if self._state is SessionState.SENDING:
                raise BusyError("A message is already being sent")
            self._state = SessionState.SENDING
            tokens = self._tokens
            model = _as_model(override_model) if override_model is not None else self._model
            gem_id = self._gem_id

        try:
            conversation_id = self._persist_user_turn(prompt, attachments, model, gem_id)

            payload = build_generate_payload(prompt, tokens, attachments, gem_id)
            logger.info(
                "Sending turn (%s, model=%s, attachments=%d, new_thread=%s)",
                describe_text(prompt), model.value, len(attachments), tokens.is_new(),
            )
            body = self.backend.generate(payload, model, cancel_event)

            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError("Send cancelled before the response was processed")

            parsed = parse_response(body)
            output = parsed.output

            with self._lock:
                self._tokens = self._tokens.merge(parsed.tokens)
                self._last_output = output
                merged = self._tokens

            if self.store is not None and conversation_id:
                self.store.update_tokens(conversation_id, *merged.as_list())
                self.store.append_message(
                    conversation_id,
                    MessageRole.ASSISTANT,
                    output.text,
                    thoughts=output.thoughts,
                    images=[img.to_dict() for img in output.images],
                    candidate_index=output.chosen,
                )
            logger.info(
                "Received response (%s, candidates=%d)",
                describe_text(output.text), len(output.candidates),
            )
            return output

        except DomainError as exc:
            logger.warning("Send failed: kind=%s code=%s", exc.kind, exc.code)
            raise

        finally:
            with self._lock:
                if self._state is SessionState.SENDING:
                    self._state = SessionState.IDLE

    def _persist_user_turn(
        self,
        prompt: str,
        attachments: Sequence[UploadedFile],
        model: ModelTag,
        gem_id: Optional[str],
    ) -> Optional[str]:
        if self.store is None:
            return None
        with self._lock:
            conversation_id = self._conversation_id
        if conversation_id is None:
            conversation = self.store.create(model=model.value, gem_id=gem_id)
            conversation_id = conversation.id
            with self._lock:
                self._conversation_id = conversation_id
        self.store.append_message(
            conversation_id,
            MessageRole.USER,
            prompt,
            attachments=[item.name for item in attachments],
        )
        return conversation_id

    def choose_candidate(self, index: int) -> ModelOutput:
        """Select another candidate of the last response for the thread.

        The session stays busy until the stored rcid and assistant turn are
        rewritten, so a concurrent ``send`` fails with ``BusyError`` instead
        of having its newer turn overwritten.
        """
        with self._lock:
            self._ensure_open()
            if self._state is SessionState.SENDING:
                raise BusyError("Cannot change candidate while a message is being sent")
            output = self._last_output
            if output is None:
                raise ValidationError("No response to choose a candidate from")
            candidate = output.choose(index)
            self._tokens = self._tokens.merge(ContinuationTokens(rcid=candidate.rcid))
            conversation_id = self._conversation_id
            self._state = SessionState.SENDING

        try:
            if self.store is not None and conversation_id:
                self.store.update_tokens(conversation_id, rcid=candidate.rcid)
                self.store.select_candidate(
                    conversation_id,
                    index,
                    candidate.text,
                    thoughts=candidate.thoughts,
                    images=[img.to_dict() for img in candidate.images],
                )
        finally:
            with self._lock:
                if self._state is SessionState.SENDING:
                    self._state = SessionState.IDLE
        logger.info("Chose candidate %d", index)
        return output

    def close(self) -> None:
        """Idempotent; later sends fail with ``ClosedError``."""
        with self._lock:
            if self._state is SessionState.CLOSED:
                return
            self._state = SessionState.CLOSED
        logger.info("Session closed (%s)", self._conversation_id or "unsaved")
