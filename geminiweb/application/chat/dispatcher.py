"""Runs blocking engine work on worker threads and reports back through a queue."""

import itertools
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence

from geminiweb.domain.attachments import UploadedFile

logger = logging.getLogger(__name__)


@dataclass
class ChatEvent:
    """Completion notice posted to the UI thread."""
    kind: str  # "response", "upload", "gems", "store"
    request_id: int
    payload: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ChatDispatcher:
    """
    Worker pool in front of the session, attachment manager, gem registry
    and history store.

    The UI thread submits work and drains ``events``; it never blocks on
    network or disk itself.
    """

    def __init__(self, max_workers: int = 4):
        self.events: "queue.Queue[ChatEvent]" = queue.Queue()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="geminiweb")
        self._ids = itertools.count(1)
        self._cancel_lock = threading.Lock()
        self._cancel_event: Optional[threading.Event] = None
        self._stash: Dict[int, ChatEvent] = {}

    def submit(self, kind: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> int:
        """Run ``fn`` on a worker and post a ``ChatEvent`` when it finishes.

        Returns the request id carried by the completion event. Exceptions
        raised by ``fn`` are delivered as the event's ``error``.
        """
        request_id = next(self._ids)

        def run() -> None:
            try:
                result = fn(*args, **kwargs)
            except Exception as exc:
                logger.debug("%s request %d failed: %s", kind, request_id, type(exc).__name__)
                self.events.put(ChatEvent(kind=kind, request_id=request_id, error=exc))
                return
            self.events.put(ChatEvent(kind=kind, request_id=request_id, payload=result))

        self._executor.submit(run)
        return request_id

    def submit_send(
        self,
        session,
        prompt: str,
        attachments: Sequence[UploadedFile] = (),
        override_model=None,
    ) -> int:
        cancel_event = threading.Event()
        with self._cancel_lock:
            self._cancel_event = cancel_event

        def send() -> Any:
            try:
                return session.send(
                    prompt,
                    attachments,
                    override_model=override_model,
                    cancel_event=cancel_event,
                )
            finally:
                with self._cancel_lock:
                    if self._cancel_event is cancel_event:
                        self._cancel_event = None

        return self.submit("response", send)

    def submit_upload(self, manager, path: str, as_image: Optional[bool] = None) -> int:
        return self.submit("upload", manager.upload, path, as_image=as_image)

    def submit_fetch_gems(self, registry, include_hidden: bool = False) -> int:
        return self.submit("gems", registry.fetch, include_hidden)

    def submit_store(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> int:
        return self.submit("store", fn, *args, **kwargs)

    def cancel(self) -> bool:
        """Cancel the in-flight send. Returns False when no send is running."""
        with self._cancel_lock:
            event = self._cancel_event
        if event is None or event.is_set():
            return False
        event.set()
        logger.info("Cancellation requested for in-flight send")
        return True

    def poll(self, timeout: Optional[float] = None) -> Optional[ChatEvent]:
        try:
            return self.events.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait_for(self, request_id: int, poll_interval: float = 0.1) -> ChatEvent:
        """Block until the event for ``request_id`` arrives; other events are kept for later."""
        while True:
            if request_id in self._stash:
                return self._stash.pop(request_id)
            event = self.poll(poll_interval)
            if event is None:
                continue
            if event.request_id == request_id:
                return event
            self._stash[event.request_id] = event

    def shutdown(self, wait: bool = True) -> None:
        """Cancel the pending send, stop the workers and drop undelivered events."""
        self.cancel()
        self._executor.shutdown(wait=wait)
        if self._stash:
            logger.debug("Dropping %d undelivered event(s)", len(self._stash))
        self._stash.clear()
