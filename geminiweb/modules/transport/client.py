"""httpx-based transport for the Gemini web endpoints.

Endpoints:
- Bootstrap: GET /app, extracts the ``SNlM0e`` anti-forgery token
- Generate: POST .../StreamGenerate with form fields ``at`` and ``f.req``
- Batch: POST .../batchexecute with the same form fields
- Upload: POST to the content-push service (multipart)
- Images: GET of web and generated image URLs found in responses

Every call goes through ``_send_with_retry``: transient failures are retried
with exponential backoff, an authentication failure triggers at most one
credential refresh followed by one reissue.
"""

import json
import logging
import re
import threading
import time
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.credentials import CookieSet
from geminiweb.domain.errors import (
    AuthRequiredError,
    CancelledError,
    ProtocolError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from geminiweb.domain.model_catalog import ModelTag
from geminiweb.interfaces.backend import RPCEntry
from geminiweb.modules.parser.envelope import decode_batch
from geminiweb.modules.transport.payloads import build_batch_payload

logger = logging.getLogger(__name__)

ENDPOINT_INIT = "https://gemini.google.com/app"
ENDPOINT_GENERATE = (
    "https://gemini.google.com/_/BardChatUi/data/"
    "assistant.lamda.BardFrontendService/StreamGenerate"
)
ENDPOINT_BATCH = "https://gemini.google.com/_/BardChatUi/data/batchexecute"
ENDPOINT_UPLOAD = "https://content-push.googleapis.com/upload"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded;charset=utf-8"
IMAGE_ACCEPT = "image/webp,image/apng,image/*,*/*;q=0.8"

DEFAULT_HEADERS = {
    "Origin": "https://gemini.google.com",
    "Referer": "https://gemini.google.com/",
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "X-Same-Domain": "1",
}

_ACCESS_TOKEN_RE = re.compile(r'"SNlM0e":"([^"]+)"')
_LOGIN_MARKERS = ("accounts.google.com", "ServiceLogin", "/sorry/")

RefreshCallback = Callable[[], Optional[CookieSet]]


class GeminiTransport:
    """Authenticated request dispatcher.

    Stateless apart from the cookies, the bootstrap token and the refresh
    callback; it knows nothing about conversations.
    """

    def __init__(
        self,
        cookies: CookieSet,
        refresh_callback: Optional[RefreshCallback] = None,
        request_timeout: float = 60.0,
        send_deadline: float = 180.0,
        upload_timeout: float = 120.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        http_transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cookies = cookies
        self._refresh_callback = refresh_callback
        self.request_timeout = request_timeout
        self.send_deadline = send_deadline
        self.upload_timeout = upload_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep
        self._clock = clock
        self._access_token: Optional[str] = None
        self._lock = threading.Lock()
        self._client = httpx.Client(
            headers=DEFAULT_HEADERS,
            follow_redirects=False,
            transport=http_transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "GeminiTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def cookies(self) -> CookieSet:
        with self._lock:
            return self._cookies

    def _cookie_header(self) -> Dict[str, str]:
        return {"Cookie": self.cookies.as_header()}

    def bootstrap(self, timeout: Optional[float] = None) -> str:
        """Fetch the app page and extract the anti-forgery token."""
        try:
            response = self._client.get(
                ENDPOINT_INIT,
                headers=self._cookie_header(),
                timeout=timeout or self.request_timeout,
            )
        except httpx.RequestError as exc:
            logger.warning("Bootstrap request failed: %s", sanitize_for_logging(str(exc)))
            raise TransientError(f"Bootstrap request failed: {exc}") from exc

        self._check_status(response, "bootstrap")
        match = _ACCESS_TOKEN_RE.search(response.text)
        if not match:
            logger.warning("Bootstrap page has no access token; cookies are probably expired")
            raise AuthRequiredError("Access token not found on app page")

        with self._lock:
            self._access_token = match.group(1)
        logger.info("Transport bootstrapped")
        return match.group(1)

    def refresh_auth(self) -> bool:
        """Ask the refresh callback for new cookies and re-bootstrap lazily."""
        if self._refresh_callback is None:
            return False
        try:
            refreshed = self._refresh_callback()
        except Exception as exc:
            logger.warning("Cookie refresh callback failed: %s", sanitize_for_logging(str(exc)))
            return False
        if refreshed is None:
            logger.info("Cookie refresh callback returned no new cookies")
            return False
        with self._lock:
            self._cookies = refreshed
            self._access_token = None
        logger.info("Cookies refreshed; next request will bootstrap again")
        return True

    def _token(self, timeout: float) -> str:
        with self._lock:
            token = self._access_token
        return token or self.bootstrap(timeout)

    # ------------------------------------------------------------------
    # Status and retry handling
    # ------------------------------------------------------------------

    @staticmethod
    def _check_status(response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status in (200, 201):
            return
        if status == 401:
            raise AuthRequiredError(f"{operation}: authentication rejected (401)", code="401")
        if 300 <= status < 400:
            location = response.headers.get("location", "")
            if any(marker in location for marker in _LOGIN_MARKERS):
                raise AuthRequiredError(f"{operation}: redirected to login", code=str(status))
            raise ProtocolError(
                f"{operation}: unexpected redirect to {sanitize_for_logging(location)}",
                code=str(status),
            )
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("retry-after"))
            raise RateLimitedError(
                f"{operation}: rate limited (429)", code="429", retry_after=retry_after
            )
        if status >= 500:
            raise TransientError(f"{operation}: server error ({status})", code=str(status))
        logger.error(
            "%s failed with status %d: %s",
            operation, status, sanitize_for_logging(response.text[:4096]),
        )
        raise ProtocolError(f"{operation}: request failed ({status})", code=str(status))

    def _calculate_backoff_delay(self, attempt_count: int) -> float:
        """Exponential backoff delay before retry number ``attempt_count``."""
        delay = self.backoff_base * (2 ** (attempt_count - 1))
        return min(delay, self.backoff_max)

    def _send_with_retry(
        self,
        operation: str,
        send: Callable[[float], httpx.Response],
        deadline_seconds: float,
        per_attempt_timeout: float,
        cancel_event: Optional[threading.Event] = None,
    ) -> httpx.Response:
        deadline = self._clock() + deadline_seconds
        attempt = 0
        refreshed = False

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError(f"{operation} cancelled")
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise TransientError(f"{operation}: deadline of {deadline_seconds:.0f}s exceeded")

            attempt += 1
            try:
                try:
                    response = send(min(per_attempt_timeout, remaining))
                except httpx.RequestError as exc:
                    raise TransientError(f"{operation}: network error: {exc}") from exc
                if cancel_event is not None and cancel_event.is_set():
                    raise CancelledError(f"{operation} cancelled")
                self._check_status(response, operation)
                return response

            except AuthRequiredError:
                if refreshed or not self.refresh_auth():
                    raise
                refreshed = True
                attempt -= 1
                logger.info("Reissuing %s after credential refresh", operation)

            except TransientError as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "%s failed after %d attempt(s): %s",
                        operation, attempt, sanitize_for_logging(exc.message),
                    )
                    raise
                delay = self._calculate_backoff_delay(attempt)
                logger.info(
                    "%s attempt %d failed (%s); retrying in %.1fs",
                    operation, attempt, sanitize_for_logging(exc.message), delay,
                )
                if cancel_event is not None:
                    if cancel_event.wait(delay):
                        raise CancelledError(f"{operation} cancelled") from exc
                else:
                    self._sleep(delay)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def generate(
        self,
        payload: str,
        model: ModelTag = ModelTag.UNSPECIFIED,
        cancel_event: Optional[threading.Event] = None,
    ) -> str:
        """POST one chat turn and return the raw envelope."""

        def send(timeout: float) -> httpx.Response:
            form = {"at": self._token(timeout), "f.req": payload}
            headers = {"Content-Type": FORM_CONTENT_TYPE, **self._cookie_header(), **model.headers()}
            return self._client.post(ENDPOINT_GENERATE, data=form, headers=headers, timeout=timeout)

        logger.debug("Sending generate request (model=%s, %d payload bytes)", model.value, len(payload))
        response = self._send_with_retry(
            "generate", send, self.send_deadline, self.request_timeout, cancel_event
        )
        return response.text

    def execute(
        self,
        batch: Sequence[RPCEntry],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[str]:
        """Run a batch RPC; results are returned in request order."""
        if not batch:
            raise ValidationError("Batch must contain at least one RPC")
        payload = build_batch_payload(batch)

        def send(timeout: float) -> httpx.Response:
            form = {"at": self._token(timeout), "f.req": payload}
            return self._client.post(
                ENDPOINT_BATCH,
                data=form,
                params={"rpcids": ",".join(entry.rpcid for entry in batch)},
                headers={"Content-Type": FORM_CONTENT_TYPE, **self._cookie_header()},
                timeout=timeout,
            )

        response = self._send_with_retry(
            "batch execute", send, self.send_deadline, self.request_timeout, cancel_event
        )
        return decode_batch(response.text, [entry.identifier for entry in batch])

    def _upload(self, operation: str, data: bytes, filename: str, mime_type: str) -> str:
        upload_id = uuid.uuid4().hex

        def send(timeout: float) -> httpx.Response:
            return self._client.post(
                ENDPOINT_UPLOAD,
                params={"upload_id": upload_id, "upload_protocol": "resumable"},
                files={"file": (filename, data, mime_type)},
                headers={
                    **self._cookie_header(),
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "upload, finalize",
                    "X-Goog-Upload-Offset": "0",
                },
                timeout=timeout,
            )

        response = self._send_with_retry(
            operation, send, self.upload_timeout, self.upload_timeout
        )
        resource_id = _extract_resource_id(response) or upload_id
        logger.info(
            "Uploaded %s (%d bytes, %s)", sanitize_for_logging(filename), len(data), mime_type
        )
        return resource_id

    def upload_file(self, data: bytes, filename: str, mime_type: str) -> str:
        return self._upload("file upload", data, filename, mime_type)

    def upload_image(self, data: bytes, filename: str, mime_type: str) -> str:
        return self._upload("image upload", data, filename, mime_type)

    def fetch_image(self, url: str, cancel_event: Optional[threading.Event] = None) -> Tuple[bytes, str]:
        """GET an image URL from a response; returns the body and its content type."""

        def send(timeout: float) -> httpx.Response:
            return self._client.get(
                url,
                headers={**self._cookie_header(), "Accept": IMAGE_ACCEPT},
                timeout=timeout,
                follow_redirects=True,
            )

        response = self._send_with_retry(
            "image download", send, self.upload_timeout, self.request_timeout, cancel_event
        )
        content_type = response.headers.get("content-type", "")
        if "image" not in content_type:
            raise ProtocolError(
                f"image download: response is not an image ({sanitize_for_logging(content_type)})"
            )
        logger.debug("Downloaded image (%d bytes, %s)", len(response.content), content_type)
        return response.content, content_type


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _extract_resource_id(response: httpx.Response) -> str:
    text = response.text.strip()
    if text:
        try:
            data = json.loads(text)
        except ValueError:
            return text
        if isinstance(data, dict) and data.get("resourceId"):
            return str(data["resourceId"])
    return response.headers.get("x-goog-upload-url", "")
