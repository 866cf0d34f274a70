"""Domain-level errors and exceptions."""

from typing import Optional


class DomainError(Exception):
    """Base domain error."""

    kind = "Error"
    banner = "request failed"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class ValidationError(DomainError):
    """Caller passed an invalid argument (empty prompt, bad index, role order)."""
    kind = "Validation"
    banner = "invalid request"


class ConfigurationError(DomainError):
    """Configuration or cookie file is missing or invalid."""
    kind = "Configuration"
    banner = "configuration error"


class AuthRequiredError(DomainError):
    """Cookies were rejected or the service redirected to a login page."""
    kind = "AuthRequired"
    banner = "session expired — refresh cookies"


class RateLimitedError(DomainError):
    """The service refused the request because of a usage limit."""

    kind = "RateLimited"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, code)
        self.retry_after = retry_after

    @property
    def banner(self) -> str:
        if self.retry_after:
            return f"rate limited, retry in {int(self.retry_after)}s"
        return "rate limited, try again later"


class TransientError(DomainError):
    """Network failure, 5xx, or the send deadline was exceeded."""
    kind = "Transient"
    banner = "service unavailable, try again"


class ProtocolError(DomainError):
    """Malformed framing or a service-side rejection of the request shape."""
    kind = "Protocol"
    banner = "protocol error"


class PromptTooLongError(ProtocolError):
    """Service error code 3."""
    banner = "prompt too long"


class ModelInconsistentError(ProtocolError):
    """Service error code 1050: the thread was started on another model."""
    banner = "model inconsistent with conversation, start a new chat"


class ModelHeaderInvalidError(ProtocolError):
    """Service error code 1052."""
    banner = "model not available for this account"


class ParseError(DomainError):
    """The response envelope is missing mandatory slots."""
    kind = "ParseError"
    banner = "unexpected response format"


class BusyError(DomainError):
    """A send is already in flight on this session."""
    kind = "Busy"
    banner = "still waiting for the previous response"


class ClosedError(DomainError):
    """The session has been closed."""
    kind = "Closed"
    banner = "session closed"


class NotFoundError(DomainError):
    """Referenced file, conversation or gem does not exist."""
    kind = "NotFound"
    banner = "not found"


class TooLargeError(DomainError):
    """Attachment exceeds the upload size limit."""
    kind = "TooLarge"
    banner = "file too large"


class UnsupportedError(DomainError):
    """Attachment type is not accepted."""
    kind = "Unsupported"
    banner = "unsupported file type"


class ImmutableError(DomainError):
    """Predefined gems cannot be changed."""
    kind = "Immutable"
    banner = "predefined gems are read-only"


class StorageError(DomainError):
    """Local history or config file could not be read or written."""
    kind = "Storage"
    banner = "could not write local history"


class CancelledError(DomainError):
    """The caller cancelled an in-flight request."""
    kind = "Cancelled"
    banner = "request cancelled"
