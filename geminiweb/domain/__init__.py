"""Domain layer - value objects, models and errors."""

from .errors import (
    AuthRequiredError,
    BusyError,
    CancelledError,
    ClosedError,
    ConfigurationError,
    DomainError,
    ImmutableError,
    NotFoundError,
    ParseError,
    ProtocolError,
    RateLimitedError,
    StorageError,
    TooLargeError,
    TransientError,
    UnsupportedError,
    ValidationError,
)
from .tokens import ContinuationTokens

__all__ = [
    "DomainError",
    "AuthRequiredError",
    "BusyError",
    "CancelledError",
    "ClosedError",
    "ConfigurationError",
    "ImmutableError",
    "NotFoundError",
    "ParseError",
    "ProtocolError",
    "RateLimitedError",
    "StorageError",
    "TooLargeError",
    "TransientError",
    "UnsupportedError",
    "ValidationError",
    "ContinuationTokens",
]
