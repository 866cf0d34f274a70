"""
Error handling utilities - pure functions mapping exceptions to user output.

The shell shows a one-line banner; the structured kind goes to the log.
"""

import logging
from typing import Tuple

from geminiweb.domain.errors import (
    AuthRequiredError,
    ConfigurationError,
    DomainError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_AUTH_REQUIRED = 2
EXIT_USAGE = 3


def classify_error(error: BaseException) -> Tuple[str, str, int]:
    """
    Classify an exception for display.

    Returns:
        Tuple of (kind, banner, exit_code).

    NOTE: the banner never contains raw server bodies or prompt text.
    """
    if isinstance(error, AuthRequiredError):
        return error.kind, error.banner, EXIT_AUTH_REQUIRED
    if isinstance(error, (ValidationError, NotFoundError)):
        return error.kind, f"{error.banner}: {error.message}", EXIT_USAGE
    if isinstance(error, ConfigurationError):
        return error.kind, f"{error.banner}: {error.message}", EXIT_FAILURE
    if isinstance(error, DomainError):
        return error.kind, error.banner, EXIT_FAILURE
    return "Internal", "unexpected error, see log for details", EXIT_FAILURE


def banner_for(error: BaseException) -> str:
    """Log the structured kind and return the single-line banner."""
    kind, banner, _ = classify_error(error)
    if isinstance(error, DomainError):
        logger.warning("Operation failed: kind=%s code=%s message=%s", kind, error.code, error.message)
    else:
        logger.error("Unexpected error: %s", error, exc_info=error)
    return banner
