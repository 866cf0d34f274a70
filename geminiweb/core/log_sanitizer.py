"""
Helpers for keeping user-controlled text out of log formatting.
"""

import re
from typing import Any

_CONTROL_CHARS_RE = re.compile(r'[\x00-\x1f\x7f-\x9f]')
# Matches Unicode line separators (LINE SEPARATOR and PARAGRAPH SEPARATOR)
_UNICODE_NEWLINES_RE = re.compile(r'[\u2028\u2029]')
_STANDARD_NEWLINES_RE = re.compile(r'(\r\n|\r|\n)')

_MAX_LOGGED_CHARS = 200


def sanitize_for_logging(value: Any, max_length: int = _MAX_LOGGED_CHARS) -> str:
    """
    Sanitize a value for safe logging by removing newlines and control characters.

    Prompts, titles, file names and server bodies all flow through here before
    reaching a log record, so a crafted value cannot forge extra log lines or
    inject terminal escape sequences. Long values are truncated.

    Examples:
        >>> sanitize_for_logging("Hello\\nWorld")
        'HelloWorld'
        >>> sanitize_for_logging("Test\\x1b[31mRed\\x1b[0m")
        'Test[31mRed[0m'
        >>> sanitize_for_logging(None)
        ''
    """
    if value is None:
        return ''
    if not isinstance(value, str):
        value = str(value)
    value = _STANDARD_NEWLINES_RE.sub('', value)
    value = _UNICODE_NEWLINES_RE.sub('', value)
    value = _CONTROL_CHARS_RE.sub('', value)
    if max_length and len(value) > max_length:
        value = value[:max_length] + '...'
    return value


def describe_text(value: str) -> str:
    """Loggable summary of message content: its length, never the text."""
    if not value:
        return "len=0"
    return f"len={len(value)}"
