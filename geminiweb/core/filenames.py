"""Filesystem-safe names derived from titles and URLs."""

import re

_INVALID_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def sanitize_filename(name: str, fallback: str = "conversation", max_length: int = 200) -> str:
    """Replace characters that are invalid in file names; ``fallback`` when nothing usable is left."""
    result = _INVALID_FILENAME_RE.sub("_", name)
    result = result.strip(" .")[:max_length].rstrip(" .")
    if not result.strip("_"):
        return fallback
    return result
