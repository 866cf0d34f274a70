"""Conversation title derivation."""

import unicodedata
from typing import List

MAX_TITLE_GRAPHEMES = 60
DEFAULT_TITLE = "Untitled"

_ZWJ = "\u200d"


def _extends(char: str) -> bool:
    """True when ``char`` attaches to the preceding character."""
    code = ord(char)
    return (
        unicodedata.combining(char) != 0
        or unicodedata.category(char) in ("Mn", "Me", "Mc")
        or 0xFE00 <= code <= 0xFE0F  # variation selectors
        or 0x1F3FB <= code <= 0x1F3FF  # skin tone modifiers
        or 0xE0020 <= code <= 0xE007F  # tag characters
        or char == _ZWJ
    )


def _is_regional_indicator(char: str) -> bool:
    return 0x1F1E6 <= ord(char) <= 0x1F1FF


def split_graphemes(text: str) -> List[str]:
    """Split ``text`` into user-perceived characters.

    Covers combining marks, emoji modifier and ZWJ sequences, and flag
    pairs, which is what titles need; it is not a full UAX #29 segmenter.
    """
    clusters: List[str] = []
    for char in text:
        if clusters:
            last = clusters[-1]
            if _extends(char) or last.endswith(_ZWJ) or last == "\r" and char == "\n":
                clusters[-1] = last + char
                continue
            if (
                _is_regional_indicator(char)
                and len(last) == 1
                and _is_regional_indicator(last)
            ):
                clusters[-1] = last + char
                continue
        clusters.append(char)
    return clusters


def derive_title(content: str, limit: int = MAX_TITLE_GRAPHEMES) -> str:
    """Title from the first user message: first line, at most ``limit`` graphemes."""
    first_line = content.lstrip().split("\n", 1)[0]
    title = "".join(split_graphemes(first_line)[:limit]).rstrip()
    return title or DEFAULT_TITLE
