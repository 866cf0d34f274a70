"""Local conversation history: JSON files with an ordered index."""

from .export import to_json, to_markdown
from .resolver import ConversationResolver
from .store import HistoryStore
from .titles import derive_title

__all__ = [
    "ConversationResolver",
    "HistoryStore",
    "derive_title",
    "to_json",
    "to_markdown",
]
