"""Resolve user-supplied conversation references to ids.

Accepted forms:
- ``@last``: first entry of the list (most recent / pinned)
- ``@first``: last entry of the list
- ``3``: 1-based position in the list
- ``conv-...``: exact id
- anything else: unique case-insensitive title substring
"""

from typing import Optional

from geminiweb.domain.errors import NotFoundError, ValidationError

from .store import HistoryStore

ALIASES = {
    "@last": "most recent conversation",
    "@first": "oldest conversation",
}


class ConversationResolver:
    """Turns aliases, indexes, ids and title fragments into conversation ids."""

    def __init__(self, store: HistoryStore):
        self.store = store

    def resolve(self, ref: Optional[str]) -> str:
        ref = (ref or "").strip()
        if not ref:
            raise ValidationError("Empty conversation reference")

        conversations = self.store.list()
        if not conversations:
            raise NotFoundError("No conversations found")

        alias = ref.lower()
        if alias == "@last":
            return conversations[0].id
        if alias == "@first":
            return conversations[-1].id

        if ref.isdigit():
            index = int(ref)
            if not 1 <= index <= len(conversations):
                raise NotFoundError(f"Index {index} out of range (1-{len(conversations)})")
            return conversations[index - 1].id

        if ref.startswith("conv-"):
            if any(c.id == ref for c in conversations):
                return ref
            raise NotFoundError(f"Conversation not found: {ref}")

        matches = [c for c in conversations if alias in c.title.lower()]
        if not matches:
            raise NotFoundError(f"No conversation matching '{ref}'")
        if len(matches) > 1:
            titles = ", ".join(f"'{m.title}'" for m in matches)
            raise ValidationError(
                f"Multiple conversations match '{ref}': {titles}. Use the id or be more specific"
            )
        return matches[0].id
