"""Durable conversation history on the local filesystem.

Layout under the history directory::

    index.json        ordered summaries (id, title, model, updated_at, favorite, order)
    <id>.json         full conversation record

Every mutation rewrites the affected files through ``atomic_write_json``
(temporary sibling, fsync, rename). The conversation file is written before
the index, so a crash in between leaves a readable index that ``list()``
reconciles with the files on disk.

The store assumes a single owning process. Writes from multiple threads of
that process are serialized by an internal lock.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from geminiweb.core.atomic_io import atomic_write_json, read_json
from geminiweb.core.log_sanitizer import sanitize_for_logging
from geminiweb.domain.conversations.models import (
    Conversation,
    ConversationSummary,
    Message,
    MessageRole,
    SearchResult,
    new_conversation_id,
    utc_now,
)
from geminiweb.domain.errors import NotFoundError, StorageError, ValidationError
from geminiweb.domain.tokens import ContinuationTokens

from .export import to_json, to_markdown
from .titles import DEFAULT_TITLE, derive_title

logger = logging.getLogger(__name__)

INDEX_FILE = "index.json"
INDEX_VERSION = 1

_UNSET: Any = object()


class HistoryStore:
    """Owner of the persisted conversation records."""

    def __init__(self, history_dir: Union[str, Path]):
        self.history_dir = Path(history_dir).expanduser()
        self._lock = threading.RLock()
        try:
            self.history_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageError(f"Cannot create history directory {self.history_dir}: {exc}") from exc

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.history_dir / INDEX_FILE

    def _conversation_path(self, conversation_id: str) -> Path:
        if not conversation_id or "/" in conversation_id or "\\" in conversation_id or conversation_id.startswith("."):
            raise ValidationError(f"Invalid conversation id: {conversation_id!r}")
        return self.history_dir / f"{conversation_id}.json"

    def _write(self, path: Path, data: Any) -> None:
        try:
            atomic_write_json(path, data)
        except OSError as exc:
            logger.error("Failed to write %s: %s", path, exc, exc_info=True)
            raise StorageError(f"Failed to write {path.name}: {exc}") from exc

    def _load_conversation(self, conversation_id: str) -> Conversation:
        path = self._conversation_path(conversation_id)
        if not path.exists():
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        try:
            return Conversation.from_dict(read_json(path))
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to read conversation %s: %s", conversation_id, exc, exc_info=True)
            raise StorageError(f"Conversation file is unreadable: {conversation_id}") from exc

    def _save_conversation(self, conversation: Conversation) -> None:
        self._write(self._conversation_path(conversation.id), conversation.to_dict())

    def _load_index(self) -> List[ConversationSummary]:
        if not self.index_path.exists():
            return []
        try:
            data = read_json(self.index_path)
            return [ConversationSummary.from_dict(item) for item in data.get("conversations", [])]
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            logger.warning("History index is unreadable, rebuilding from files: %s", exc)
            return []

    def _save_index(self, entries: List[ConversationSummary]) -> None:
        self._write(
            self.index_path,
            {"version": INDEX_VERSION, "conversations": [e.to_dict() for e in entries]},
        )

    def _conversation_ids_on_disk(self) -> List[str]:
        return sorted(
            p.stem for p in self.history_dir.glob("*.json") if p.name != INDEX_FILE
        )

    def _reconcile(self, entries: List[ConversationSummary]) -> List[ConversationSummary]:
        """Drop index entries without a file; add files the index does not know."""
        on_disk = set(self._conversation_ids_on_disk())
        kept = [e for e in entries if e.id in on_disk]
        known = {e.id for e in kept}
        changed = len(kept) != len(entries)

        next_order = max((e.order for e in kept), default=-1) + 1
        for conversation_id in sorted(on_disk - known):
            try:
                conversation = self._load_conversation(conversation_id)
            except StorageError:
                logger.warning("Skipping unreadable conversation file %s", conversation_id)
                continue
            summary = conversation.summary()
            summary.order = next_order
            next_order += 1
            kept.append(summary)
            changed = True
            logger.info("Re-indexed conversation %s", conversation_id)

        if changed:
            self._save_index(kept)
        return kept

    def _upsert_summary(self, conversation: Conversation) -> None:
        entries = self._load_index()
        summary = conversation.summary()
        for index, entry in enumerate(entries):
            if entry.id == conversation.id:
                summary.favorite = entry.favorite
                summary.order = entry.order
                entries[index] = summary
                break
        else:
            entries.append(summary)
        self._save_index(entries)

    def _overlay_index(self, conversation: Conversation) -> Conversation:
        """Favorite and order are authoritative in the index."""
        for entry in self._load_index():
            if entry.id == conversation.id:
                conversation.favorite = entry.favorite
                conversation.order = entry.order
                break
        return conversation

    @staticmethod
    def _sort_key(entry: ConversationSummary):
        return (entry.order, not entry.favorite, -entry.updated_at.timestamp())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list(self) -> List[ConversationSummary]:
        """Summaries ordered by ``order``, favorites first, then most recently updated."""
        with self._lock:
            entries = self._reconcile(self._load_index())
        return sorted(entries, key=self._sort_key)

    def get(self, conversation_id: str) -> Conversation:
        with self._lock:
            return self._overlay_index(self._load_conversation(conversation_id))

    def exists(self, conversation_id: str) -> bool:
        return self._conversation_path(conversation_id).exists()

    def is_favorite(self, conversation_id: str) -> bool:
        return self.get(conversation_id).favorite

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, model: str = "", gem_id: Optional[str] = None) -> Conversation:
        """New empty conversation placed at the top of the list."""
        with self._lock:
            conversation = Conversation(model=model, gem_id=gem_id, title=DEFAULT_TITLE)
            self._save_conversation(conversation)

            entries = self._load_index()
            for entry in entries:
                entry.order += 1
            entries.append(conversation.summary())
            self._save_index(entries)

        logger.info("Created conversation %s (model=%s)", conversation.id, model or "unspecified")
        return conversation

    def append_message(
        self,
        conversation_id: str,
        role: Union[MessageRole, str],
        content: str,
        thoughts: Optional[str] = None,
        attachments: Optional[List[str]] = None,
        images: Optional[List[Dict[str, Any]]] = None,
        candidate_index: int = 0,
    ) -> Message:
        """Append one turn, keeping strict user/assistant alternation.

        A user turn that follows an unanswered user turn (a failed send)
        first records an empty assistant placeholder flagged ``interrupted``.
        An assistant turn must follow a user turn.
        """
        role = MessageRole(role)
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            last_role = conversation.last_role

            if role is MessageRole.ASSISTANT and last_role is not MessageRole.USER:
                raise ValidationError("Assistant message must follow a user message")
            if role is MessageRole.USER and last_role is MessageRole.USER:
                conversation.messages.append(
                    Message(role=MessageRole.ASSISTANT, content="", interrupted=True)
                )

            message = Message(
                role=role,
                content=content,
                thoughts=thoughts or None,
                attachments=list(attachments or []),
                images=[dict(img) for img in images or []],
                candidate_index=candidate_index,
            )
            is_first_user = role is MessageRole.USER and not any(
                m.role is MessageRole.USER for m in conversation.messages
            )
            conversation.messages.append(message)
            if is_first_user:
                conversation.title = derive_title(content)
            conversation.updated_at = max(conversation.updated_at, message.created_at)

            self._save_conversation(conversation)
            self._upsert_summary(conversation)

        logger.debug(
            "Appended %s message to %s (len=%d)", role.value, conversation_id, len(content)
        )
        return message

    def update_tokens(
        self,
        conversation_id: str,
        cid: str = "",
        rid: str = "",
        rcid: str = "",
    ) -> ContinuationTokens:
        """Merge non-empty components into the stored triple."""
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            merged = conversation.tokens.merge(ContinuationTokens(cid, rid, rcid))
            if merged != conversation.tokens:
                conversation.tokens = merged
                conversation.updated_at = max(conversation.updated_at, utc_now())
                self._save_conversation(conversation)
                self._upsert_summary(conversation)
        return merged

    def select_candidate(
        self,
        conversation_id: str,
        candidate_index: int,
        content: str,
        thoughts: Optional[str] = None,
        images: Optional[List[Dict[str, Any]]] = None,
    ) -> Message:
        """Rewrite the last assistant turn after the user picked another candidate."""
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            if conversation.last_role is not MessageRole.ASSISTANT:
                raise ValidationError("No assistant message to update")
            message = conversation.messages[-1]
            message.candidate_index = candidate_index
            message.content = content
            message.thoughts = thoughts or None
            message.images = [dict(img) for img in images or []]
            self._save_conversation(conversation)
        return message

    def update_title(self, conversation_id: str, title: str) -> None:
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            conversation.title = title.strip() or DEFAULT_TITLE
            conversation.updated_at = max(conversation.updated_at, utc_now())
            self._save_conversation(conversation)
            self._upsert_summary(conversation)

    def update_binding(self, conversation_id: str, model: Optional[str] = None, gem_id: Any = _UNSET) -> None:
        """Write the session's model and gem choice through to the record."""
        with self._lock:
            conversation = self._load_conversation(conversation_id)
            if model is not None:
                conversation.model = model
            if gem_id is not _UNSET:
                conversation.gem_id = gem_id or None
            self._save_conversation(conversation)
            self._upsert_summary(conversation)

    def set_favorite(self, conversation_id: str, favorite: bool) -> None:
        with self._lock:
            entries = self.list()
            entry = self._find(entries, conversation_id)
            entry.favorite = favorite
            self._save_index(entries)

    def toggle_favorite(self, conversation_id: str) -> bool:
        with self._lock:
            entries = self.list()
            entry = self._find(entries, conversation_id)
            entry.favorite = not entry.favorite
            self._save_index(entries)
            return entry.favorite

    def set_order(self, conversation_id: str, position: int) -> None:
        """Move a conversation to ``position`` (0-based, clamped) and renumber."""
        with self._lock:
            entries = self.list()
            entry = self._find(entries, conversation_id)
            entries.remove(entry)
            position = max(0, min(position, len(entries)))
            entries.insert(position, entry)
            for order, item in enumerate(entries):
                item.order = order
            self._save_index(entries)

    def swap_order(self, first_id: str, second_id: str) -> None:
        with self._lock:
            entries = self.list()
            first = self._find(entries, first_id)
            second = self._find(entries, second_id)
            first.order, second.order = second.order, first.order
            self._save_index(entries)

    def delete(self, conversation_id: str) -> None:
        with self._lock:
            path = self._conversation_path(conversation_id)
            if not path.exists():
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            try:
                path.unlink()
            except OSError as exc:
                raise StorageError(f"Failed to delete {conversation_id}: {exc}") from exc
            entries = [e for e in self._load_index() if e.id != conversation_id]
            self._save_index(entries)
        logger.info("Deleted conversation %s", conversation_id)

    def clear_all(self) -> int:
        with self._lock:
            ids = self._conversation_ids_on_disk()
            for conversation_id in ids:
                try:
                    self._conversation_path(conversation_id).unlink()
                except OSError as exc:
                    raise StorageError(f"Failed to delete {conversation_id}: {exc}") from exc
            self._save_index([])
        logger.info("Cleared %d conversation(s)", len(ids))
        return len(ids)

    @staticmethod
    def _find(entries: List[ConversationSummary], conversation_id: str) -> ConversationSummary:
        for entry in entries:
            if entry.id == conversation_id:
                return entry
        raise NotFoundError(f"Conversation not found: {conversation_id}")

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_markdown(self, conversation_id: str) -> str:
        return to_markdown(self.get(conversation_id))

    def export_json(self, conversation_id: str) -> bytes:
        return to_json(self.get(conversation_id))

    def import_json(self, data: Union[bytes, str, Dict[str, Any]]) -> Conversation:
        """Store an exported record as a new conversation with a fresh id."""
        if isinstance(data, (bytes, str)):
            try:
                data = json.loads(data)
            except ValueError as exc:
                raise ValidationError(f"Import data is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValidationError("Import data must be a JSON object")

        try:
            conversation = Conversation.from_dict({**data, "id": new_conversation_id()})
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Import data is not a conversation record: {exc}") from exc
        roles = [m.role for m in conversation.messages]
        if any(a is b for a, b in zip(roles, roles[1:])) or (roles and roles[0] is MessageRole.ASSISTANT):
            raise ValidationError("Imported messages do not alternate user/assistant")

        conversation.favorite = False
        conversation.order = 0
        with self._lock:
            self._save_conversation(conversation)
            entries = self._load_index()
            for entry in entries:
                entry.order += 1
            entries.append(conversation.summary())
            self._save_index(entries)

        logger.info(
            "Imported conversation %s (%s)", conversation.id, sanitize_for_logging(conversation.title)
        )
        return conversation

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def search(self, query: str, search_content: bool = False) -> List[SearchResult]:
        """Case-insensitive match on titles, optionally on message content."""
        needle = query.strip().lower()
        if not needle:
            return []
        results = []
        for summary in self.list():
            if needle in summary.title.lower():
                results.append(SearchResult(summary=summary, match_type="title", snippet=summary.title))
                continue
            if not search_content:
                continue
            for message in self.get(summary.id).messages:
                if needle in message.content.lower():
                    results.append(SearchResult(
                        summary=summary,
                        match_type="content",
                        snippet=extract_snippet(message.content, needle),
                    ))
                    break
        return results


def extract_snippet(content: str, query: str, max_len: int = 100) -> str:
    """Window of ``content`` around the first case-insensitive match of ``query``."""
    idx = content.lower().find(query.lower())
    if idx < 0:
        return content[:max_len] + ("..." if len(content) > max_len else "")

    half = max_len // 2
    start = max(0, idx - half)
    end = min(len(content), max(idx + len(query) + half, start + max_len))
    start = max(0, min(start, end - max_len))

    snippet = content[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(content):
        snippet += "..."
    return snippet
