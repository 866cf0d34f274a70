"""Domain models for persisted conversations."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..tokens import ContinuationTokens


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_conversation_id() -> str:
    return f"conv-{uuid4().hex}"


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class MessageRole(Enum):
    """Message role enumeration."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass
class Message:
    """One turn of a conversation."""
    role: MessageRole
    content: str = ""
    thoughts: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    attachments: List[str] = field(default_factory=list)  # file names only
    images: List[Dict[str, Any]] = field(default_factory=list)
    candidate_index: int = 0
    interrupted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: Dict[str, Any] = {
            "role": self.role.value,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }
        if self.thoughts:
            data["thoughts"] = self.thoughts
        if self.attachments:
            data["attachments"] = list(self.attachments)
        if self.images:
            data["images"] = [dict(img) for img in self.images]
        if self.role is MessageRole.ASSISTANT:
            data["candidate_index"] = self.candidate_index
        if self.interrupted:
            data["interrupted"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        """Create from dictionary."""
        return cls(
            role=MessageRole(data.get("role", "user")),
            content=data.get("content", ""),
            thoughts=data.get("thoughts") or None,
            created_at=_parse_ts(data.get("created_at") or data.get("timestamp")),
            attachments=list(data.get("attachments") or []),
            images=[dict(img) for img in data.get("images") or []],
            candidate_index=int(data.get("candidate_index", 0)),
            interrupted=bool(data.get("interrupted", False)),
        )


@dataclass
class Conversation:
    """Persisted transcript of one server-side thread."""
    id: str = field(default_factory=new_conversation_id)
    title: str = "Untitled"
    model: str = ""
    gem_id: Optional[str] = None
    tokens: ContinuationTokens = field(default_factory=ContinuationTokens)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    messages: List[Message] = field(default_factory=list)
    favorite: bool = False
    order: int = 0

    @property
    def last_role(self) -> Optional[MessageRole]:
        return self.messages[-1].role if self.messages else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "gem_id": self.gem_id,
            **self.tokens.to_dict(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "favorite": self.favorite,
            "order": self.order,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            model=data.get("model", ""),
            gem_id=data.get("gem_id") or None,
            tokens=ContinuationTokens.from_dict(data),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            favorite=bool(data.get("favorite", False)),
            order=int(data.get("order", 0)),
        )

    def summary(self) -> "ConversationSummary":
        return ConversationSummary(
            id=self.id,
            title=self.title,
            model=self.model,
            updated_at=self.updated_at,
            favorite=self.favorite,
            order=self.order,
            message_count=len(self.messages),
        )


@dataclass
class ConversationSummary:
    """Index entry for one conversation."""
    id: str
    title: str
    model: str
    updated_at: datetime
    favorite: bool = False
    order: int = 0
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "model": self.model,
            "updated_at": self.updated_at.isoformat(),
            "favorite": self.favorite,
            "order": self.order,
            "message_count": self.message_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationSummary":
        return cls(
            id=data["id"],
            title=data.get("title") or "Untitled",
            model=data.get("model", ""),
            updated_at=_parse_ts(data.get("updated_at")),
            favorite=bool(data.get("favorite", False)),
            order=int(data.get("order", 0)),
            message_count=int(data.get("message_count", 0)),
        )


@dataclass
class SearchResult:
    """Conversation matched by a history search."""
    summary: ConversationSummary
    match_type: str  # "title" or "content"
    snippet: str = ""
