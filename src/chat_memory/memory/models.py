"""
Data model for the memory engine.

Messages are immutable once written, apart from the summarized flag and
summary reference, which only the compression engine (and restore) touch.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16]}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SummaryKind(str, Enum):
    CONVERSATION_SUMMARY = "conversation-summary"
    TOPIC_SUMMARY = "topic-summary"
    PREFERENCE_FACT = "preference-fact"


class AccessType(str, Enum):
    RECENT = "recent"
    RETRIEVED = "retrieved"
    RESTORED = "restored"
    FEEDBACK = "feedback"
    COMPRESSED = "compressed"


class ItemKind(str, Enum):
    MESSAGE = "message"
    SUMMARY = "summary"


@dataclass
class Session:
    id: str
    user_id: str
    title: Optional[str] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Message:
    """One turn in a conversation."""

    id: str
    session_id: str
    role: Role
    content: str
    sequence: int
    token_count: int
    created_at: datetime = field(default_factory=utcnow)
    importance: Optional[float] = None
    feedback: Optional[float] = None  # user-flagged importance, dominates scoring
    is_summarized: bool = False
    summary_ref: Optional[str] = None
    is_restored: bool = False  # pinned against recompression after restore_summary
    topics: list[str] = field(default_factory=list)
    embedding: Optional[list[float]] = None


@dataclass
class MemorySummary:
    """A compaction artifact that subsumes a batch of messages."""

    id: str
    user_id: str
    session_id: Optional[str]
    kind: SummaryKind
    content: str
    key_points: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    importance: float = 0.0
    message_ids: list[str] = field(default_factory=list)
    original_token_count: int = 0
    token_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    embedding: Optional[list[float]] = None

    @property
    def compression_ratio(self) -> float:
        """Summary tokens over subsumed tokens (lower is better)."""
        if not self.original_token_count:
            return 0.0
        return self.token_count / self.original_token_count


@dataclass
class MemoryAccessRecord:
    """Audit/feedback record. Read by analytics only, never on the hot path."""

    id: str
    user_id: str
    item_id: str
    item_kind: ItemKind
    access_type: AccessType
    relevance: float = 0.0
    session_id: Optional[str] = None
    rating: Optional[float] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RetrievedItem:
    """A piece of history surfaced by relevance rather than recency."""

    item_id: str
    item_kind: ItemKind
    session_id: Optional[str]
    content: str
    similarity: float
    token_count: int
    created_at: datetime
