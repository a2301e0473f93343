"""
Memory store: the single owner of durable state.

Holds messages (keyed by session + sequence), memory summaries with the set
of messages they subsume, and the append-only access log. Two backends share
one contract:

- InMemoryMemoryStore: thread-safe, process-local (tests, dev, single node)
- PostgresMemoryStore (pg_store.py): psycopg + pgvector

Atomicity contract:
  - append_message assigns a strictly increasing sequence within a session
  - create_summary writes the summary AND flips is_summarized/summary_ref on
    every source message in one commit; if any source message is already
    summarized nothing changes and CompressionConflict is raised
  - restore_summary reverts the flip for all referencing messages in one
    commit and never deletes the summary
  - restored messages are no longer eligible for compression
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional, TypeVar

from .errors import (
    CompressionConflict,
    MessageNotFound,
    SessionNotFound,
    StoreUnavailable,
    SummaryNotFound,
    ValidationError,
)
from .keywords import keyword_similarity
from .models import (
    ItemKind,
    MemoryAccessRecord,
    MemorySummary,
    Message,
    RetrievedItem,
    Role,
    Session,
    new_id,
    utcnow,
)
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

TITLE_MAX_CHARS = 60


def call_with_retry(
    fn: Callable[[], T],
    transient: tuple = (),
    retry_delay: float = 0.2,
    description: str = "store operation",
) -> T:
    """
    Run fn, retrying once after a backoff delay on a transient error.

    A second transient failure is surfaced as StoreUnavailable.
    """
    try:
        return fn()
    except transient as e:
        logger.warning("Transient failure in %s, retrying in %.2fs: %s", description, retry_delay, e)
    time.sleep(retry_delay)
    try:
        return fn()
    except transient as e:
        logger.error("Store unavailable during %s: %s", description, e)
        raise StoreUnavailable(f"{description} failed: {e}") from e


def coerce_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(f"Invalid role: {role!r}")


def derive_title(content: str) -> Optional[str]:
    text = " ".join((content or "").split())
    if not text:
        return None
    if len(text) <= TITLE_MAX_CHARS:
        return text
    return text[: TITLE_MAX_CHARS - 3] + "..."


def cosine_similarity(a: list[float], b: list[float]) -> float:
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm = math.sqrt(sum(x * x for x in a)) * math.sqrt(sum(y * y for y in b))
    if not norm:
        return 0.0
    return dot / norm


def rank_items(items: Iterable[RetrievedItem]) -> list[RetrievedItem]:
    """Similarity descending, ties broken by recency descending."""
    return sorted(items, key=lambda i: (i.similarity, i.created_at), reverse=True)


class SessionLocks:
    """
    Registry of per-session locks.

    Serialises writers within one session (appends, compression) without a
    global lock, so turns from different users never contend.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def lock_for(self, session_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[session_id] = lock
            return lock

    def __len__(self) -> int:
        return len(self._locks)


class MemoryStore(ABC):
    """Storage contract shared by all backends."""

    # --- Sessions ---

    @abstractmethod
    def create_session(
        self, user_id: str, session_id: Optional[str] = None, title: Optional[str] = None
    ) -> Session: ...

    @abstractmethod
    def get_session(self, session_id: str) -> Session: ...

    @abstractmethod
    def list_sessions(self, user_id: str) -> list[Session]: ...

    @abstractmethod
    def set_session_active(self, session_id: str, is_active: bool) -> Session: ...

    @abstractmethod
    def list_user_ids(self) -> list[str]: ...

    # --- Messages ---

    @abstractmethod
    def append_message(
        self,
        session_id: str,
        role: Role,
        content: str,
        created_at: Optional[datetime] = None,
        topics: Optional[list[str]] = None,
    ) -> Message: ...

    @abstractmethod
    def get_message(self, message_id: str) -> Message: ...

    @abstractmethod
    def get_messages(self, message_ids: list[str]) -> list[Message]: ...

    @abstractmethod
    def recent_messages(
        self, session_id: str, limit: int, include_summarized: bool = False
    ) -> list[Message]:
        """Most-recent-first."""

    @abstractmethod
    def messages_older_than(self, session_id: str, cutoff: datetime) -> list[Message]:
        """Unsummarized, never-restored messages created before cutoff, chronological."""

    @abstractmethod
    def session_messages(self, session_id: str) -> list[Message]:
        """All messages of a session (summarized included), chronological."""

    @abstractmethod
    def list_messages(self, user_id: str, since: Optional[datetime] = None) -> list[Message]: ...

    @abstractmethod
    def set_importance(self, scores: dict[str, float]) -> None: ...

    @abstractmethod
    def set_feedback(self, message_id: str, rating: float) -> Message: ...

    @abstractmethod
    def set_embedding(self, item_kind: ItemKind, item_id: str, embedding: list[float]) -> None: ...

    @abstractmethod
    def messages_missing_embeddings(self, user_id: str, limit: int = 100) -> list[Message]: ...

    # --- Summaries ---

    @abstractmethod
    def create_summary(self, summary: MemorySummary, message_ids: list[str]) -> MemorySummary:
        """Persist summary and mark message_ids summarized, atomically."""

    @abstractmethod
    def mark_summarized(self, message_ids: list[str], summary_id: str) -> None:
        """Attach more messages to an existing summary, atomically."""

    @abstractmethod
    def restore_summary(self, summary_id: str) -> list[Message]:
        """Revert the summarized flag for every message referencing the summary."""

    @abstractmethod
    def get_summary(self, summary_id: str) -> MemorySummary: ...

    @abstractmethod
    def list_summaries(self, user_id: str, since: Optional[datetime] = None) -> list[MemorySummary]: ...

    # --- Search ---

    @abstractmethod
    def similar_items(
        self,
        user_id: str,
        embedding: list[float],
        exclude_session_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[RetrievedItem]: ...

    @abstractmethod
    def keyword_items(
        self,
        user_id: str,
        keywords: list[str],
        exclude_session_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[RetrievedItem]: ...

    # --- Access log ---

    @abstractmethod
    def record_access(self, records: list[MemoryAccessRecord]) -> None: ...

    @abstractmethod
    def list_access_records(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[MemoryAccessRecord]: ...

    @abstractmethod
    def purge_access_records(self, before: datetime) -> int: ...

    def close(self) -> None:
        """Release backend resources."""


class InMemoryMemoryStore(MemoryStore):
    """
    Process-local store.

    Every public method runs under one re-entrant lock and hands out copies,
    so readers observe either the state before a commit or after it.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}
        self._next_seq: dict[str, int] = {}
        self._messages: dict[str, Message] = {}
        self._session_index: dict[str, list[str]] = {}  # session_id -> message ids by sequence
        self._summaries: dict[str, MemorySummary] = {}
        self._access: list[MemoryAccessRecord] = []

    # --- helpers ---

    def _session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return session

    def _user_session_ids(self, user_id: str, exclude_session_id: Optional[str] = None) -> set[str]:
        return {
            s.id
            for s in self._sessions.values()
            if s.user_id == user_id and s.id != exclude_session_id
        }

    def _copy_message(self, message: Message) -> Message:
        return replace(
            message,
            topics=list(message.topics),
            embedding=list(message.embedding) if message.embedding is not None else None,
        )

    def _copy_summary(self, summary: MemorySummary) -> MemorySummary:
        return replace(
            summary,
            key_points=list(summary.key_points),
            topics=list(summary.topics),
            message_ids=list(summary.message_ids),
        )

    # --- Sessions ---

    def create_session(self, user_id, session_id=None, title=None):
        if not user_id:
            raise ValidationError("user_id is required")
        with self._lock:
            session_id = session_id or new_id("ses")
            if session_id in self._sessions:
                raise ValidationError(f"Session already exists: {session_id}")
            session = Session(id=session_id, user_id=user_id, title=title)
            self._sessions[session_id] = session
            self._next_seq[session_id] = 1
            self._session_index[session_id] = []
            return replace(session)

    def get_session(self, session_id):
        with self._lock:
            return replace(self._session(session_id))

    def list_sessions(self, user_id):
        with self._lock:
            sessions = [replace(s) for s in self._sessions.values() if s.user_id == user_id]
        return sorted(sessions, key=lambda s: s.created_at)

    def set_session_active(self, session_id, is_active):
        with self._lock:
            session = self._session(session_id)
            session.is_active = is_active
            session.updated_at = utcnow()
            return replace(session)

    def list_user_ids(self):
        with self._lock:
            return sorted({s.user_id for s in self._sessions.values()})

    # --- Messages ---

    def append_message(self, session_id, role, content, created_at=None, topics=None):
        role = coerce_role(role)
        with self._lock:
            session = self._session(session_id)
            seq = self._next_seq[session_id]
            message = Message(
                id=new_id("msg"),
                session_id=session_id,
                role=role,
                content=content,
                sequence=seq,
                token_count=estimate_tokens(content),
                created_at=created_at or utcnow(),
                topics=list(topics or []),
            )
            self._messages[message.id] = message
            self._session_index[session_id].append(message.id)
            self._next_seq[session_id] = seq + 1
            if session.title is None and role == Role.USER:
                session.title = derive_title(content)
            session.updated_at = utcnow()
            return self._copy_message(message)

    def get_message(self, message_id):
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise MessageNotFound(f"Unknown message: {message_id}")
            return self._copy_message(message)

    def get_messages(self, message_ids):
        with self._lock:
            return [
                self._copy_message(self._messages[mid])
                for mid in message_ids
                if mid in self._messages
            ]

    def recent_messages(self, session_id, limit, include_summarized=False):
        with self._lock:
            self._session(session_id)
            result = []
            for mid in reversed(self._session_index[session_id]):
                if len(result) >= limit:
                    break
                message = self._messages[mid]
                if message.is_summarized and not include_summarized:
                    continue
                result.append(self._copy_message(message))
            return result

    def messages_older_than(self, session_id, cutoff):
        with self._lock:
            self._session(session_id)
            return [
                self._copy_message(self._messages[mid])
                for mid in self._session_index[session_id]
                if not self._messages[mid].is_summarized
                and not self._messages[mid].is_restored
                and self._messages[mid].created_at < cutoff
            ]

    def session_messages(self, session_id):
        with self._lock:
            self._session(session_id)
            return [self._copy_message(self._messages[mid]) for mid in self._session_index[session_id]]

    def list_messages(self, user_id, since=None):
        with self._lock:
            session_ids = self._user_session_ids(user_id)
            messages = [
                self._copy_message(m)
                for m in self._messages.values()
                if m.session_id in session_ids and (since is None or m.created_at >= since)
            ]
        return sorted(messages, key=lambda m: (m.created_at, m.sequence))

    def set_importance(self, scores):
        with self._lock:
            for mid, score in scores.items():
                message = self._messages.get(mid)
                if message is not None:
                    message.importance = score

    def set_feedback(self, message_id, rating):
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise MessageNotFound(f"Unknown message: {message_id}")
            message.feedback = rating
            message.importance = rating
            return self._copy_message(message)

    def set_embedding(self, item_kind, item_id, embedding):
        with self._lock:
            if ItemKind(item_kind) == ItemKind.MESSAGE:
                target = self._messages.get(item_id)
            else:
                target = self._summaries.get(item_id)
            if target is not None:
                target.embedding = list(embedding)

    def messages_missing_embeddings(self, user_id, limit=100):
        with self._lock:
            session_ids = self._user_session_ids(user_id)
            missing = [
                self._copy_message(m)
                for m in self._messages.values()
                if m.session_id in session_ids and m.embedding is None and not m.is_summarized
            ]
        missing.sort(key=lambda m: (m.created_at, m.sequence))
        return missing[:limit]

    # --- Summaries ---

    def _stage_mark(self, message_ids: list[str], summary_id: str) -> dict[str, Message]:
        """Build summarized copies of the target messages without touching state."""
        staged: dict[str, Message] = {}
        for mid in message_ids:
            message = self._messages.get(mid)
            if message is None:
                raise MessageNotFound(f"Unknown message: {mid}")
            if message.is_summarized:
                raise CompressionConflict(
                    f"Message {mid} already summarized by {message.summary_ref}"
                )
            staged[mid] = replace(message, is_summarized=True, summary_ref=summary_id, is_restored=False)
        return staged

    def create_summary(self, summary, message_ids):
        with self._lock:
            if summary.id in self._summaries:
                raise ValidationError(f"Summary already exists: {summary.id}")
            staged_messages = self._stage_mark(message_ids, summary.id)
            stored = self._copy_summary(summary)
            stored.message_ids = list(message_ids)
            originals = {mid: self._messages[mid] for mid in staged_messages}
            try:
                self._summaries[stored.id] = stored
                self._messages.update(staged_messages)
            except Exception:
                self._summaries.pop(stored.id, None)
                self._messages.update(originals)
                raise
            return self._copy_summary(stored)

    def mark_summarized(self, message_ids, summary_id):
        with self._lock:
            summary = self._summaries.get(summary_id)
            if summary is None:
                raise SummaryNotFound(f"Unknown summary: {summary_id}")
            staged = self._stage_mark(message_ids, summary_id)
            self._messages.update(staged)
            summary.message_ids = summary.message_ids + [
                mid for mid in message_ids if mid not in summary.message_ids
            ]
            summary.updated_at = utcnow()

    def restore_summary(self, summary_id):
        with self._lock:
            if summary_id not in self._summaries:
                raise SummaryNotFound(f"Unknown summary: {summary_id}")
            restored = {
                mid: replace(m, is_summarized=False, summary_ref=None, is_restored=True)
                for mid, m in self._messages.items()
                if m.summary_ref == summary_id
            }
            self._messages.update(restored)
            self._summaries[summary_id].updated_at = utcnow()
            ordered = sorted(restored.values(), key=lambda m: (m.session_id, m.sequence))
            return [self._copy_message(m) for m in ordered]

    def get_summary(self, summary_id):
        with self._lock:
            summary = self._summaries.get(summary_id)
            if summary is None:
                raise SummaryNotFound(f"Unknown summary: {summary_id}")
            return self._copy_summary(summary)

    def list_summaries(self, user_id, since=None):
        with self._lock:
            summaries = [
                self._copy_summary(s)
                for s in self._summaries.values()
                if s.user_id == user_id and (since is None or s.created_at >= since)
            ]
        return sorted(summaries, key=lambda s: s.created_at)

    # --- Search ---

    def _candidates(self, user_id, exclude_session_id):
        """Unsummarized messages and summaries visible to a user."""
        session_ids = self._user_session_ids(user_id, exclude_session_id)
        messages = [
            m for m in self._messages.values()
            if m.session_id in session_ids and not m.is_summarized
        ]
        summaries = [
            s for s in self._summaries.values()
            if s.user_id == user_id
            and (exclude_session_id is None or s.session_id != exclude_session_id)
        ]
        return messages, summaries

    @staticmethod
    def _message_item(message: Message, similarity: float) -> RetrievedItem:
        return RetrievedItem(
            item_id=message.id,
            item_kind=ItemKind.MESSAGE,
            session_id=message.session_id,
            content=message.content,
            similarity=similarity,
            token_count=message.token_count,
            created_at=message.created_at,
        )

    @staticmethod
    def _summary_item(summary: MemorySummary, similarity: float) -> RetrievedItem:
        return RetrievedItem(
            item_id=summary.id,
            item_kind=ItemKind.SUMMARY,
            session_id=summary.session_id,
            content=summary.content,
            similarity=similarity,
            token_count=summary.token_count or estimate_tokens(summary.content),
            created_at=summary.created_at,
        )

    def similar_items(self, user_id, embedding, exclude_session_id=None, limit=10):
        with self._lock:
            messages, summaries = self._candidates(user_id, exclude_session_id)
            items = [
                self._message_item(m, cosine_similarity(embedding, m.embedding))
                for m in messages
                if m.embedding is not None
            ]
            items.extend(
                self._summary_item(s, cosine_similarity(embedding, s.embedding))
                for s in summaries
                if s.embedding is not None
            )
        return rank_items(items)[:limit]

    def keyword_items(self, user_id, keywords, exclude_session_id=None, limit=10):
        if not keywords:
            return []
        with self._lock:
            messages, summaries = self._candidates(user_id, exclude_session_id)
            items = []
            for m in messages:
                score = keyword_similarity(keywords, m.content)
                if score > 0:
                    items.append(self._message_item(m, score))
            for s in summaries:
                score = keyword_similarity(keywords, " ".join([s.content, *s.topics]))
                if score > 0:
                    items.append(self._summary_item(s, score))
        return rank_items(items)[:limit]

    # --- Access log ---

    def record_access(self, records):
        with self._lock:
            self._access.extend(replace(r) for r in records)

    def list_access_records(self, user_id, since=None):
        with self._lock:
            return [
                replace(r)
                for r in self._access
                if r.user_id == user_id and (since is None or r.created_at >= since)
            ]

    def purge_access_records(self, before):
        with self._lock:
            kept = [r for r in self._access if r.created_at >= before]
            purged = len(self._access) - len(kept)
            self._access = kept
            return purged
