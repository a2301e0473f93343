"""
PostgreSQL memory store (psycopg 3 + pgvector).

Tables:
  chat_sessions     one row per session, holds the per-session sequence counter
  memory_messages   keyed by id, unique on (session_id, seq)
  memory_summaries  compaction artifacts + the ids they subsume
  memory_access     append-only diagnostics log

Sequencing: append_message bumps chat_sessions.next_seq with UPDATE ... RETURNING
inside the insert transaction, so the row lock serialises concurrent appends
within one session while other sessions proceed in parallel.

Restored messages carry restored = true and are skipped by messages_older_than,
so a restore is not undone by the next compression sweep.

Every operation checks out its own connection from a psycopg_pool.ConnectionPool.

Embeddings live in pgvector columns. If the extension cannot be enabled the
store still works; vector search is reported as unsupported and the retriever
falls back to keyword matching.
"""

import json
import logging
from contextlib import contextmanager
from typing import Optional

import psycopg
from psycopg.rows import dict_row

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
    AccessType,
    ItemKind,
    MemoryAccessRecord,
    MemorySummary,
    Message,
    RetrievedItem,
    Role,
    Session,
    SummaryKind,
    new_id,
)
from .store import MemoryStore, call_with_retry, coerce_role, derive_title, rank_items
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (psycopg.OperationalError, psycopg.InterfaceError)

_MESSAGE_COLUMNS = """
    m.id, m.session_id, m.seq, m.role, m.content, m.token_count, m.importance,
    m.feedback, m.is_summarized, m.summary_ref, m.restored, m.topics, m.created_at
"""

_SUMMARY_COLUMNS = """
    id, user_id, session_id, kind, content, key_points, topics, importance,
    message_ids, original_token_count, token_count, created_at, updated_at
"""


def _row_to_session(row: dict) -> Session:
    return Session(
        id=row["id"],
        user_id=row["user_id"],
        title=row.get("title"),
        is_active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: dict) -> Message:
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=Role(row["role"]),
        content=row["content"],
        sequence=row["seq"],
        token_count=row["token_count"],
        created_at=row["created_at"],
        importance=row.get("importance"),
        feedback=row.get("feedback"),
        is_summarized=row["is_summarized"],
        summary_ref=row.get("summary_ref"),
        is_restored=row.get("restored", False),
        topics=list(row.get("topics") or []),
    )


def _row_to_summary(row: dict) -> MemorySummary:
    key_points = row.get("key_points") or []
    if isinstance(key_points, str):
        key_points = json.loads(key_points)
    return MemorySummary(
        id=row["id"],
        user_id=row["user_id"],
        session_id=row.get("session_id"),
        kind=SummaryKind(row["kind"]),
        content=row["content"],
        key_points=list(key_points),
        topics=list(row.get("topics") or []),
        importance=row["importance"],
        message_ids=list(row.get("message_ids") or []),
        original_token_count=row["original_token_count"],
        token_count=row["token_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_access(row: dict) -> MemoryAccessRecord:
    return MemoryAccessRecord(
        id=row["id"],
        user_id=row["user_id"],
        session_id=row.get("session_id"),
        item_id=row["item_id"],
        item_kind=ItemKind(row["item_kind"]),
        access_type=AccessType(row["access_type"]),
        relevance=row["relevance"],
        rating=row.get("rating"),
        created_at=row["created_at"],
    )


class PostgresMemoryStore(MemoryStore):
    """
    Memory store backed by a psycopg_pool.ConnectionPool of autocommit connections.

    Every operation checks out its own connection, so a transaction opened by
    one thread (a background compression, say) never absorbs another thread's
    writes as a savepoint.
    """

    def __init__(
        self,
        pool,
        embedding_dimensions: int = 0,
        retry_delay: float = 0.2,
        setup: bool = True,
    ):
        self._pool = pool
        self._embedding_dimensions = embedding_dimensions
        self._retry_delay = retry_delay
        self.supports_vectors = False
        if setup:
            self._setup_tables()

    # --- plumbing ---

    @contextmanager
    def _cursor(self, transaction: bool = False):
        """Cursor on a pooled connection; transaction=True wraps the block in BEGIN/COMMIT."""
        with self._pool.connection() as conn:
            if transaction:
                with conn.transaction(), conn.cursor(row_factory=dict_row) as cur:
                    yield cur
            else:
                with conn.cursor(row_factory=dict_row) as cur:
                    yield cur

    def _run(self, description: str, fn):
        """Run fn with one retry on transient errors; map driver errors to StoreUnavailable."""
        try:
            return call_with_retry(
                fn,
                transient=TRANSIENT_ERRORS,
                retry_delay=self._retry_delay,
                description=description,
            )
        except psycopg.errors.UniqueViolation as e:
            raise ValidationError(f"{description}: duplicate key ({e})") from e
        except psycopg.Error as e:
            logger.error("Store error during %s: %s", description, e)
            raise StoreUnavailable(f"{description} failed: {e}") from e

    def _setup_tables(self):
        """Create schema. pgvector is optional."""
        try:
            with self._cursor() as cur:
                cur.execute("CREATE EXTENSION IF NOT EXISTS vector")
            self.supports_vectors = True
        except psycopg.Error as e:
            logger.warning("pgvector unavailable, semantic search disabled: %s", e)

        if self.supports_vectors:
            vector_type = f"vector({self._embedding_dimensions})" if self._embedding_dimensions else "vector"
        else:
            vector_type = "DOUBLE PRECISION[]"

        def setup():
            with self._cursor(transaction=True) as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS chat_sessions (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        title TEXT,
                        is_active BOOLEAN NOT NULL DEFAULT true,
                        next_seq INT NOT NULL DEFAULT 1,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_chat_sessions_user
                    ON chat_sessions (user_id)
                """)
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS memory_summaries (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        session_id TEXT,
                        kind TEXT NOT NULL,
                        content TEXT NOT NULL,
                        key_points JSONB NOT NULL DEFAULT '[]',
                        topics TEXT[] NOT NULL DEFAULT '{{}}',
                        importance DOUBLE PRECISION NOT NULL DEFAULT 0,
                        message_ids TEXT[] NOT NULL DEFAULT '{{}}',
                        original_token_count INT NOT NULL DEFAULT 0,
                        token_count INT NOT NULL DEFAULT 0,
                        embedding {vector_type},
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_summaries_user
                    ON memory_summaries (user_id, created_at)
                """)
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS memory_messages (
                        id TEXT PRIMARY KEY,
                        session_id TEXT NOT NULL REFERENCES chat_sessions(id) ON DELETE CASCADE,
                        seq INT NOT NULL,
                        role TEXT NOT NULL,
                        content TEXT NOT NULL,
                        token_count INT NOT NULL,
                        importance DOUBLE PRECISION,
                        feedback DOUBLE PRECISION,
                        is_summarized BOOLEAN NOT NULL DEFAULT false,
                        summary_ref TEXT REFERENCES memory_summaries(id),
                        restored BOOLEAN NOT NULL DEFAULT false,
                        topics TEXT[] NOT NULL DEFAULT '{{}}',
                        embedding {vector_type},
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                        UNIQUE (session_id, seq),
                        CHECK (NOT is_summarized OR summary_ref IS NOT NULL)
                    )
                """)
                cur.execute("""
                    ALTER TABLE memory_messages
                    ADD COLUMN IF NOT EXISTS restored BOOLEAN NOT NULL DEFAULT false
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_messages_summary
                    ON memory_messages (summary_ref)
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS memory_access (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        session_id TEXT,
                        item_id TEXT NOT NULL,
                        item_kind TEXT NOT NULL,
                        access_type TEXT NOT NULL,
                        relevance DOUBLE PRECISION NOT NULL DEFAULT 0,
                        rating DOUBLE PRECISION,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                """)
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_memory_access_user_ts
                    ON memory_access (user_id, created_at)
                """)

        self._run("schema setup", setup)

    # --- Sessions ---

    def create_session(self, user_id, session_id=None, title=None):
        if not user_id:
            raise ValidationError("user_id is required")
        session_id = session_id or new_id("ses")

        def op():
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO chat_sessions (id, user_id, title)
                    VALUES (%s, %s, %s)
                    RETURNING id, user_id, title, is_active, created_at, updated_at
                    """,
                    (session_id, user_id, title),
                )
                return _row_to_session(cur.fetchone())

        return self._run("create_session", op)

    def get_session(self, session_id):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, title, is_active, created_at, updated_at "
                    "FROM chat_sessions WHERE id = %s",
                    (session_id,),
                )
                return cur.fetchone()

        row = self._run("get_session", op)
        if not row:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return _row_to_session(row)

    def list_sessions(self, user_id):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, title, is_active, created_at, updated_at "
                    "FROM chat_sessions WHERE user_id = %s ORDER BY created_at",
                    (user_id,),
                )
                return cur.fetchall()

        return [_row_to_session(r) for r in self._run("list_sessions", op)]

    def set_session_active(self, session_id, is_active):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    """
                    UPDATE chat_sessions SET is_active = %s, updated_at = now()
                    WHERE id = %s
                    RETURNING id, user_id, title, is_active, created_at, updated_at
                    """,
                    (is_active, session_id),
                )
                return cur.fetchone()

        row = self._run("set_session_active", op)
        if not row:
            raise SessionNotFound(f"Unknown session: {session_id}")
        return _row_to_session(row)

    def list_user_ids(self):
        def op():
            with self._cursor() as cur:
                cur.execute("SELECT DISTINCT user_id FROM chat_sessions ORDER BY user_id")
                return cur.fetchall()

        return [r["user_id"] for r in self._run("list_user_ids", op)]

    # --- Messages ---

    def append_message(self, session_id, role, content, created_at=None, topics=None):
        role = coerce_role(role)
        token_count = estimate_tokens(content)

        def op():
            with self._cursor(transaction=True) as cur:
                cur.execute(
                    """
                    UPDATE chat_sessions
                    SET next_seq = next_seq + 1, updated_at = now()
                    WHERE id = %s
                    RETURNING next_seq - 1 AS seq, title
                    """,
                    (session_id,),
                )
                session_row = cur.fetchone()
                if not session_row:
                    raise SessionNotFound(f"Unknown session: {session_id}")
                cur.execute(
                    """
                    INSERT INTO memory_messages AS m
                        (id, session_id, seq, role, content, token_count, topics, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING """ + _MESSAGE_COLUMNS,
                    (
                        new_id("msg"),
                        session_id,
                        session_row["seq"],
                        role.value,
                        content,
                        token_count,
                        list(topics or []),
                        created_at,
                    ),
                )
                message_row = cur.fetchone()
                if session_row["title"] is None and role == Role.USER:
                    cur.execute(
                        "UPDATE chat_sessions SET title = %s WHERE id = %s",
                        (derive_title(content), session_id),
                    )
                return message_row

        return _row_to_message(self._run("append_message", op))

    def _select_messages(self, description: str, where: str, params: tuple, suffix: str = ""):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM memory_messages m "
                    f"JOIN chat_sessions s ON s.id = m.session_id WHERE {where} {suffix}",
                    params,
                )
                return cur.fetchall()

        return [_row_to_message(r) for r in self._run(description, op)]

    def get_message(self, message_id):
        rows = self._select_messages("get_message", "m.id = %s", (message_id,))
        if not rows:
            raise MessageNotFound(f"Unknown message: {message_id}")
        return rows[0]

    def get_messages(self, message_ids):
        if not message_ids:
            return []
        rows = self._select_messages("get_messages", "m.id = ANY(%s)", (list(message_ids),))
        by_id = {m.id: m for m in rows}
        return [by_id[mid] for mid in message_ids if mid in by_id]

    def recent_messages(self, session_id, limit, include_summarized=False):
        self.get_session(session_id)
        where = "m.session_id = %s"
        if not include_summarized:
            where += " AND NOT m.is_summarized"
        return self._select_messages(
            "recent_messages", where, (session_id, limit), "ORDER BY m.seq DESC LIMIT %s"
        )

    def messages_older_than(self, session_id, cutoff):
        self.get_session(session_id)
        return self._select_messages(
            "messages_older_than",
            "m.session_id = %s AND NOT m.is_summarized AND NOT m.restored AND m.created_at < %s",
            (session_id, cutoff),
            "ORDER BY m.seq",
        )

    def session_messages(self, session_id):
        self.get_session(session_id)
        return self._select_messages(
            "session_messages", "m.session_id = %s", (session_id,), "ORDER BY m.seq"
        )

    def list_messages(self, user_id, since=None):
        where = "s.user_id = %s"
        params: list = [user_id]
        if since is not None:
            where += " AND m.created_at >= %s"
            params.append(since)
        return self._select_messages(
            "list_messages", where, tuple(params), "ORDER BY m.created_at, m.seq"
        )

    def set_importance(self, scores):
        if not scores:
            return

        def op():
            with self._cursor(transaction=True) as cur:
                cur.executemany(
                    "UPDATE memory_messages SET importance = %s WHERE id = %s",
                    [(score, mid) for mid, score in scores.items()],
                )

        self._run("set_importance", op)

    def set_feedback(self, message_id, rating):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    "UPDATE memory_messages AS m SET feedback = %s, importance = %s "
                    "WHERE id = %s RETURNING " + _MESSAGE_COLUMNS,
                    (rating, rating, message_id),
                )
                return cur.fetchone()

        row = self._run("set_feedback", op)
        if not row:
            raise MessageNotFound(f"Unknown message: {message_id}")
        return _row_to_message(row)

    def set_embedding(self, item_kind, item_id, embedding):
        table = "memory_messages" if ItemKind(item_kind) == ItemKind.MESSAGE else "memory_summaries"
        cast = "::vector" if self.supports_vectors else ""

        def op():
            with self._cursor() as cur:
                cur.execute(
                    f"UPDATE {table} SET embedding = %s{cast} WHERE id = %s",
                    (list(embedding), item_id),
                )

        self._run("set_embedding", op)

    def messages_missing_embeddings(self, user_id, limit=100):
        return self._select_messages(
            "messages_missing_embeddings",
            "s.user_id = %s AND m.embedding IS NULL AND NOT m.is_summarized",
            (user_id, limit),
            "ORDER BY m.created_at, m.seq LIMIT %s",
        )

    # --- Summaries ---

    def create_summary(self, summary, message_ids):
        ids = list(message_ids)

        def op():
            with self._cursor(transaction=True) as cur:
                cur.execute(
                    """
                    INSERT INTO memory_summaries
                        (id, user_id, session_id, kind, content, key_points, topics,
                         importance, message_ids, original_token_count, token_count,
                         created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING """ + _SUMMARY_COLUMNS,
                    (
                        summary.id,
                        summary.user_id,
                        summary.session_id,
                        SummaryKind(summary.kind).value,
                        summary.content,
                        json.dumps(summary.key_points),
                        list(summary.topics),
                        summary.importance,
                        ids,
                        summary.original_token_count,
                        summary.token_count,
                        summary.created_at,
                        summary.updated_at,
                    ),
                )
                row = cur.fetchone()
                self._mark(cur, ids, summary.id)
                return row

        return _row_to_summary(self._run("create_summary", op))

    @staticmethod
    def _mark(cur, message_ids: list[str], summary_id: str) -> None:
        """Flip unsummarized targets; any miss aborts the enclosing transaction."""
        cur.execute(
            """
            UPDATE memory_messages SET is_summarized = true, summary_ref = %s, restored = false
            WHERE id = ANY(%s) AND NOT is_summarized
            """,
            (summary_id, message_ids),
        )
        if cur.rowcount != len(set(message_ids)):
            raise CompressionConflict(
                f"Only {cur.rowcount}/{len(set(message_ids))} messages were still unsummarized"
            )

    def mark_summarized(self, message_ids, summary_id):
        ids = list(message_ids)

        def op():
            with self._cursor(transaction=True) as cur:
                cur.execute(
                    "SELECT id FROM memory_summaries WHERE id = %s FOR UPDATE",
                    (summary_id,),
                )
                if not cur.fetchone():
                    raise SummaryNotFound(f"Unknown summary: {summary_id}")
                self._mark(cur, ids, summary_id)
                cur.execute(
                    """
                    UPDATE memory_summaries
                    SET message_ids = ARRAY(SELECT DISTINCT unnest(message_ids || %s::text[])),
                        updated_at = now()
                    WHERE id = %s
                    """,
                    (ids, summary_id),
                )

        self._run("mark_summarized", op)

    def restore_summary(self, summary_id):
        def op():
            with self._cursor(transaction=True) as cur:
                cur.execute(
                    "UPDATE memory_summaries SET updated_at = now() WHERE id = %s RETURNING id",
                    (summary_id,),
                )
                if not cur.fetchone():
                    raise SummaryNotFound(f"Unknown summary: {summary_id}")
                cur.execute(
                    """
                    UPDATE memory_messages AS m
                    SET is_summarized = false, summary_ref = NULL, restored = true
                    WHERE summary_ref = %s
                    RETURNING """ + _MESSAGE_COLUMNS,
                    (summary_id,),
                )
                return cur.fetchall()

        rows = self._run("restore_summary", op)
        restored = [_row_to_message(r) for r in rows]
        return sorted(restored, key=lambda m: (m.session_id, m.sequence))

    def get_summary(self, summary_id):
        def op():
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM memory_summaries WHERE id = %s",
                    (summary_id,),
                )
                return cur.fetchone()

        row = self._run("get_summary", op)
        if not row:
            raise SummaryNotFound(f"Unknown summary: {summary_id}")
        return _row_to_summary(row)

    def list_summaries(self, user_id, since=None):
        where = "user_id = %s"
        params: list = [user_id]
        if since is not None:
            where += " AND created_at >= %s"
            params.append(since)

        def op():
            with self._cursor() as cur:
                cur.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM memory_summaries "
                    f"WHERE {where} ORDER BY created_at",
                    params,
                )
                return cur.fetchall()

        return [_row_to_summary(r) for r in self._run("list_summaries", op)]

    # --- Search ---

    @staticmethod
    def _item(row: dict, kind: ItemKind, similarity: float) -> RetrievedItem:
        return RetrievedItem(
            item_id=row["id"],
            item_kind=kind,
            session_id=row.get("session_id"),
            content=row["content"],
            similarity=float(similarity),
            token_count=row["token_count"] or estimate_tokens(row["content"]),
            created_at=row["created_at"],
        )

    def similar_items(self, user_id, embedding, exclude_session_id=None, limit=10):
        if not self.supports_vectors:
            return []

        def op():
            with self._cursor() as cur:
                cur.execute(
                    """
                    SELECT m.id, m.session_id, m.content, m.token_count, m.created_at,
                           1 - (m.embedding <=> %s::vector) AS score
                    FROM memory_messages m JOIN chat_sessions s ON s.id = m.session_id
                    WHERE s.user_id = %s AND NOT m.is_summarized
                      AND m.embedding IS NOT NULL
                      AND (%s::text IS NULL OR m.session_id <> %s)
                    ORDER BY m.embedding <=> %s::vector
                    LIMIT %s
                    """,
                    (embedding, user_id, exclude_session_id, exclude_session_id, embedding, limit),
                )
                messages = cur.fetchall()
                cur.execute(
                    """
                    SELECT id, session_id, content, token_count, created_at,
                           1 - (embedding <=> %s::vector) AS score
                    FROM memory_summaries
                    WHERE user_id = %s AND embedding IS NOT NULL
                      AND (%s::text IS NULL OR session_id IS DISTINCT FROM %s)
                    ORDER BY embedding <=> %s::vector
                    LIMIT %s
                    """,
                    (embedding, user_id, exclude_session_id, exclude_session_id, embedding, limit),
                )
                return messages, cur.fetchall()

        messages, summaries = self._run("similar_items", op)
        items = [self._item(r, ItemKind.MESSAGE, r["score"]) for r in messages]
        items.extend(self._item(r, ItemKind.SUMMARY, r["score"]) for r in summaries)
        return rank_items(items)[:limit]

    def keyword_items(self, user_id, keywords, exclude_session_id=None, limit=10):
        if not keywords:
            return []
        patterns = [f"%{k}%" for k in keywords]
        fetch = max(limit * 4, limit)

        def op():
            with self._cursor() as cur:
                cur.execute(
                    """
                    SELECT m.id, m.session_id, m.content, m.token_count, m.created_at
                    FROM memory_messages m JOIN chat_sessions s ON s.id = m.session_id
                    WHERE s.user_id = %s AND NOT m.is_summarized
                      AND m.content ILIKE ANY(%s)
                      AND (%s::text IS NULL OR m.session_id <> %s)
                    ORDER BY m.created_at DESC
                    LIMIT %s
                    """,
                    (user_id, patterns, exclude_session_id, exclude_session_id, fetch),
                )
                messages = cur.fetchall()
                cur.execute(
                    """
                    SELECT id, session_id, content, token_count, created_at, topics
                    FROM memory_summaries
                    WHERE user_id = %s
                      AND (content ILIKE ANY(%s) OR array_to_string(topics, ' ') ILIKE ANY(%s))
                      AND (%s::text IS NULL OR session_id IS DISTINCT FROM %s)
                    ORDER BY created_at DESC
                    LIMIT %s
                    """,
                    (user_id, patterns, patterns, exclude_session_id, exclude_session_id, fetch),
                )
                return messages, cur.fetchall()

        messages, summaries = self._run("keyword_items", op)
        items = [
            self._item(r, ItemKind.MESSAGE, keyword_similarity(keywords, r["content"]))
            for r in messages
        ]
        items.extend(
            self._item(
                r,
                ItemKind.SUMMARY,
                keyword_similarity(keywords, " ".join([r["content"], *(r.get("topics") or [])])),
            )
            for r in summaries
        )
        return rank_items(i for i in items if i.similarity > 0)[:limit]

    # --- Access log ---

    def record_access(self, records):
        if not records:
            return

        def op():
            with self._cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO memory_access
                        (id, user_id, session_id, item_id, item_kind, access_type,
                         relevance, rating, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    [
                        (
                            r.id,
                            r.user_id,
                            r.session_id,
                            r.item_id,
                            ItemKind(r.item_kind).value,
                            AccessType(r.access_type).value,
                            r.relevance,
                            r.rating,
                            r.created_at,
                        )
                        for r in records
                    ],
                )

        self._run("record_access", op)

    def list_access_records(self, user_id, since=None):
        where = "user_id = %s"
        params: list = [user_id]
        if since is not None:
            where += " AND created_at >= %s"
            params.append(since)

        def op():
            with self._cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, session_id, item_id, item_kind, access_type, "
                    f"relevance, rating, created_at FROM memory_access WHERE {where} "
                    "ORDER BY created_at",
                    params,
                )
                return cur.fetchall()

        return [_row_to_access(r) for r in self._run("list_access_records", op)]

    def purge_access_records(self, before):
        def op():
            with self._cursor() as cur:
                cur.execute("DELETE FROM memory_access WHERE created_at < %s", (before,))
                return cur.rowcount

        return self._run("purge_access_records", op)

    def close(self):
        try:
            self._pool.close()
        except psycopg.Error as e:
            logger.warning("Failed to close PostgreSQL connection pool: %s", e)
