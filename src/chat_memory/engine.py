"""
Memory engine facade.

Wires the store, scorer, retriever, assembler, compression engine, analytics
and background scheduler together behind the operations a chat product
calls on every turn:

    engine = create_memory_engine()
    session = engine.start_session("user-1")
    context = engine.build_context("user-1", session.id, "What did we decide?")
    messages = context.to_messages()      # hand to the model
    engine.record_exchange(session.id, user_text, assistant_text)

Storage is PostgreSQL when DATABASE_URL is set, otherwise process memory.
"""

import logging
import os
import warnings
from datetime import datetime, timedelta
from typing import Optional

from dotenv import load_dotenv

from .memory.analytics import AnalyticsEngine, MemoryInsights, MemoryOptimization, MemoryTrends
from .memory.assembler import ContextAssembler, ContextResult
from .memory.config import MemoryConfig
from .memory.errors import MemoryEngineError, ValidationError
from .memory.importance import ImportanceScorer
from .memory.keywords import extract_topics
from .memory.models import (
    AccessType,
    ItemKind,
    MemoryAccessRecord,
    MemorySummary,
    Message,
    Role,
    Session,
    new_id,
    utcnow,
)
from .memory.retriever import MemoryRetriever
from .memory.store import InMemoryMemoryStore, MemoryStore, SessionLocks
from .memory.summarizer import CompressionEngine, ConversationSummarizer
from .scheduler import CompressionScheduler

logger = logging.getLogger(__name__)

TOPICS_PER_MESSAGE = 5


class MemoryEngine:
    """Long-term conversational memory for a multi-session chat product."""

    def __init__(
        self,
        store: Optional[MemoryStore] = None,
        config: Optional[MemoryConfig] = None,
        embedding_model=None,
        summary_llm=None,
    ):
        self.config = config or MemoryConfig()
        self.config.validate()
        self.store = store or InMemoryMemoryStore()
        self.scorer = ImportanceScorer(self.config.importance)
        self.retriever = MemoryRetriever(self.store, embedding_model)
        self.assembler = ContextAssembler(self.store, self.retriever, self.scorer, self.config)
        self.compression = CompressionEngine(
            self.store,
            ConversationSummarizer(summary_llm, self.config.max_summary_tokens),
            self.retriever,
            self.config,
            SessionLocks(),
        )
        self.analytics = AnalyticsEngine(self.store, self.config)
        self.scheduler = CompressionScheduler(
            self.compression,
            self.store,
            worker_count=self.config.worker_count,
            interval_seconds=self.config.compression_interval_seconds,
        )

    # --- Sessions ---

    def start_session(self, user_id: str, session_id: Optional[str] = None, title: Optional[str] = None) -> Session:
        if not user_id:
            raise ValidationError("user_id is required")
        return self.store.create_session(user_id, session_id=session_id, title=title)

    def close_session(self, session_id: str, compress: bool = True) -> Session:
        """Mark a session inactive and, optionally, queue it for compression."""
        session = self.store.set_session_active(session_id, False)
        if compress:
            self.scheduler.submit_session(session_id)
        return session

    # --- Hot path ---

    def build_context(
        self,
        user_id: str,
        session_id: str,
        turn_text: str,
        token_budget: Optional[int] = None,
    ) -> ContextResult:
        return self.assembler.build_context(user_id, session_id, turn_text, token_budget)

    def record_turn(
        self,
        session_id: str,
        role,
        content: str,
        topics: Optional[list[str]] = None,
        created_at: Optional[datetime] = None,
    ) -> Message:
        """Append one message. Sequence and token count are assigned by the store."""
        if not isinstance(content, str):
            raise ValidationError("content must be a string")
        if topics is None:
            topics = extract_topics([content], limit=TOPICS_PER_MESSAGE)
        message = self.store.append_message(
            session_id, role, content, created_at=created_at, topics=topics
        )
        self.retriever.index_message(message)
        return message

    def record_exchange(self, session_id: str, user_text: str, assistant_text: str) -> tuple[Message, Message]:
        user_message = self.record_turn(session_id, Role.USER, user_text)
        assistant_message = self.record_turn(session_id, Role.ASSISTANT, assistant_text)
        return user_message, assistant_message

    def record_feedback(self, user_id: str, message_id: str, rating: float) -> Message:
        """
        Store a user-flagged importance for a message. The rating overrides
        the heuristic score and bounds the importance of any later summary.
        """
        if rating is None or not 0.0 <= rating <= 1.0:
            raise ValidationError("rating must be within [0, 1]")
        message = self.store.get_message(message_id)
        session = self.store.get_session(message.session_id)
        if session.user_id != user_id:
            raise ValidationError(f"Message {message_id} does not belong to user {user_id}")
        updated = self.store.set_feedback(message_id, rating)
        self._record_access_best_effort([
            MemoryAccessRecord(
                id=new_id("acc"),
                user_id=user_id,
                session_id=session.id,
                item_id=message_id,
                item_kind=ItemKind.MESSAGE,
                access_type=AccessType.FEEDBACK,
                relevance=rating,
                rating=rating,
            )
        ])
        return updated

    # --- Compression ---

    def compress_session(self, session_id: str) -> Optional[MemorySummary]:
        return self.compression.compress_session(session_id)

    def compress_user_memories(self, user_id: str) -> list[MemorySummary]:
        return self.compression.compress_user_memories(user_id)

    def restore_summary(self, summary_id: str) -> list[Message]:
        """Un-summarize the messages of a summary; the summary is kept."""
        summary = self.store.get_summary(summary_id)
        restored = self.compression.restore_summary(summary_id)
        self._record_access_best_effort([
            MemoryAccessRecord(
                id=new_id("acc"),
                user_id=summary.user_id,
                session_id=summary.session_id,
                item_id=summary_id,
                item_kind=ItemKind.SUMMARY,
                access_type=AccessType.RESTORED,
            )
        ])
        return restored

    # --- Analytics ---

    def get_insights(self, user_id: str) -> MemoryInsights:
        return self.analytics.get_insights(user_id)

    def get_optimization(self, user_id: str) -> MemoryOptimization:
        return self.analytics.get_optimization(user_id)

    def get_trends(self, user_id: str, days: int = 30) -> MemoryTrends:
        return self.analytics.get_trends(user_id, days)

    def adopt_optimization(
        self,
        optimization: MemoryOptimization,
        token_budget: bool = True,
        compression_threshold: bool = True,
    ) -> MemoryConfig:
        """Apply an analytics recommendation to this engine's configuration."""
        adopted = self.config.adopt(
            optimization, token_budget=token_budget, compression_threshold=compression_threshold
        )
        self.config = adopted
        self.assembler.config = adopted
        self.compression.config = adopted
        self.analytics.config = adopted
        logger.info(
            "Adopted optimization: token_budget=%d, compression_min_batch=%d",
            adopted.token_budget, adopted.compression_min_batch,
        )
        return adopted

    # --- Maintenance ---

    def cleanup_access_records(self, now: Optional[datetime] = None) -> int:
        """Purge access records older than the retention window."""
        cutoff = (now or utcnow()) - timedelta(days=self.config.access_retention_days)
        purged = self.store.purge_access_records(cutoff)
        if purged:
            logger.info("Purged %d access records older than %s", purged, cutoff.isoformat())
        return purged

    def _record_access_best_effort(self, records: list[MemoryAccessRecord]) -> None:
        try:
            self.store.record_access(records)
        except MemoryEngineError as e:
            logger.warning("Failed to record memory access: %s", e)

    def close(self) -> None:
        self.scheduler.shutdown(wait=True)
        self.assembler.close()
        self.store.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """
    API credentials for the optional model clients.

    - API Key: API_KEY > OPENAI_API_KEY
    - Base URL: API_BASE_URL > OPENAI_BASE_URL
    """
    api_key = os.getenv("API_KEY") or os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("API_BASE_URL") or os.getenv("OPENAI_BASE_URL")
    return api_key, base_url


def _create_store(config: MemoryConfig) -> MemoryStore:
    """PostgreSQL when DATABASE_URL is set, otherwise the in-memory store."""
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        pool = None
        try:
            from psycopg.rows import dict_row
            from psycopg_pool import ConnectionPool

            from .memory.pg_store import PostgresMemoryStore

            pool = ConnectionPool(
                db_url,
                min_size=1,
                max_size=config.db_pool_size,
                timeout=config.db_connect_timeout_seconds,
                kwargs={"autocommit": True, "prepare_threshold": 0, "row_factory": dict_row},
                open=False,
            )
            pool.open(wait=True, timeout=config.db_connect_timeout_seconds)
            return PostgresMemoryStore(
                pool,
                embedding_dimensions=int(os.getenv("MEMORY_EMBEDDING_DIMENSIONS", "0")),
                retry_delay=config.store_retry_delay_seconds,
            )
        except Exception as e:
            if pool is not None:
                pool.close()
            warnings.warn(
                f"Failed to initialize PostgreSQL memory store: {e}. "
                "Falling back to in-memory store."
            )
    return InMemoryMemoryStore()


def _create_embeddings(config: MemoryConfig):
    if not config.embedding_model:
        logger.info("No embedding model configured, retrieval will use keyword search")
        return None
    api_key, base_url = get_credentials()
    embed_kwargs = {}
    if config.embedding_api_key or api_key:
        embed_kwargs["api_key"] = config.embedding_api_key or api_key
    if config.embedding_base_url or base_url:
        embed_kwargs["base_url"] = config.embedding_base_url or base_url
    try:
        from langchain_openai import OpenAIEmbeddings

        return OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)
    except Exception as e:
        logger.warning("Failed to create embedding model: %s", e)
        return None


def _create_summary_llm(config: MemoryConfig):
    model_name = config.summary_model_name()
    if not model_name:
        return None
    api_key, base_url = get_credentials()
    init_kwargs = {"temperature": 0.3, "max_tokens": config.max_summary_tokens * 2}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url
    model_provider = os.getenv("MODEL_PROVIDER")
    if model_provider:
        init_kwargs["model_provider"] = model_provider
    try:
        from langchain.chat_models import init_chat_model

        return init_chat_model(model_name, **init_kwargs)
    except Exception as e:
        logger.warning("Failed to create summarizer LLM, using extractive summaries: %s", e)
        return None


def create_memory_engine(config: Optional[MemoryConfig] = None, start_scheduler: bool = False) -> MemoryEngine:
    """Build a MemoryEngine from the environment (.env is loaded first)."""
    load_dotenv()
    config = config or MemoryConfig.from_env()
    engine = MemoryEngine(
        store=_create_store(config),
        config=config,
        embedding_model=_create_embeddings(config),
        summary_llm=_create_summary_llm(config),
    )
    if start_scheduler:
        engine.scheduler.start()
    return engine
