"""
Conversation summarizer and compression engine.

Old messages are folded into a MemorySummary once a session accumulates
enough of them. The summary and the summarized flag on its source messages
are committed together by the store, so readers see either the
pre-compression or the post-compression state, never a mix.

Summaries are produced by an optional LangChain chat model. Without one, or
when the model call fails, an extractive summary is built from the
conversation itself (questions asked, openings of long answers, frequent
topics).
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from statistics import mean
from typing import Optional

from .config import FeedbackPolicy, MemoryConfig
from .errors import CompressionConflict, MemoryEngineError
from .keywords import extract_topics
from .models import (
    AccessType,
    ItemKind,
    MemoryAccessRecord,
    MemorySummary,
    Message,
    Role,
    SummaryKind,
    new_id,
    utcnow,
)
from .retriever import MemoryRetriever
from .store import MemoryStore, SessionLocks
from .token_budget import estimate_tokens

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You are a conversation summarizer. Summarize the following conversation messages concisely.
Focus on:
- Key topics discussed
- Important decisions made
- User preferences and instructions worth remembering
- Relevant context for future conversation

Output a concise summary in the same language as the conversation. Do NOT use markdown headers."""

COMPRESS_SYSTEM_PROMPT = """Compress the following summary to approximately 1/3 of its length.
Keep the most important information. Output in the same language."""

TOPIC_EXTRACTION_PROMPT = """Extract 3-8 short topic tags from the following conversation.
Each tag should be 1-4 words, describing a key topic, concept, or entity discussed.
Output ONLY a JSON array of strings, nothing else.
Example: ["python basics", "database design", "api auth"]"""

DEFAULT_IMPORTANCE = 0.5
MAX_KEY_POINTS = 10
KEY_POINT_MAX_CHARS = 160
LONG_ANSWER_CHARS = 200

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def _first_sentence(text: str) -> str:
    text = " ".join(text.split())
    return _SENTENCE_END.split(text, maxsplit=1)[0]


def _shorten(text: str, max_chars: int = KEY_POINT_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."


def _response_text(response) -> str:
    return response.content if hasattr(response, "content") else str(response)


def aggregate_importance(messages: list[Message], policy: FeedbackPolicy = FeedbackPolicy.FLOOR) -> float:
    """
    Importance of a summary built from messages.

    Mean of the per-message scores (unscored counts as 0.5), raised to at least
    the lowest (FLOOR) or highest (MAX) user feedback among the messages.
    """
    if not messages:
        return 0.0
    base = mean(m.importance if m.importance is not None else DEFAULT_IMPORTANCE for m in messages)
    flagged = [m.feedback for m in messages if m.feedback is not None]
    if flagged:
        bound = min(flagged) if policy == FeedbackPolicy.FLOOR else max(flagged)
        base = max(base, bound)
    return max(0.0, min(1.0, base))


@dataclass
class SummaryDraft:
    content: str
    key_points: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)


class ConversationSummarizer:
    """Generates summaries, key points and topics for a batch of messages."""

    def __init__(self, llm=None, max_summary_tokens: int = 500):
        self._llm = llm
        self.max_summary_tokens = max_summary_tokens

    @staticmethod
    def _conversation_text(messages: list[Message], max_chars: int) -> str:
        lines = []
        for msg in messages:
            content = msg.content
            # Truncate very long messages for the prompt
            if len(content) > max_chars:
                content = content[:max_chars] + "..."
            lines.append(f"{msg.role.value}: {content}")
        return "\n".join(lines)

    def generate_summary(self, messages: list[Message]) -> Optional[str]:
        """Generate a summary of the given messages using the LLM."""
        if not self._llm or not messages:
            return None
        try:
            response = self._llm.invoke([
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": self._conversation_text(messages, 500)},
            ])
            text = _response_text(response).strip()
            return text or None
        except Exception as e:
            logger.warning("Failed to generate summary: %s", e)
            return None

    def compress_summary(self, summary: str) -> str:
        """Ask the LLM to shorten a summary. Returns the input on failure."""
        if not self._llm:
            return summary
        try:
            response = self._llm.invoke([
                {"role": "system", "content": COMPRESS_SYSTEM_PROMPT},
                {"role": "user", "content": summary},
            ])
            return _response_text(response).strip() or summary
        except Exception as e:
            logger.warning("Failed to compress summary: %s", e)
            return summary

    def generate_topics(self, messages: list[Message]) -> list[str]:
        """Extract topic tags with the LLM. Empty list when unavailable."""
        if not self._llm or not messages:
            return []
        try:
            response = self._llm.invoke([
                {"role": "system", "content": TOPIC_EXTRACTION_PROMPT},
                {"role": "user", "content": self._conversation_text(messages, 300)},
            ])
            raw = _response_text(response).strip()
            if not raw.startswith("["):
                # Model may wrap the array in a code block
                match = re.search(r"\[.*?\]", raw, re.DOTALL)
                if not match:
                    return []
                raw = match.group()
            topics = json.loads(raw)
        except Exception as e:
            logger.warning("Failed to extract topics: %s", e)
            return []
        return [t.strip().lower() for t in topics if isinstance(t, str) and t.strip()]

    @staticmethod
    def extract_key_points(messages: list[Message], limit: int = MAX_KEY_POINTS) -> list[str]:
        """
        Key points in conversation order: questions the user asked and the
        opening sentence of long assistant answers.
        """
        points: list[str] = []
        for msg in messages:
            text = (msg.content or "").strip()
            if not text:
                continue
            point = None
            if msg.role == Role.USER and "?" in text:
                questions = [s for s in _SENTENCE_END.split(" ".join(text.split())) if s.endswith("?")]
                point = questions[0] if questions else _first_sentence(text)
            elif msg.role in (Role.ASSISTANT, Role.SYSTEM) and len(text) > LONG_ANSWER_CHARS:
                point = _first_sentence(text)
            if point:
                point = _shorten(point)
                if point not in points:
                    points.append(point)
            if len(points) >= limit:
                break
        return points

    def _extractive_content(self, key_points: list[str], topics: list[str], message_count: int) -> str:
        header = f"Conversation of {message_count} messages"
        if topics:
            header += f" about {', '.join(topics[:5])}"
        header += "."
        lines = [header]
        for point in key_points:
            candidate = "\n".join(lines + [f"- {point}"])
            if estimate_tokens(candidate) > self.max_summary_tokens:
                break
            lines.append(f"- {point}")
        return "\n".join(lines)

    def summarize(self, messages: list[Message]) -> SummaryDraft:
        """Summarize messages (chronological). Always returns a draft."""
        key_points = self.extract_key_points(messages)
        topics = self.generate_topics(messages) or extract_topics([m.content for m in messages])

        content = self.generate_summary(messages)
        if content and estimate_tokens(content) > self.max_summary_tokens:
            content = self.compress_summary(content)
        if not content or estimate_tokens(content) > self.max_summary_tokens:
            if content:
                logger.info("LLM summary over %d tokens, using extractive summary", self.max_summary_tokens)
            content = self._extractive_content(key_points, topics, len(messages))

        return SummaryDraft(content=content, key_points=key_points, topics=topics)


class CompressionEngine:
    """
    Folds aged messages into summaries.

    A session is compressed when it holds at least compression_min_batch
    unsummarized messages older than compression_age_days. Compression of one
    session is serialised by a per-session lock; a caller that loses the race
    re-checks eligibility and gets None.
    """

    def __init__(
        self,
        store: MemoryStore,
        summarizer: Optional[ConversationSummarizer] = None,
        retriever: Optional[MemoryRetriever] = None,
        config: Optional[MemoryConfig] = None,
        locks: Optional[SessionLocks] = None,
    ):
        self.store = store
        self.config = config or MemoryConfig()
        self.summarizer = summarizer or ConversationSummarizer(
            max_summary_tokens=self.config.max_summary_tokens
        )
        self.retriever = retriever
        self.locks = locks or SessionLocks()

    def eligible_messages(self, session_id: str, now: Optional[datetime] = None) -> list[Message]:
        cutoff = (now or utcnow()) - timedelta(days=self.config.compression_age_days)
        return self.store.messages_older_than(session_id, cutoff)

    def compress_session(self, session_id: str, now: Optional[datetime] = None) -> Optional[MemorySummary]:
        """
        Compress one session. Returns the new summary, or None when there is
        nothing (left) to compress.
        """
        session = self.store.get_session(session_id)
        with self.locks.lock_for(session_id):
            now = now or utcnow()
            eligible = self.eligible_messages(session_id, now)
            if len(eligible) < self.config.compression_min_batch:
                logger.debug(
                    "Session %s has %d eligible messages (< %d), skipping compression",
                    session_id, len(eligible), self.config.compression_min_batch,
                )
                return None

            draft = self.summarizer.summarize(eligible)
            message_ids = [m.id for m in eligible]
            summary = MemorySummary(
                id=new_id("sum"),
                user_id=session.user_id,
                session_id=session.id,
                kind=SummaryKind.CONVERSATION_SUMMARY,
                content=draft.content,
                key_points=draft.key_points,
                topics=draft.topics,
                importance=aggregate_importance(eligible, self.config.summary_feedback_policy),
                message_ids=message_ids,
                original_token_count=sum(m.token_count for m in eligible),
                token_count=estimate_tokens(draft.content),
                created_at=now,
                updated_at=now,
            )
            try:
                stored = self.store.create_summary(summary, message_ids)
            except CompressionConflict as e:
                logger.info("Compression of session %s lost a race, skipping: %s", session_id, e)
                return None

        logger.info(
            "Compressed %d messages of session %s into summary %s (%d -> %d tokens, ratio %.2f)",
            len(message_ids), session_id, stored.id,
            stored.original_token_count, stored.token_count, stored.compression_ratio,
        )
        self._record_compression(stored)
        if self.retriever is not None:
            self.retriever.index_summary(stored.id, stored.content)
        return stored

    def _record_compression(self, summary: MemorySummary) -> None:
        """Best-effort COMPRESSED entry in the access log; the summary is already committed."""
        try:
            self.store.record_access([
                MemoryAccessRecord(
                    id=new_id("acc"),
                    user_id=summary.user_id,
                    session_id=summary.session_id,
                    item_id=summary.id,
                    item_kind=ItemKind.SUMMARY,
                    access_type=AccessType.COMPRESSED,
                    relevance=summary.importance,
                )
            ])
        except MemoryEngineError as e:
            logger.warning("Failed to record compression of summary %s: %s", summary.id, e)

    def compress_user_memories(self, user_id: str, now: Optional[datetime] = None) -> list[MemorySummary]:
        """Compress every eligible session of a user; returns the new summaries."""
        summaries = []
        for session in self.store.list_sessions(user_id):
            if session.is_active and not self.config.compress_active_sessions:
                continue
            summary = self.compress_session(session.id, now=now)
            if summary is not None:
                summaries.append(summary)
        return summaries

    def restore_summary(self, summary_id: str) -> list[Message]:
        """Un-mark the messages of a summary. The summary itself is kept."""
        summary = self.store.get_summary(summary_id)
        if summary.session_id:
            with self.locks.lock_for(summary.session_id):
                restored = self.store.restore_summary(summary_id)
        else:
            restored = self.store.restore_summary(summary_id)
        logger.info("Restored %d messages from summary %s", len(restored), summary_id)
        return restored
