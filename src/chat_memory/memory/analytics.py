"""
Memory analytics.

Read-only statistics over a user's stored memory: volume, compression,
importance and topic spread, access patterns, day-by-day trends, and tuning
recommendations. Recommendations are plain values; they only take effect
when adopted through MemoryConfig.adopt().
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Optional

from .config import MemoryConfig
from .models import AccessType, utcnow
from .store import MemoryStore

logger = logging.getLogger(__name__)

HIGH_IMPORTANCE = 0.7
MEDIUM_IMPORTANCE = 0.4
UNSCORED_IMPORTANCE = 0.5

MIN_SUGGESTED_BUDGET = 2000
MAX_SUGGESTED_BUDGET = 8000
MIN_SUGGESTED_THRESHOLD = 10
MAX_SUGGESTED_THRESHOLD = 50

# Summaries keeping more than this share of the original tokens compress poorly
POOR_COMPRESSION_RATIO = 0.5
POOR_COMPRESSION_BATCH_FACTOR = 1.5


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


@dataclass
class ImportanceDistribution:
    high: int = 0
    medium: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.high + self.medium + self.low


@dataclass
class MemoryInsights:
    user_id: str
    total_messages: int = 0
    total_sessions: int = 0
    total_tokens: int = 0
    average_session_length: float = 0.0
    summarized_messages: int = 0
    summary_count: int = 0
    compression_ratio: float = 0.0  # summary tokens / original tokens
    memory_efficiency: float = 1.0
    topic_distribution: dict[str, int] = field(default_factory=dict)
    importance_distribution: ImportanceDistribution = field(default_factory=ImportanceDistribution)
    access_patterns: dict[str, int] = field(default_factory=dict)
    preferred_topics: list[str] = field(default_factory=list)
    conversation_style: str = "brief"
    memory_usage: str = "light"

    @property
    def summarized_fraction(self) -> float:
        return self.summarized_messages / max(self.total_messages, 1)


@dataclass
class MemoryOptimization:
    user_id: str
    recommended_compression: bool = False
    suggested_token_budget: int = 4000
    suggested_compression_threshold: int = 10
    suggestions: list[str] = field(default_factory=list)
    performance_score: float = 0.0


@dataclass
class DailyUsage:
    day: date
    messages: int = 0
    tokens: int = 0
    summaries: int = 0
    compression_ratio: float = 0.0


@dataclass
class MemoryTrends:
    user_id: str
    days: int
    daily: list[DailyUsage] = field(default_factory=list)


class AnalyticsEngine:
    """Aggregates memory statistics for a user. Never writes to the store."""

    def __init__(self, store: MemoryStore, config: Optional[MemoryConfig] = None):
        self.store = store
        self.config = config or MemoryConfig()

    def get_insights(self, user_id: str) -> MemoryInsights:
        sessions = self.store.list_sessions(user_id)
        messages = self.store.list_messages(user_id)
        summaries = self.store.list_summaries(user_id)
        accesses = self.store.list_access_records(user_id)

        insights = MemoryInsights(user_id=user_id)
        insights.total_sessions = len(sessions)
        insights.total_messages = len(messages)
        insights.total_tokens = sum(m.token_count for m in messages)
        if sessions:
            insights.average_session_length = len(messages) / len(sessions)
        insights.summarized_messages = sum(1 for m in messages if m.is_summarized)
        insights.summary_count = len(summaries)

        original = sum(s.original_token_count for s in summaries)
        if original:
            insights.compression_ratio = sum(s.token_count for s in summaries) / original

        if messages:
            # Fraction compacted plus credit for summaries per 20 messages
            summary_ratio = len(summaries) / max(len(messages) / 20, 1)
            insights.memory_efficiency = min(1.0, insights.summarized_fraction + summary_ratio * 0.5)

        topics: Counter = Counter()
        for m in messages:
            topics.update(m.topics)
        for s in summaries:
            topics.update(s.topics)
        insights.topic_distribution = dict(topics)
        insights.preferred_topics = [t for t, _ in topics.most_common(5)]

        distribution = ImportanceDistribution()
        for m in messages:
            importance = m.importance if m.importance is not None else UNSCORED_IMPORTANCE
            if importance >= HIGH_IMPORTANCE:
                distribution.high += 1
            elif importance >= MEDIUM_IMPORTANCE:
                distribution.medium += 1
            else:
                distribution.low += 1
        insights.importance_distribution = distribution

        patterns = {t.value: 0 for t in AccessType}
        for record in accesses:
            patterns[record.access_type.value] += 1
        insights.access_patterns = patterns

        if insights.average_session_length > 20:
            insights.conversation_style = "detailed"
        elif insights.average_session_length > 10:
            insights.conversation_style = "moderate"

        if insights.total_messages > 500:
            insights.memory_usage = "heavy"
        elif insights.total_messages > 100:
            insights.memory_usage = "moderate"

        return insights

    def get_optimization(self, user_id: str) -> MemoryOptimization:
        """Tuning recommendations derived from the user's history."""
        insights = self.get_insights(user_id)
        result = MemoryOptimization(user_id=user_id)

        if insights.summarized_fraction < 0.3 and insights.total_messages > 100:
            result.recommended_compression = True
            result.suggestions.append("Compress older sessions to reduce stored context")

        if insights.total_sessions:
            tokens_per_session = insights.total_tokens / insights.total_sessions
            budget = _clamp(tokens_per_session * 1.2, MIN_SUGGESTED_BUDGET, MAX_SUGGESTED_BUDGET)
            result.suggested_token_budget = int(round(budget / 100.0) * 100)
            threshold = insights.average_session_length * 0.5
            if insights.summary_count and insights.compression_ratio > POOR_COMPRESSION_RATIO:
                threshold *= POOR_COMPRESSION_BATCH_FACTOR
            threshold = _clamp(threshold, MIN_SUGGESTED_THRESHOLD, MAX_SUGGESTED_THRESHOLD)
            result.suggested_compression_threshold = int(round(threshold))
        else:
            result.suggested_token_budget = int(
                _clamp(self.config.token_budget, MIN_SUGGESTED_BUDGET, MAX_SUGGESTED_BUDGET)
            )
            result.suggested_compression_threshold = int(
                _clamp(self.config.compression_min_batch, MIN_SUGGESTED_THRESHOLD, MAX_SUGGESTED_THRESHOLD)
            )

        if result.suggested_token_budget != self.config.token_budget:
            result.suggestions.append(
                f"Adjust token budget from {self.config.token_budget} to {result.suggested_token_budget}"
            )
        if insights.summary_count and insights.compression_ratio > POOR_COMPRESSION_RATIO:
            result.suggestions.append(
                "Compress in larger batches; summaries keep "
                f"{insights.compression_ratio:.0%} of the original tokens"
            )
        if insights.memory_efficiency < 0.7:
            result.suggestions.append("Optimize token usage by adjusting context window size")
        if insights.preferred_topics:
            result.suggestions.append(f"Focus on top topics: {', '.join(insights.preferred_topics)}")

        result.performance_score = self._performance_score(insights)
        logger.debug(
            "Optimization for user %s: budget %d, threshold %d, score %.2f",
            user_id, result.suggested_token_budget,
            result.suggested_compression_threshold, result.performance_score,
        )
        return result

    @staticmethod
    def _performance_score(insights: MemoryInsights) -> float:
        score = insights.summarized_fraction * 0.4
        score += insights.memory_efficiency * 0.3
        score += min(1.0, len(insights.topic_distribution) / 10) * 0.2
        distribution = insights.importance_distribution
        if distribution.total:
            score += distribution.high / distribution.total * 0.1
        return min(1.0, score)

    def get_trends(self, user_id: str, days: int = 30) -> MemoryTrends:
        """Per-day usage over the last `days` days (UTC), oldest first, zero-filled."""
        if days < 1:
            days = 1
        today = utcnow().date()
        start = today - timedelta(days=days - 1)
        buckets = {start + timedelta(days=i): DailyUsage(day=start + timedelta(days=i)) for i in range(days)}

        since = utcnow() - timedelta(days=days)
        for m in self.store.list_messages(user_id, since=since):
            bucket = buckets.get(m.created_at.date())
            if bucket is not None:
                bucket.messages += 1
                bucket.tokens += m.token_count

        original_by_day: Counter = Counter()
        summary_tokens_by_day: Counter = Counter()
        for s in self.store.list_summaries(user_id, since=since):
            day = s.created_at.date()
            bucket = buckets.get(day)
            if bucket is not None:
                bucket.summaries += 1
                original_by_day[day] += s.original_token_count
                summary_tokens_by_day[day] += s.token_count
        for day, original in original_by_day.items():
            if original:
                buckets[day].compression_ratio = summary_tokens_by_day[day] / original

        return MemoryTrends(user_id=user_id, days=days, daily=[buckets[d] for d in sorted(buckets)])
