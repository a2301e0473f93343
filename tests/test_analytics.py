"""
Tests for memory analytics.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from chat_memory.memory.analytics import AnalyticsEngine
from chat_memory.memory.config import MemoryConfig
from chat_memory.memory.models import (
    AccessType,
    ItemKind,
    MemoryAccessRecord,
    MemorySummary,
    Role,
    SummaryKind,
    new_id,
    utcnow,
)
from chat_memory.memory.summarizer import CompressionEngine

from conftest import add_history, chat_turns


def access(access_type, user_id="user-1"):
    return MemoryAccessRecord(
        id=new_id("acc"),
        user_id=user_id,
        item_id="msg-1",
        item_kind=ItemKind.MESSAGE,
        access_type=access_type,
    )


@pytest.fixture
def analytics(store, config):
    return AnalyticsEngine(store, config=config)


@pytest.fixture
def compressed(store, session, config):
    """ses-1 with 12 compressed messages followed by 4 recent ones."""
    add_history(store, "ses-1", chat_turns(12), age_days=10)
    summary = CompressionEngine(store, config=config).compress_session("ses-1")
    add_history(store, "ses-1", chat_turns(4, prefix="recent"))
    return summary


# ── Insights Tests ──


class TestInsights:
    def test_empty_user(self, analytics):
        insights = analytics.get_insights("nobody")
        assert insights.total_messages == 0
        assert insights.total_sessions == 0
        assert insights.average_session_length == 0.0
        assert insights.memory_efficiency == 1.0
        assert insights.compression_ratio == 0.0
        assert insights.conversation_style == "brief"
        assert insights.memory_usage == "light"
        assert insights.access_patterns == {t.value: 0 for t in AccessType}

    def test_volume_and_compression(self, store, analytics, compressed):
        insights = analytics.get_insights("user-1")
        assert insights.total_sessions == 1
        assert insights.total_messages == 16
        assert insights.summarized_messages == 12
        assert insights.summary_count == 1
        assert insights.summarized_fraction == pytest.approx(0.75)
        assert insights.average_session_length == 16
        assert insights.conversation_style == "moderate"
        assert insights.compression_ratio == pytest.approx(compressed.compression_ratio)
        assert insights.memory_efficiency == 1.0
        assert insights.total_tokens == sum(m.token_count for m in store.session_messages("ses-1"))

    def test_efficiency_without_summaries(self, store, session, analytics):
        add_history(store, "ses-1", chat_turns(40))
        insights = analytics.get_insights("user-1")
        assert insights.memory_efficiency == 0.0
        assert insights.conversation_style == "detailed"

    def test_topic_distribution(self, store, session, analytics):
        store.append_message("ses-1", Role.USER, "tomatoes?", topics=["tomatoes", "garden"])
        store.append_message("ses-1", Role.ASSISTANT, "water them", topics=["garden"])
        insights = analytics.get_insights("user-1")
        assert insights.topic_distribution == {"tomatoes": 1, "garden": 2}
        assert insights.preferred_topics == ["garden", "tomatoes"]

    def test_importance_distribution(self, store, session, analytics):
        messages = add_history(store, "ses-1", chat_turns(4))
        store.set_importance({messages[0].id: 0.9, messages[1].id: 0.7, messages[2].id: 0.1})
        distribution = analytics.get_insights("user-1").importance_distribution
        # messages[3] is unscored and counts as medium
        assert (distribution.high, distribution.medium, distribution.low) == (2, 1, 1)
        assert distribution.total == 4

    def test_access_patterns(self, store, analytics):
        store.record_access([
            access(AccessType.RETRIEVED),
            access(AccessType.RETRIEVED),
            access(AccessType.FEEDBACK),
            access(AccessType.RECENT, user_id="user-2"),
        ])
        patterns = analytics.get_insights("user-1").access_patterns
        assert patterns == {"recent": 0, "retrieved": 2, "restored": 0, "feedback": 1, "compressed": 0}

    def test_memory_usage_levels(self, store, session, analytics):
        add_history(store, "ses-1", chat_turns(101))
        assert analytics.get_insights("user-1").memory_usage == "moderate"

    def test_read_only(self, store, compressed, config):
        spy = MagicMock(wraps=store)
        engine = AnalyticsEngine(spy, config=config)
        engine.get_insights("user-1")
        engine.get_optimization("user-1")
        engine.get_trends("user-1")
        for name in (
            "append_message", "set_importance", "set_feedback", "create_summary",
            "mark_summarized", "restore_summary", "record_access", "purge_access_records",
        ):
            getattr(spy, name).assert_not_called()


# ── Optimization Tests ──


class TestOptimization:
    def test_empty_user_uses_config(self, analytics):
        result = analytics.get_optimization("nobody")
        assert result.recommended_compression is False
        assert result.suggested_token_budget == 4000
        assert result.suggested_compression_threshold == 10
        assert result.suggestions == []
        assert result.performance_score == pytest.approx(0.3)

    def test_empty_user_clamps_config(self, store):
        engine = AnalyticsEngine(store, config=MemoryConfig(token_budget=500, compression_min_batch=80))
        result = engine.get_optimization("nobody")
        assert result.suggested_token_budget == 2000
        assert result.suggested_compression_threshold == 50

    def test_recommends_compression_for_large_history(self, store, session, analytics):
        add_history(store, "ses-1", chat_turns(120))
        result = analytics.get_optimization("user-1")
        assert result.recommended_compression is True
        assert result.suggested_token_budget == 2000
        assert result.suggested_compression_threshold == 50
        assert "Adjust token budget from 4000 to 2000" in result.suggestions
        assert "Optimize token usage by adjusting context window size" in result.suggestions

    def test_budget_rounded_to_hundreds(self, store, session, analytics):
        add_history(store, "ses-1", [("user", "x" * 4000)] * 3 + [("assistant", "y" * 120)])
        result = analytics.get_optimization("user-1")
        # 3030 tokens * 1.2 = 3636
        assert result.suggested_token_budget == 3600
        assert result.suggested_compression_threshold == 10

    def test_budget_upper_clamp(self, store, session, analytics):
        add_history(store, "ses-1", [("user", "x" * 4000)] * 10)
        assert analytics.get_optimization("user-1").suggested_token_budget == 8000

    def test_no_compression_recommended_when_summarized(self, analytics, compressed):
        result = analytics.get_optimization("user-1")
        assert result.recommended_compression is False

    def test_performance_score(self, store, session, analytics):
        add_history(store, "ses-1", chat_turns(2))
        messages = store.session_messages("ses-1")
        store.set_importance({messages[0].id: 0.9, messages[1].id: 0.1})
        store.append_message("ses-1", Role.USER, "topics", topics=["a", "b", "c", "d", "e"])
        # no summaries: 0.0 * 0.4 + 0.0 * 0.3 + 0.5 * 0.2 + (1/3) * 0.1
        expected = 0.1 + 0.1 / 3
        assert analytics.get_optimization("user-1").performance_score == pytest.approx(expected)

    def test_poor_compression_raises_threshold(self, store, analytics):
        thresholds = {}
        for user_id, summary_tokens in (("tight", 10), ("loose", 80)):
            store.create_session(user_id, session_id=f"ses-{user_id}")
            messages = add_history(store, f"ses-{user_id}", chat_turns(40))
            store.create_summary(
                MemorySummary(
                    id=f"sum-{user_id}",
                    user_id=user_id,
                    session_id=f"ses-{user_id}",
                    kind=SummaryKind.CONVERSATION_SUMMARY,
                    content="Talked about the garden.",
                    original_token_count=100,
                    token_count=summary_tokens,
                ),
                [m.id for m in messages[:2]],
            )
            thresholds[user_id] = analytics.get_optimization(user_id)

        # 40 messages per session: 20 by default, 30 when summaries keep 80% of tokens
        assert thresholds["tight"].suggested_compression_threshold == 20
        assert thresholds["loose"].suggested_compression_threshold == 30
        assert "Compress in larger batches; summaries keep 80% of the original tokens" in (
            thresholds["loose"].suggestions
        )
        assert not any("larger batches" in s for s in thresholds["tight"].suggestions)

    def test_adopting_does_not_change_engine(self, analytics, store, session):
        add_history(store, "ses-1", chat_turns(120))
        result = analytics.get_optimization("user-1")
        adopted = analytics.config.adopt(result)
        assert adopted.token_budget == 2000
        assert analytics.config.token_budget == 4000


# ── Trends Tests ──


class TestTrends:
    def test_zero_filled_days(self, store, session, analytics):
        now = utcnow()
        store.append_message("ses-1", Role.USER, "today", created_at=now)
        store.append_message("ses-1", Role.USER, "three days ago", created_at=now - timedelta(days=3))
        store.append_message("ses-1", Role.USER, "too old", created_at=now - timedelta(days=10))

        trends = analytics.get_trends("user-1", days=7)
        assert trends.days == 7
        assert len(trends.daily) == 7
        assert [d.day for d in trends.daily] == sorted(d.day for d in trends.daily)
        assert trends.daily[-1].day == now.date()
        assert trends.daily[-1].messages == 1
        assert trends.daily[-4].messages == 1
        assert sum(d.messages for d in trends.daily) == 2
        assert all(d.compression_ratio == 0.0 for d in trends.daily)

    def test_summaries_by_day(self, analytics, compressed):
        trends = analytics.get_trends("user-1", days=3)
        today = trends.daily[-1]
        assert today.summaries == 1
        assert today.compression_ratio == pytest.approx(compressed.compression_ratio)
        # compressed messages are ten days old; only the recent four fall in range
        assert today.messages == 4

    def test_minimum_one_day(self, analytics):
        trends = analytics.get_trends("user-1", days=0)
        assert trends.days == 1
        assert len(trends.daily) == 1
