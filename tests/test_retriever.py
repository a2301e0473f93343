"""
Tests for the relevance retriever.
"""

from unittest.mock import MagicMock

import pytest

from chat_memory.memory.errors import RetrieverUnavailable, StoreUnavailable, ValidationError
from chat_memory.memory.models import ItemKind, Role
from chat_memory.memory.retriever import MemoryRetriever

from conftest import add_history


def fake_embeddings(vectors):
    """Embedding model double mapping text -> vector."""
    model = MagicMock()
    model.embed_query.side_effect = lambda text: vectors.get(text, [0.0, 0.0, 1.0])
    return model


class TestKeywordRetrieval:
    def test_no_embedding_model_uses_keywords(self, store, session):
        store.append_message("ses-1", Role.USER, "How often should I water tomatoes?")
        store.append_message("ses-1", Role.USER, "Unrelated chat about movies")
        retriever = MemoryRetriever(store)
        assert retriever.semantic_enabled is False
        items = retriever.find_relevant("user-1", "watering tomatoes", limit=5, token_budget=100)
        assert [i.content for i in items] == ["How often should I water tomatoes?"]

    def test_greedy_budget_stops_at_first_overflow(self, store, session):
        c, a, b = add_history(store, "ses-1", [
            ("user", "watering"),
            ("user", "tomato watering"),
            ("user", "tomato " + "y" * 200),
        ])
        retriever = MemoryRetriever(store)
        items = retriever.find_relevant("user-1", "tomato watering", limit=10, token_budget=10)
        assert [i.item_id for i in items] == [a.id]

    def test_ties_broken_by_recency(self, store, session):
        older, newer = add_history(store, "ses-1", [("user", "compost tips"), ("user", "compost bins")])
        retriever = MemoryRetriever(store)
        items = retriever.find_relevant("user-1", "compost", limit=10, token_budget=100)
        assert [i.item_id for i in items] == [newer.id, older.id]

    def test_never_truncates_items(self, store, session):
        message = store.append_message("ses-1", Role.USER, "tomato " + "z" * 400)
        items = MemoryRetriever(store).find_relevant("user-1", "tomato", limit=5, token_budget=1000)
        assert items[0].content == message.content
        assert items[0].token_count == message.token_count

    def test_limit(self, store, session):
        add_history(store, "ses-1", [("user", f"tomato note {i}") for i in range(6)])
        items = MemoryRetriever(store).find_relevant("user-1", "tomato", limit=3, token_budget=1000)
        assert len(items) == 3

    def test_exclude_session(self, store, session):
        store.create_session("user-1", session_id="ses-2")
        store.append_message("ses-1", Role.USER, "tomato in session one")
        store.append_message("ses-2", Role.USER, "tomato in session two")
        items = MemoryRetriever(store).find_relevant(
            "user-1", "tomato", exclude_session_id="ses-1", limit=5, token_budget=100
        )
        assert [i.session_id for i in items] == ["ses-2"]


class TestRetrieverEdgeCases:
    def test_blank_query(self, store, session):
        assert MemoryRetriever(store).find_relevant("user-1", "   ", token_budget=100) == []

    def test_zero_budget(self, store, session):
        store.append_message("ses-1", Role.USER, "tomato")
        assert MemoryRetriever(store).find_relevant("user-1", "tomato", token_budget=0) == []

    def test_negative_budget(self, store):
        with pytest.raises(ValidationError):
            MemoryRetriever(store).find_relevant("user-1", "tomato", token_budget=-5)

    def test_missing_user(self, store):
        with pytest.raises(ValidationError):
            MemoryRetriever(store).find_relevant("", "tomato", token_budget=10)

    def test_store_failure_is_retriever_unavailable(self):
        store = MagicMock()
        store.keyword_items.side_effect = StoreUnavailable("down")
        with pytest.raises(RetrieverUnavailable):
            MemoryRetriever(store).find_relevant("user-1", "tomato plants", token_budget=10)


class TestSemanticRetrieval:
    def test_semantic_ranking(self, store, session):
        close = store.append_message("ses-1", Role.USER, "greenhouse heating")
        far = store.append_message("ses-1", Role.USER, "car insurance")
        model = fake_embeddings({
            "greenhouse heating": [1.0, 0.0, 0.0],
            "car insurance": [0.0, 1.0, 0.0],
            "keeping plants warm in winter": [0.9, 0.1, 0.0],
        })
        retriever = MemoryRetriever(store, embedding_model=model)
        assert retriever.index_message(close) is True
        assert retriever.index_message(far) is True
        items = retriever.find_relevant("user-1", "keeping plants warm in winter", token_budget=100)
        assert [i.item_id for i in items] == [close.id, far.id]
        assert items[0].similarity > items[1].similarity

    def test_embedding_failure_falls_back_to_keywords(self, store, session):
        store.append_message("ses-1", Role.USER, "tomato blight")
        model = MagicMock()
        model.embed_query.side_effect = RuntimeError("rate limited")
        retriever = MemoryRetriever(store, embedding_model=model)
        items = retriever.find_relevant("user-1", "tomato", token_budget=100)
        assert [i.content for i in items] == ["tomato blight"]

    def test_store_without_vectors_disables_semantic(self):
        store = MagicMock()
        store.supports_vectors = False
        retriever = MemoryRetriever(store, embedding_model=MagicMock())
        assert retriever.semantic_enabled is False
        assert retriever.index_message(MagicMock(id="msg-1", content="x")) is False

    def test_index_summary(self):
        store = MagicMock()
        model = fake_embeddings({"summary": [1.0, 0.0, 0.0]})
        retriever = MemoryRetriever(store, embedding_model=model)
        assert retriever.index_summary("sum-1", "summary") is True
        store.set_embedding.assert_called_once_with(ItemKind.SUMMARY, "sum-1", [1.0, 0.0, 0.0])

    def test_index_failure_is_reported(self):
        store = MagicMock()
        store.set_embedding.side_effect = StoreUnavailable("down")
        retriever = MemoryRetriever(store, embedding_model=fake_embeddings({}))
        assert retriever.index_summary("sum-1", "summary") is False

    def test_backfill_embeddings(self, store, session):
        add_history(store, "ses-1", [("user", "one"), ("assistant", "two")])
        retriever = MemoryRetriever(store, embedding_model=fake_embeddings({}))
        assert retriever.backfill_embeddings("user-1") == 2
        assert store.messages_missing_embeddings("user-1") == []
        assert retriever.backfill_embeddings("user-1") == 0
