"""
Relevance retriever.

Finds historical material (unsummarized messages and memory summaries) for a
user by similarity to a query, independent of recency.

Retrieval strategy:
  - Semantic: embed the query with the configured embedding model
    (LangChain Embeddings interface) and rank by cosine similarity
  - Fallback: keyword matching over summaries and messages when no embedding
    model is configured, the store has no vector support, or embedding fails.
    This is a documented degrade path, not an error.

Ranking: similarity descending, ties broken by recency descending.
Budget: items are taken greedily in rank order; the first item that would
overflow the token budget stops the walk. Items are never truncated.
"""

import logging
from typing import Optional

from .errors import MemoryEngineError, RetrieverUnavailable, ValidationError
from .keywords import extract_keywords
from .models import ItemKind, Message, RetrievedItem
from .store import MemoryStore, rank_items

logger = logging.getLogger(__name__)

# Candidates pulled from the store per requested result
CANDIDATE_MULTIPLIER = 3


def _apply_budget(items: list[RetrievedItem], limit: int, token_budget: int) -> list[RetrievedItem]:
    selected: list[RetrievedItem] = []
    used = 0
    for item in items:
        if len(selected) >= limit:
            break
        if used + item.token_count > token_budget:
            break
        selected.append(item)
        used += item.token_count
    return selected


class MemoryRetriever:
    """
    Ranks a user's history by relevance to a query.

    Uses the embedding model for semantic search when available.
    Falls back to keyword search otherwise.
    """

    def __init__(self, store: MemoryStore, embedding_model=None):
        self._store = store
        self._embedding_model = embedding_model

    @property
    def semantic_enabled(self) -> bool:
        return self._embedding_model is not None and getattr(self._store, "supports_vectors", True)

    def _embed(self, text: str) -> Optional[list[float]]:
        """Embed text using the configured embedding model."""
        if not self.semantic_enabled:
            return None
        try:
            return self._embedding_model.embed_query(text)
        except Exception as e:
            logger.warning("Embedding failed: %s", e)
            return None

    def find_relevant(
        self,
        user_id: str,
        query: str,
        exclude_session_id: Optional[str] = None,
        limit: int = 10,
        token_budget: int = 0,
    ) -> list[RetrievedItem]:
        """
        Return up to `limit` items whose combined token count fits `token_budget`.

        Raises RetrieverUnavailable if the search backend fails.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if token_budget < 0 or limit < 0:
            raise ValidationError("limit and token_budget must be non-negative")
        if not query or not query.strip() or limit == 0 or token_budget == 0:
            return []

        fetch = max(limit * CANDIDATE_MULTIPLIER, limit)
        try:
            embedding = self._embed(query)
            if embedding is not None:
                candidates = self._store.similar_items(
                    user_id, embedding, exclude_session_id=exclude_session_id, limit=fetch
                )
                mode = "semantic"
            else:
                keywords = extract_keywords(query)
                candidates = self._store.keyword_items(
                    user_id, keywords, exclude_session_id=exclude_session_id, limit=fetch
                )
                mode = "keyword"
        except MemoryEngineError as e:
            raise RetrieverUnavailable(f"Relevance search failed: {e}") from e

        results = _apply_budget(rank_items(candidates), limit, token_budget)
        logger.debug(
            "Retrieved %d/%d %s candidates for user %s (%d token budget)",
            len(results), len(candidates), mode, user_id, token_budget,
        )
        return results

    def index_message(self, message: Message) -> bool:
        """Embed and store a freshly written message. Returns True if indexed."""
        embedding = self._embed(message.content)
        if embedding is None:
            return False
        try:
            self._store.set_embedding(ItemKind.MESSAGE, message.id, embedding)
        except MemoryEngineError as e:
            logger.warning("Failed to store embedding for message %s: %s", message.id, e)
            return False
        return True

    def index_summary(self, summary_id: str, content: str) -> bool:
        embedding = self._embed(content)
        if embedding is None:
            return False
        try:
            self._store.set_embedding(ItemKind.SUMMARY, summary_id, embedding)
        except MemoryEngineError as e:
            logger.warning("Failed to store embedding for summary %s: %s", summary_id, e)
            return False
        return True

    def backfill_embeddings(self, user_id: str, batch_size: int = 100) -> int:
        """Embed messages that were written without a vector. Returns count indexed."""
        if not self.semantic_enabled:
            return 0
        indexed = 0
        for message in self._store.messages_missing_embeddings(user_id, limit=batch_size):
            if self.index_message(message):
                indexed += 1
        if indexed:
            logger.info("Back-filled %d embeddings for user %s", indexed, user_id)
        return indexed
