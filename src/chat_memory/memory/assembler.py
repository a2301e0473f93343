"""
Context assembler.

Builds the token-bounded context for one chat turn from two sources:

- Recent (verbatim): the session's latest unsummarized messages (~60% budget)
- Retrieved: relevance-ranked history from any of the user's sessions (~20% budget)

The remaining share is reserved for the system prompt and the current turn;
the assembler subtracts it up front and never spends it.

The store read and the retrieval call run concurrently under one latency
budget, on separate worker pools so retrievals stuck past their deadline can
never occupy the threads that read recent messages. A slow or failing retriever degrades the result to verbatim-only;
a failing store fails the turn, since an empty context would tell the model
there is no history.
"""

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from .config import MemoryConfig
from .errors import (
    MemoryEngineError,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from .importance import ImportanceScorer
from .models import (
    AccessType,
    ItemKind,
    MemoryAccessRecord,
    Message,
    RetrievedItem,
    Role,
    new_id,
    utcnow,
)
from .retriever import MemoryRetriever
from .store import MemoryStore
from .token_budget import TokenBudget, calculate_budget

logger = logging.getLogger(__name__)

STORE_WORKERS = 4
RETRIEVAL_WORKERS = 4

_ROLE_TO_MESSAGE = {
    Role.USER: HumanMessage,
    Role.ASSISTANT: AIMessage,
    Role.SYSTEM: SystemMessage,
}


@dataclass
class ContextResult:
    """Output of one context assembly."""

    verbatim: list[Message] = field(default_factory=list)
    retrieved: list[RetrievedItem] = field(default_factory=list)
    used_tokens: int = 0
    budget: Optional[TokenBudget] = None
    degraded: bool = False  # retrieval skipped after a failure or timeout

    def to_messages(self) -> list:
        """
        Render as LangChain messages: one system block with relevant history,
        then the verbatim turns in chronological order.
        """
        result = []
        if self.retrieved:
            lines = [f"- {item.content}" for item in self.retrieved]
            result.append(
                SystemMessage(
                    content="[Relevant History]\n" + "\n".join(lines),
                    id="memory-relevant-history",
                )
            )
        for message in self.verbatim:
            message_cls = _ROLE_TO_MESSAGE[message.role]
            result.append(message_cls(content=message.content, id=message.id))
        return result


class ContextAssembler:
    """
    Token-budgeted context builder.

    Usage:
        assembler = ContextAssembler(store, retriever, scorer, config)
        result = assembler.build_context(user_id, session_id, "turn text", 4000)
        messages = result.to_messages()
    """

    def __init__(
        self,
        store: MemoryStore,
        retriever: Optional[MemoryRetriever] = None,
        scorer: Optional[ImportanceScorer] = None,
        config: Optional[MemoryConfig] = None,
        executor: Optional[Executor] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.config = config or MemoryConfig()
        self.scorer = scorer or ImportanceScorer(self.config.importance)
        self._owns_executor = executor is None
        self._retrieval_executor = executor or ThreadPoolExecutor(
            max_workers=RETRIEVAL_WORKERS, thread_name_prefix="memory-retrieval"
        )
        self._store_executor = ThreadPoolExecutor(
            max_workers=STORE_WORKERS, thread_name_prefix="memory-store"
        )
        # In-flight retrievals, including abandoned ones still running past their deadline
        self._retrieval_slots = threading.BoundedSemaphore(RETRIEVAL_WORKERS)

    def build_context(
        self,
        user_id: str,
        session_id: str,
        turn_text: str,
        token_budget: Optional[int] = None,
    ) -> ContextResult:
        """
        Assemble verbatim + retrieved context within token_budget.

        Raises ValidationError for bad ids/budgets and StoreUnavailable when the
        store cannot be read within the latency budget.
        """
        if not user_id or not session_id:
            raise ValidationError("user_id and session_id are required")
        total = self.config.token_budget if token_budget is None else token_budget
        budget = calculate_budget(self.config, total)

        deadline = time.monotonic() + self.config.context_timeout_seconds
        now = utcnow()

        recent_future = self._store_executor.submit(self._load_recent, user_id, session_id)
        retrieval_future = None
        retrieval_skipped = False
        if self.retriever is not None and budget.retrieval_max > 0:
            retrieval_future = self._submit_retrieval(user_id, turn_text, budget.retrieval_max)
            retrieval_skipped = retrieval_future is None

        window = self._await_recent(recent_future, deadline, session_id)
        scores = {m.id: self.scorer.score(m, now) for m in window}
        verbatim = self._select_recent(window, scores, budget.recent_max)

        retrieved: list[RetrievedItem] = []
        degraded = retrieval_skipped
        if retrieval_future is not None:
            retrieved, degraded = self._await_retrieval(retrieval_future, deadline, user_id)

        # Dedupe: a message included verbatim is never retrieved as well
        verbatim_ids = {m.id for m in verbatim}
        retrieved = [
            item for item in retrieved
            if not (item.item_kind == ItemKind.MESSAGE and item.item_id in verbatim_ids)
        ]

        used = sum(m.token_count for m in verbatim) + sum(i.token_count for i in retrieved)
        logger.debug(
            "Context for session %s: %d verbatim, %d retrieved, %d/%d tokens (reserve %d)%s",
            session_id, len(verbatim), len(retrieved), used, budget.total, budget.reserve,
            " [degraded]" if degraded else "",
        )

        self._persist_new_scores(window, scores)
        self._record_access(user_id, session_id, verbatim, scores, retrieved, now)

        return ContextResult(
            verbatim=verbatim,
            retrieved=retrieved,
            used_tokens=used,
            budget=budget,
            degraded=degraded,
        )

    def _submit_retrieval(self, user_id: str, turn_text: str, retrieval_max: int):
        """Queue a retrieval, or return None when every retrieval slot is still busy."""
        if not self._retrieval_slots.acquire(blocking=False):
            logger.warning("Retrieval workers busy for user %s, using verbatim-only context", user_id)
            return None
        try:
            future = self._retrieval_executor.submit(
                self.retriever.find_relevant,
                user_id,
                turn_text or "",
                None,  # same-session history is allowed
                self.config.retrieval_limit,
                retrieval_max,
            )
        except RuntimeError:
            self._retrieval_slots.release()
            raise
        future.add_done_callback(lambda _: self._retrieval_slots.release())
        return future

    def _load_recent(self, user_id: str, session_id: str) -> list[Message]:
        session = self.store.get_session(session_id)
        if session.user_id != user_id:
            raise ValidationError(f"Session {session_id} does not belong to user {user_id}")
        return self.store.recent_messages(session_id, self.config.recent_window_messages)

    def _await_recent(self, future, deadline: float, session_id: str) -> list[Message]:
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeout:
            future.cancel()
            raise StoreUnavailable(f"Timed out reading recent messages for session {session_id}")
        except NotFound as e:
            raise ValidationError(str(e)) from e
        except (ValidationError, StoreUnavailable):
            raise
        except Exception as e:
            raise StoreUnavailable(f"Failed to read recent messages: {e}") from e

    def _await_retrieval(self, future, deadline: float, user_id: str) -> tuple[list[RetrievedItem], bool]:
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0)), False
        except FutureTimeout:
            future.cancel()
            logger.warning("Retrieval timed out for user %s, using verbatim-only context", user_id)
        except Exception as e:
            logger.warning("Retrieval failed for user %s, using verbatim-only context: %s", user_id, e)
        return [], True

    def _select_recent(
        self, window: list[Message], scores: dict[str, float], recent_budget: int
    ) -> list[Message]:
        """
        Pick verbatim messages from a most-recent-first window.

        If the whole window fits it is kept; otherwise messages are ranked by
        (importance, sequence) and kept greedily, so the lowest-importance
        messages are the first to go. Messages are never truncated.
        Returns chronological order.
        """
        floor = self.config.importance_floor
        candidates = [m for m in window if scores[m.id] >= floor]

        if sum(m.token_count for m in candidates) <= recent_budget:
            selected = candidates
        else:
            ranked = sorted(candidates, key=lambda m: (scores[m.id], m.sequence), reverse=True)
            selected = []
            used = 0
            for message in ranked:
                if used + message.token_count <= recent_budget:
                    selected.append(message)
                    used += message.token_count
            logger.info(
                "Recent window over budget: kept %d/%d messages (%d/%d tokens)",
                len(selected), len(candidates), used, recent_budget,
            )

        return sorted(selected, key=lambda m: m.sequence)

    def _persist_new_scores(self, window: list[Message], scores: dict[str, float]) -> None:
        unscored = {m.id: scores[m.id] for m in window if m.importance is None}
        if not unscored:
            return
        try:
            self.store.set_importance(unscored)
        except MemoryEngineError as e:
            logger.warning("Failed to persist importance scores: %s", e)

    def _record_access(
        self,
        user_id: str,
        session_id: str,
        verbatim: list[Message],
        scores: dict[str, float],
        retrieved: list[RetrievedItem],
        now: datetime,
    ) -> None:
        records = [
            MemoryAccessRecord(
                id=new_id("acc"),
                user_id=user_id,
                session_id=session_id,
                item_id=m.id,
                item_kind=ItemKind.MESSAGE,
                access_type=AccessType.RECENT,
                relevance=scores[m.id],
                created_at=now,
            )
            for m in verbatim
        ]
        records.extend(
            MemoryAccessRecord(
                id=new_id("acc"),
                user_id=user_id,
                session_id=session_id,
                item_id=item.item_id,
                item_kind=item.item_kind,
                access_type=AccessType.RETRIEVED,
                relevance=item.similarity,
                created_at=now,
            )
            for item in retrieved
        )
        if not records:
            return
        try:
            self.store.record_access(records)
        except MemoryEngineError as e:
            logger.warning("Failed to record memory access: %s", e)

    def close(self) -> None:
        self._store_executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_executor:
            self._retrieval_executor.shutdown(wait=False, cancel_futures=True)
