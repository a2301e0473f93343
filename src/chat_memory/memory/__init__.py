"""
Memory subsystem: token-budgeted context assembly over a durable store.

- Recent tier: latest unsummarized messages of the session, verbatim (~60% budget)
- Retrieved tier: relevance-ranked history from any session of the user (~20% budget)
- Reserve: system prompt and current turn (~20% budget, never consumed here)

Aged messages are folded into summaries by the compression engine; the
analytics engine reports usage and suggests tuning values.
"""

from .analytics import AnalyticsEngine, MemoryInsights, MemoryOptimization, MemoryTrends
from .assembler import ContextAssembler, ContextResult
from .config import FeedbackPolicy, ImportanceSettings, MemoryConfig
from .errors import (
    CompressionConflict,
    MemoryEngineError,
    MessageNotFound,
    NotFound,
    RetrieverUnavailable,
    SessionNotFound,
    StoreUnavailable,
    SummaryNotFound,
    ValidationError,
)
from .importance import ImportanceScorer
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
)
from .retriever import MemoryRetriever
from .store import InMemoryMemoryStore, MemoryStore, SessionLocks
from .summarizer import CompressionEngine, ConversationSummarizer
from .token_budget import (
    TokenBudget,
    calculate_budget,
    estimate_tokens,
)

__all__ = [
    "AccessType",
    "AnalyticsEngine",
    "CompressionConflict",
    "CompressionEngine",
    "ContextAssembler",
    "ContextResult",
    "ConversationSummarizer",
    "FeedbackPolicy",
    "ImportanceScorer",
    "ImportanceSettings",
    "InMemoryMemoryStore",
    "ItemKind",
    "MemoryAccessRecord",
    "MemoryConfig",
    "MemoryEngineError",
    "MemoryInsights",
    "MemoryOptimization",
    "MemoryRetriever",
    "MemoryStore",
    "MemorySummary",
    "MemoryTrends",
    "Message",
    "MessageNotFound",
    "NotFound",
    "RetrievedItem",
    "RetrieverUnavailable",
    "Role",
    "Session",
    "SessionLocks",
    "SessionNotFound",
    "StoreUnavailable",
    "SummaryKind",
    "SummaryNotFound",
    "TokenBudget",
    "ValidationError",
    "calculate_budget",
    "estimate_tokens",
]
