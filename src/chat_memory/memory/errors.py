"""
Error taxonomy for the memory engine.

Only ValidationError and StoreUnavailable are allowed to fail a chat turn.
Everything else is either reported to an operator (NotFound) or absorbed by
a degrade-gracefully path (RetrieverUnavailable, CompressionConflict).
"""


class MemoryEngineError(Exception):
    """Base class for all memory engine errors."""


class ValidationError(MemoryEngineError, ValueError):
    """Bad identifiers, negative budgets or malformed configuration."""


class StoreUnavailable(MemoryEngineError):
    """The memory store could not be reached (after one retry)."""


class RetrieverUnavailable(MemoryEngineError):
    """The relevance retriever failed. Callers degrade to verbatim-only context."""


class CompressionConflict(MemoryEngineError):
    """Another compression already summarized part of the batch."""


class NotFound(MemoryEngineError, LookupError):
    """A referenced record does not exist."""


class SessionNotFound(NotFound):
    pass


class MessageNotFound(NotFound):
    pass


class SummaryNotFound(NotFound):
    pass
