"""
chat-memory: long-term conversational memory for multi-session chat.

Decides, on every turn, which prior messages to show the model verbatim,
which to fold into summaries, and which to retrieve by relevance.
"""

from .engine import MemoryEngine, create_memory_engine
from .memory import (
    ContextResult,
    MemoryConfig,
    MemoryEngineError,
    Role,
)
from .scheduler import CompressionScheduler

__version__ = "0.1.0"

__all__ = [
    "CompressionScheduler",
    "ContextResult",
    "MemoryConfig",
    "MemoryEngine",
    "MemoryEngineError",
    "Role",
    "create_memory_engine",
]
