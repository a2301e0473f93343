"""
Token estimation and budget split for context assembly.

Counts are cached on messages at write time and never recomputed, so the
estimator must stay deterministic across releases.
"""

import math
from dataclasses import dataclass

from .config import MemoryConfig
from .errors import ValidationError


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~4 chars per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


@dataclass
class TokenBudget:
    """Token allocation for one context assembly."""

    total: int
    recent_max: int  # verbatim recent messages
    retrieval_max: int  # relevance-retrieved history
    reserve: int  # system prompt + current turn, never spent by the assembler


def calculate_budget(config: MemoryConfig, token_budget: int) -> TokenBudget:
    """
    Split a total budget into recent / retrieval / reserve shares.

    recent = floor(recent_ratio * total), retrieval = floor(retrieval_ratio * total);
    the reserve is whatever remains.
    """
    if token_budget is None or token_budget < 0:
        raise ValidationError(f"token_budget must be a non-negative integer, got {token_budget!r}")

    recent = math.floor(token_budget * config.recent_ratio)
    retrieval = math.floor(token_budget * config.retrieval_ratio)
    return TokenBudget(
        total=token_budget,
        recent_max=recent,
        retrieval_max=retrieval,
        reserve=token_budget - recent - retrieval,
    )
