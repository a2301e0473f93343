"""
Memory configuration and importance-scoring settings.
"""

import json
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from .errors import ValidationError
from .models import Role


class FeedbackPolicy(str, Enum):
    """How user-flagged importance bounds a summary's aggregate importance."""

    FLOOR = "floor"  # summary >= lowest flagged feedback
    MAX = "max"  # summary >= highest flagged feedback


DEFAULT_ROLE_WEIGHTS: dict[Role, float] = {
    Role.SYSTEM: 0.3,
    Role.USER: 0.2,
    Role.ASSISTANT: 0.1,
}


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


def _importance_from_env() -> "ImportanceSettings":
    """MEMORY_IMPORTANCE_SETTINGS (a JSON object) layered over MEMORY_HALF_LIFE_HOURS."""
    data = {"half_life_hours": float(os.getenv("MEMORY_HALF_LIFE_HOURS", "72"))}
    raw = os.getenv("MEMORY_IMPORTANCE_SETTINGS", "").strip()
    if raw:
        try:
            overrides = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"MEMORY_IMPORTANCE_SETTINGS is not valid JSON: {e}") from e
        if not isinstance(overrides, dict):
            raise ValidationError("MEMORY_IMPORTANCE_SETTINGS must be a JSON object")
        data.update(overrides)
    return ImportanceSettings.from_dict(data)


@dataclass
class ImportanceSettings:
    """Typed inputs for the importance scorer."""

    half_life_hours: float = 72.0
    recency_floor: float = 0.5
    long_message_chars: int = 200
    short_message_chars: int = 50
    flagged_topics: frozenset[str] = frozenset()
    role_weights: dict[Role, float] = field(
        default_factory=lambda: dict(DEFAULT_ROLE_WEIGHTS)
    )

    @classmethod
    def from_dict(cls, data: dict) -> "ImportanceSettings":
        """
        Build settings from a loosely-typed mapping (e.g. a stored user
        preference blob). Unknown roles and out-of-range values are rejected.
        """
        known = {
            "half_life_hours",
            "recency_floor",
            "long_message_chars",
            "short_message_chars",
            "flagged_topics",
            "role_weights",
        }
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown importance settings: {sorted(unknown)}")

        kwargs = {k: v for k, v in data.items() if k not in ("flagged_topics", "role_weights")}
        if "flagged_topics" in data:
            kwargs["flagged_topics"] = frozenset(
                str(t).strip().lower() for t in data["flagged_topics"] if str(t).strip()
            )
        if "role_weights" in data:
            weights = dict(DEFAULT_ROLE_WEIGHTS)
            for role, weight in data["role_weights"].items():
                try:
                    weights[Role(role)] = float(weight)
                except ValueError:
                    raise ValidationError(f"Invalid role weight: {role}={weight}")
            kwargs["role_weights"] = weights

        settings = cls(**kwargs)
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.half_life_hours <= 0:
            raise ValidationError("half_life_hours must be positive")
        if not 0.0 <= self.recency_floor <= 1.0:
            raise ValidationError("recency_floor must be within [0, 1]")
        if self.short_message_chars < 0 or self.long_message_chars < 0:
            raise ValidationError("message length thresholds must be non-negative")


@dataclass
class MemoryConfig:
    """Configuration for the memory engine."""

    # Context assembly
    token_budget: int = 4000
    recent_ratio: float = 0.60
    retrieval_ratio: float = 0.20  # the rest is reserved for system prompt + current turn
    importance_floor: float = 0.0
    recent_window_messages: int = 100
    retrieval_limit: int = 10
    context_timeout_seconds: float = 2.0

    # Compression
    compression_age_days: float = 7.0
    compression_min_batch: int = 10
    compress_active_sessions: bool = False
    max_summary_tokens: int = 500
    summary_feedback_policy: FeedbackPolicy = FeedbackPolicy.FLOOR

    # Diagnostics retention
    access_retention_days: int = 90

    # Store
    store_retry_delay_seconds: float = 0.2
    db_pool_size: int = 10
    db_connect_timeout_seconds: float = 5.0

    # Background work
    worker_count: int = 2
    compression_interval_seconds: float = 3600.0

    # Embeddings / summarisation LLM (empty = disabled)
    embedding_model: str = ""
    embedding_base_url: str = ""
    embedding_api_key: str = ""
    summary_model: str = ""

    importance: ImportanceSettings = field(default_factory=ImportanceSettings)

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        config = cls(
            token_budget=int(os.getenv("MEMORY_TOKEN_BUDGET", "4000")),
            recent_ratio=float(os.getenv("MEMORY_RECENT_RATIO", "0.6")),
            retrieval_ratio=float(os.getenv("MEMORY_RETRIEVAL_RATIO", "0.2")),
            importance_floor=float(os.getenv("MEMORY_IMPORTANCE_FLOOR", "0")),
            recent_window_messages=int(os.getenv("MEMORY_RECENT_WINDOW", "100")),
            retrieval_limit=int(os.getenv("MEMORY_RETRIEVAL_LIMIT", "10")),
            context_timeout_seconds=float(os.getenv("MEMORY_CONTEXT_TIMEOUT", "2.0")),
            compression_age_days=float(os.getenv("MEMORY_COMPRESSION_AGE_DAYS", "7")),
            compression_min_batch=int(os.getenv("MEMORY_COMPRESSION_MIN_BATCH", "10")),
            compress_active_sessions=_env_bool("MEMORY_COMPRESS_ACTIVE_SESSIONS", "false"),
            max_summary_tokens=int(os.getenv("MEMORY_MAX_SUMMARY_TOKENS", "500")),
            summary_feedback_policy=FeedbackPolicy(
                os.getenv("MEMORY_SUMMARY_FEEDBACK_POLICY", "floor").lower()
            ),
            access_retention_days=int(os.getenv("MEMORY_ACCESS_RETENTION_DAYS", "90")),
            db_pool_size=int(os.getenv("MEMORY_DB_POOL_SIZE", "10")),
            db_connect_timeout_seconds=float(os.getenv("MEMORY_DB_CONNECT_TIMEOUT", "5")),
            worker_count=int(os.getenv("MEMORY_WORKERS", "2")),
            compression_interval_seconds=float(
                os.getenv("MEMORY_COMPRESSION_INTERVAL", "3600")
            ),
            embedding_model=os.getenv("MEMORY_EMBEDDING_MODEL", ""),
            embedding_base_url=os.getenv("MEMORY_EMBEDDING_BASE_URL", ""),
            embedding_api_key=os.getenv("MEMORY_EMBEDDING_API_KEY", ""),
            summary_model=os.getenv("MEMORY_SUMMARY_MODEL", ""),
            importance=_importance_from_env(),
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Reject configurations the assembler or compressor cannot honour."""
        if self.token_budget < 0:
            raise ValidationError("token_budget must be non-negative")
        if self.recent_ratio < 0 or self.retrieval_ratio < 0:
            raise ValidationError("budget ratios must be non-negative")
        if self.recent_ratio + self.retrieval_ratio > 1.0:
            raise ValidationError("recent_ratio + retrieval_ratio must not exceed 1.0")
        if not 0.0 <= self.importance_floor <= 1.0:
            raise ValidationError("importance_floor must be within [0, 1]")
        if self.recent_window_messages <= 0 or self.retrieval_limit < 0:
            raise ValidationError("window sizes must be positive")
        if self.context_timeout_seconds <= 0:
            raise ValidationError("context_timeout_seconds must be positive")
        if self.compression_age_days < 0 or self.compression_min_batch < 1:
            raise ValidationError("invalid compression trigger")
        if self.worker_count < 1:
            raise ValidationError("worker_count must be at least 1")
        if self.db_pool_size < 1 or self.db_connect_timeout_seconds <= 0:
            raise ValidationError("invalid database pool settings")
        self.importance.validate()

    def adopt(
        self,
        optimization,
        token_budget: bool = True,
        compression_threshold: bool = True,
    ) -> "MemoryConfig":
        """
        Return a copy of this config with an analytics recommendation applied.

        Recommendations are never applied implicitly; an operator (or a
        settings layer) calls this and hands the result back to the engine.
        """
        changes: dict = {}
        if token_budget:
            changes["token_budget"] = int(optimization.suggested_token_budget)
        if compression_threshold:
            changes["compression_min_batch"] = int(
                optimization.suggested_compression_threshold
            )
        adopted = replace(self, **changes)
        adopted.validate()
        return adopted

    def summary_model_name(self) -> Optional[str]:
        return self.summary_model or None
