"""
Importance scorer.

Assigns each message a scalar in [0, 1] from its role, content shape,
flagged topics and age. Explicit user feedback, when present, replaces the
heuristic entirely. Scoring is pure: callers persist the result.
"""

import re
from datetime import datetime
from typing import Optional

from .config import ImportanceSettings
from .models import Message, utcnow

BASE_SCORE = 0.5
QUESTION_BONUS = 0.2
LONG_MESSAGE_BONUS = 0.1
FLAGGED_TOPIC_BONUS = 0.2
ACKNOWLEDGEMENT_SCORE = 0.05

_ACKNOWLEDGEMENTS = {
    "ok", "okay", "k", "kk", "thanks", "thank you", "thx", "ty", "got it",
    "cool", "nice", "great", "sure", "yes", "no", "yep", "nope", "alright",
    "sounds good", "perfect", "lol",
}
_QUESTION_WORDS = re.compile(r"\b(how|what|why|when|where|which|who|can you|could you)\b")
_INSTRUCTION_MARKERS = re.compile(
    r"\b(always|never|remember|don't forget|do not|make sure|please|must|prefer)\b"
)
_NON_WORD = re.compile(r"[^\w\s']+")


def _is_acknowledgement(text: str, max_chars: int) -> bool:
    if len(text) >= max_chars:
        return False
    normalized = _NON_WORD.sub(" ", text.lower()).strip()
    normalized = " ".join(normalized.split())
    return normalized in _ACKNOWLEDGEMENTS


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ImportanceScorer:
    """Heuristic importance scorer with exponential recency decay."""

    def __init__(self, settings: Optional[ImportanceSettings] = None):
        self.settings = settings or ImportanceSettings()

    def score(self, message: Message, now: Optional[datetime] = None) -> float:
        """Score a message. Never raises for odd content; empty text scores 0.0."""
        if message.feedback is not None:
            return _clamp(message.feedback)

        content = (message.content or "").strip()
        if not content:
            return 0.0

        heuristic = self.content_score(message.role, content, message.topics)
        return _clamp(heuristic * self.recency_factor(message.created_at, now))

    def content_score(self, role, content: str, topics: Optional[list[str]] = None) -> float:
        """Age-independent part of the score."""
        s = self.settings
        if _is_acknowledgement(content, s.short_message_chars):
            return ACKNOWLEDGEMENT_SCORE

        score = BASE_SCORE + s.role_weights.get(role, 0.0)

        lowered = content.lower()
        if "?" in content or _QUESTION_WORDS.search(lowered) or _INSTRUCTION_MARKERS.search(lowered):
            score += QUESTION_BONUS

        if len(content) > s.long_message_chars:
            score += LONG_MESSAGE_BONUS

        if s.flagged_topics:
            message_topics = {t.lower() for t in (topics or [])}
            if message_topics & s.flagged_topics or any(t in lowered for t in s.flagged_topics):
                score += FLAGGED_TOPIC_BONUS

        return _clamp(score)

    def recency_factor(self, created_at: datetime, now: Optional[datetime] = None) -> float:
        """recency_floor + (1 - recency_floor) * 0.5 ** (age / half_life)."""
        s = self.settings
        now = now or utcnow()
        age_hours = max((now - created_at).total_seconds() / 3600.0, 0.0)
        decay = 0.5 ** (age_hours / s.half_life_hours)
        return s.recency_floor + (1.0 - s.recency_floor) * decay
