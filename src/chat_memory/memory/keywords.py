"""
Keyword and topic extraction shared by the retriever fallback and the
extractive summarizer.
"""

import re
from collections import Counter

STOPWORDS = frozenset(
    """
    about above after again against also because been before being below between
    both cannot could does doing down during each few from further have having here
    hers herself himself into itself just more most myself once only other ought ours
    ourselves over same should some such than that their theirs them themselves then
    there these they this those through under until very were what when where which
    while whom will with would your yours yourself yourselves thanks thank please
    really think know like want need going gonna sure okay yeah
    """.split()
)

_WORD = re.compile(r"[a-z0-9][a-z0-9_'-]*")


def tokenize_words(text: str) -> list[str]:
    return _WORD.findall((text or "").lower())


def extract_keywords(text: str, limit: int = 8, min_length: int = 4) -> list[str]:
    """Distinct content words in first-seen order."""
    seen: list[str] = []
    for word in tokenize_words(text):
        word = word.strip("'-_")
        if len(word) < min_length or word in STOPWORDS or word in seen:
            continue
        seen.append(word)
        if len(seen) >= limit:
            break
    return seen


def extract_topics(texts: list[str], limit: int = 10, min_length: int = 5) -> list[str]:
    """Most frequent content words across texts (ties keep first-seen order)."""
    counts: Counter = Counter()
    for text in texts:
        for word in tokenize_words(text):
            word = word.strip("'-_")
            if len(word) >= min_length and word not in STOPWORDS and not word.isdigit():
                counts[word] += 1
    return [word for word, _ in counts.most_common(limit)]


def keyword_similarity(keywords: list[str], content: str) -> float:
    """Fraction of keywords contained in content (case-insensitive)."""
    if not keywords:
        return 0.0
    lowered = (content or "").lower()
    hits = sum(1 for k in keywords if k in lowered)
    return hits / len(keywords)
