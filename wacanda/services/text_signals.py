"""Lexicon heuristics shared by the composer and the handoff evaluator."""

import re
from typing import Iterable, List

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
        "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does", "did",
        "will", "would", "could", "should",
    }
)

NEGATIVE_WORDS = frozenset(
    {
        "angry", "frustrated", "upset", "disappointed", "terrible", "awful", "hate", "worst",
        "bad", "problem", "issue", "broken", "wrong",
    }
)

POSITIVE_WORDS = frozenset(
    {
        "great", "good", "excellent", "love", "perfect", "amazing", "wonderful", "thank",
        "thanks", "appreciate", "happy", "satisfied",
    }
)

_PUNCTUATION = re.compile(r"[^\w\s]")


def normalize_for_matching(text: str) -> str:
    return " ".join(_PUNCTUATION.sub("", (text or "").lower()).split())


def extract_keywords(text: str) -> List[str]:
    """Unique lowercase words longer than 3 chars, stop words removed, first-seen order."""
    seen = []
    for word in normalize_for_matching(text).split():
        if len(word) > 3 and word not in STOP_WORDS and word not in seen:
            seen.append(word)
    return seen


def keyword_overlap(query: str, texts: Iterable[str]) -> float:
    query_words = extract_keywords(query)
    if not query_words:
        return 0.0
    source_words = set(extract_keywords(" ".join(texts)))
    return sum(1 for word in query_words if word in source_words) / len(query_words)


def sentiment_score(texts: Iterable[str]) -> int:
    """Positive minus negative lexicon hits, substring matched like the keyword checks."""
    score = 0
    for text in texts:
        lowered = (text or "").lower()
        score += sum(1 for word in POSITIVE_WORDS if word in lowered)
        score -= sum(1 for word in NEGATIVE_WORDS if word in lowered)
    return score


def classify_sentiment(texts: Iterable[str]) -> str:
    score = sentiment_score(texts)
    if score < -1:
        return "negative"
    if score > 1:
        return "positive"
    return "neutral"
