"""Key-term extraction for lexical matching between conversations."""

import re
from collections import Counter
from typing import Iterable, List

from .models import Message

MIN_TERM_LENGTH = 3

# Letters and digits in any script; underscores split tokens.
_TOKEN_RE = re.compile(r"[^\W_]+")

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "up", "about", "into", "through",
        "during", "before", "after", "above", "below", "between", "among",
        "is", "am", "are", "was", "were", "be", "been", "being", "have",
        "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "this", "that", "these",
        "those", "i", "you", "he", "she", "it", "we", "they", "what",
        "which", "who", "when", "where", "why", "how", "all", "each",
        "every", "both", "few", "more", "most", "other", "some", "such",
        "no", "nor", "not", "only", "own", "same", "so", "than", "too",
        "very", "just", "now", "also", "here", "there", "then", "again",
        "further", "once", "please", "thank", "thanks", "hello", "hi",
        "hey", "bye", "goodbye", "yes", "ok", "okay", "well", "like",
        "know", "think", "want", "need", "get", "go", "come", "see",
        "look", "take", "give", "make", "tell", "ask", "work", "seem",
        "feel", "try", "leave", "call", "show",
    }
)


def tokenize(text: str, min_length: int = MIN_TERM_LENGTH) -> List[str]:
    """Lowercase text and return qualifying tokens in order of appearance."""
    return [
        token
        for token in _TOKEN_RE.findall(text.lower())
        if len(token) >= min_length and token not in STOP_WORDS
    ]


def extract_key_terms(
    text: str, limit: int = 10, min_length: int = MIN_TERM_LENGTH
) -> List[str]:
    """Return the ``limit`` most frequent terms in text.

    Ties keep first-occurrence order. Blank input yields an empty list.
    """
    if limit <= 0:
        return []

    tokens = tokenize(text, min_length)
    if not tokens:
        return []

    counts = Counter(tokens)
    first_seen = {}
    for position, token in enumerate(tokens):
        first_seen.setdefault(token, position)

    ranked = sorted(counts, key=lambda term: (-counts[term], first_seen[term]))
    return ranked[:limit]


def messages_text(messages: Iterable[Message]) -> str:
    """Concatenate the searchable text of a message sequence."""
    return " ".join(msg.text for msg in messages)


def extract_key_terms_from_messages(
    messages: Iterable[Message],
    limit: int = 15,
    min_length: int = MIN_TERM_LENGTH,
) -> List[str]:
    return extract_key_terms(messages_text(messages), limit, min_length)
