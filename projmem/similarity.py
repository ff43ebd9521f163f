"""
Token-set similarity used for deduplication and keyword search.
"""

import re
from collections.abc import Iterable
from typing import Optional

from .types import Memory, MemoryType


STOP_WORDS = frozenset({
    "the", "a", "an", "is", "are", "was", "were", "using", "with", "for",
    "to", "in", "on", "of", "and", "that", "this", "it", "be", "as", "at",
    "by", "from", "or", "not", "but", "have", "has", "had", "do", "does",
    "did", "will", "would", "could", "should", "may", "might", "can",
    "we", "our", "they", "them", "its", "use", "used", "all", "each",
})

_NON_TOKEN_RE = re.compile(r"[^a-z0-9\s]")

# Points per query token found in content / in tags
CONTENT_HIT_SCORE = 2
TAG_HIT_SCORE = 3


def tokenize(text: str) -> set[str]:
    """Normalize text to a set of significant lowercase tokens.

    Punctuation is removed (not replaced), so "app-router" becomes
    "approuter". Tokens of two characters or fewer and stop words are dropped.
    """
    cleaned = _NON_TOKEN_RE.sub("", text.lower())
    return {w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS}


def jaccard(a: set[str], b: set[str]) -> float:
    """Intersection over union. Two empty sets are identical (1.0)."""
    if not a and not b:
        return 1.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


def score_search(query: set[str], memory: Memory) -> int:
    """Keyword score of a memory against tokenized query terms."""
    content_tokens = tokenize(memory.content)
    tag_tokens = {t.lower() for t in memory.tags}
    score = 0
    for q in query:
        if q in content_tokens:
            score += CONTENT_HIT_SCORE
        if q in tag_tokens:
            score += TAG_HIT_SCORE
    return score


def find_superseded(
    memories: Iterable[Memory],
    type: MemoryType,
    old_content: str,
    threshold: float = 0.5,
) -> Optional[Memory]:
    """Find the prior memory that a replacement describes by its old text.

    Returns the first memory of the same type whose similarity to
    ``old_content`` exceeds ``threshold``, or None.
    """
    old_tokens = tokenize(old_content)
    for m in memories:
        if m.type != type:
            continue
        if jaccard(old_tokens, tokenize(m.content)) > threshold:
            return m
    return None
