"""Token estimation shared by chunking and chunk storage."""

from __future__ import annotations

def word_count(text: str) -> int:
    """Count non-empty whitespace-separated tokens."""
    return len(text.split())


def tokens_for_words(words: int) -> int:
    # ceil(words * 1.3) in integer arithmetic
    return (words * 13 + 9) // 10


def estimate_tokens(text: str) -> int:
    """Estimate token count as ``ceil(words * 1.3)``; empty text is zero tokens."""
    return tokens_for_words(word_count(text or ""))
