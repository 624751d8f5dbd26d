"""Adaptive chunking of normalized record text.

Structured record summaries are kept whole. Free text is packed paragraph by
paragraph up to a per-type token budget, and every chunk after the first
starts with the tail of its predecessor so neighbouring chunks share context.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from ragsync.core.token_utils import estimate_tokens
from ragsync.services.cleaning import normalize_whitespace

STRUCTURED_SOURCE_TYPES = frozenset(
    {
        "qbo_invoice",
        "qbo_estimate",
        "qbo_customer",
        "shopify_order",
        "amazon_order",
        "order",
        "shopify_customer",
        "shipstation_shipment",
    }
)

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class ChunkConfig:
    max_tokens: int
    overlap_tokens: int


DEFAULT_OVERLAP_TOKENS = 40

CHUNK_CONFIG: dict[str, ChunkConfig] = {
    "ticket": ChunkConfig(max_tokens=380, overlap_tokens=DEFAULT_OVERLAP_TOKENS),
    "ticket_comment": ChunkConfig(max_tokens=320, overlap_tokens=DEFAULT_OVERLAP_TOKENS),
    "email": ChunkConfig(max_tokens=360, overlap_tokens=DEFAULT_OVERLAP_TOKENS),
    "interaction": ChunkConfig(max_tokens=320, overlap_tokens=DEFAULT_OVERLAP_TOKENS),
    "structured": ChunkConfig(max_tokens=240, overlap_tokens=DEFAULT_OVERLAP_TOKENS),
}

DEFAULT_CHUNK_CONFIG = CHUNK_CONFIG["ticket"]


def chunk_config_for(source_type: str) -> ChunkConfig:
    if source_type in STRUCTURED_SOURCE_TYPES:
        return CHUNK_CONFIG["structured"]
    return CHUNK_CONFIG.get(source_type, DEFAULT_CHUNK_CONFIG)


def _tail_words(text: str, count: int) -> list[str]:
    if count <= 0:
        return []
    return text.split()[-count:]


def split_into_windows(words: list[str], window: int, overlap: int) -> list[str]:
    """Hard-split a word list into ``window``-word slices overlapping by ``overlap`` words."""
    window = max(1, window)
    overlap = max(0, min(overlap, window - 1))
    chunks: list[str] = []
    start = 0
    while start < len(words):
        end = min(len(words), start + window)
        chunks.append(" ".join(words[start:end]))
        if end >= len(words):
            break
        start = end - overlap
    return chunks


def chunk_paragraphs(text: str, max_tokens: int, overlap_tokens: int) -> list[str]:
    paragraphs = [p for p in (normalize_whitespace(part) for part in _PARAGRAPH_SPLIT.split(text)) if p]
    chunks: list[str] = []
    current: list[str] = []
    current_tokens = 0
    carry: list[str] = []

    def flush() -> None:
        nonlocal current, current_tokens, carry
        if not current:
            return
        parts = ([" ".join(carry)] if carry else []) + current
        chunk = "\n\n".join(parts)
        chunks.append(chunk)
        carry = _tail_words(chunk, overlap_tokens)
        current = []
        current_tokens = 0

    for paragraph in paragraphs:
        paragraph_tokens = estimate_tokens(paragraph)
        if paragraph_tokens > max_tokens:
            flush()
            windows = split_into_windows(carry + paragraph.split(), max_tokens, overlap_tokens)
            chunks.extend(windows)
            carry = _tail_words(windows[-1], overlap_tokens)
            continue

        if current and current_tokens + paragraph_tokens > max_tokens:
            flush()

        current.append(paragraph)
        current_tokens += paragraph_tokens

    flush()
    return chunks


def chunk_text(source_type: str, raw_text: str, config: ChunkConfig | None = None) -> list[str]:
    normalized = normalize_whitespace(raw_text or "")
    if not normalized:
        return []
    if source_type in STRUCTURED_SOURCE_TYPES:
        return [normalized]
    cfg = config or chunk_config_for(source_type)
    return chunk_paragraphs(normalized, cfg.max_tokens, cfg.overlap_tokens)
