"""Text normalization applied to records before chunking."""

from __future__ import annotations

import re

_REPLY_SPLIT_PATTERNS = (
    re.compile(r"^\s*On\s.+?wrote:\s*$", re.IGNORECASE),
    re.compile(r"^\s*From:\s.+", re.IGNORECASE),
    re.compile(r"^\s*Sent:\s.+", re.IGNORECASE),
    re.compile(r"^\s*To:\s.+", re.IGNORECASE),
    re.compile(r"^\s*Subject:\s.+", re.IGNORECASE),
    re.compile(r"^\s*-{2,}\s*Original Message\s*-{2,}\s*$", re.IGNORECASE),
    re.compile(r"^\s*-{3,}\s*Forwarded message\s*-{3,}\s*$", re.IGNORECASE),
    re.compile(r"^\s*Begin forwarded message\s*:?\s*$", re.IGNORECASE),
    re.compile(r"^\s*Forwarded message\s*:?\s*$", re.IGNORECASE),
    re.compile(r"^\s*Auto(?:matic)?\s*reply\s*:?\s*$", re.IGNORECASE),
)

_SIGNATURE_MARKERS = (
    re.compile(r"^\s*--\s*$"),
    re.compile(r"^\s*__+\s*$"),
    re.compile(r"^\s*thanks[,!]?\s*$", re.IGNORECASE),
    re.compile(r"^\s*best[\s,]*$", re.IGNORECASE),
    re.compile(r"^\s*regards[\s,]*$", re.IGNORECASE),
    re.compile(r"^\s*sent from my\s", re.IGNORECASE),
    re.compile(r"^\s*confidentiality notice", re.IGNORECASE),
    re.compile(r"^\s*this email and any attachments", re.IGNORECASE),
    re.compile(r"^\s*disclaimer:", re.IGNORECASE),
)

_AUTO_REPLY_LINES = (
    re.compile(r"^\s*out of office", re.IGNORECASE),
    re.compile(r"^\s*i am currently out of the office", re.IGNORECASE),
    re.compile(r"^\s*this is an automated message", re.IGNORECASE),
)

# signatures are only searched for near the end of a message
_SIGNATURE_SCAN_LINES = 15

_HTML_BREAKS = re.compile(r"<\s*br\s*/?>", re.IGNORECASE)
_HTML_PARAGRAPHS = re.compile(r"<\s*/?p\s*>", re.IGNORECASE)
_HTML_TAGS = re.compile(r"<[^>]*>")
_HTML_ENTITIES = (("&nbsp;", " "), ("&amp;", "&"), ("&lt;", "<"), ("&gt;", ">"))


def normalize_whitespace(value: str) -> str:
    text = re.sub(r"\r\n?", "\n", value or "")
    text = text.replace("\t", " ").replace("\u00a0", " ")
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = re.sub(r" {2,}", " ", text)
    return text.strip()


def strip_html(value: str) -> str:
    text = _HTML_BREAKS.sub("\n", value or "")
    text = _HTML_PARAGRAPHS.sub("\n", text)
    text = _HTML_TAGS.sub("", text)
    for entity, replacement in _HTML_ENTITIES:
        text = re.sub(re.escape(entity), replacement, text, flags=re.IGNORECASE)
    return text


def _split_at_reply_boundary(lines: list[str]) -> list[str]:
    for index, line in enumerate(lines):
        if any(pattern.search(line) for pattern in _REPLY_SPLIT_PATTERNS):
            return lines[:index]
    return lines


def _truncate_at_signature(lines: list[str]) -> list[str]:
    start = max(0, len(lines) - _SIGNATURE_SCAN_LINES)
    for index in range(start, len(lines)):
        if any(pattern.search(lines[index]) for pattern in _SIGNATURE_MARKERS):
            return [line for line in lines[:index] if line.strip()]
    return lines


def clean_email_text(value: str) -> str:
    """Drop quoted history, reply chains, auto-reply banners and signatures."""
    raw = normalize_whitespace(strip_html(value or ""))
    if not raw:
        return ""
    lines = [line for line in raw.split("\n") if not line.lstrip().startswith(">")]
    lines = _split_at_reply_boundary(lines)
    lines = [line for line in lines if not any(pattern.search(line) for pattern in _AUTO_REPLY_LINES)]
    lines = _truncate_at_signature(lines)
    return normalize_whitespace("\n".join(lines))


def clean_ticket_text(value: str) -> str:
    return normalize_whitespace(strip_html(value or ""))


def clean_structured_text(value: str) -> str:
    return normalize_whitespace(value or "")
