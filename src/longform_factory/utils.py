from __future__ import annotations

import re

_WHITESPACE_RE = re.compile(r"\s+")


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len([word for word in _WHITESPACE_RE.split(text.strip()) if word])


def tail_words(text: str, limit: int) -> str:
    """Return the last *limit* words of *text*, whitespace-normalized."""
    if limit <= 0 or not text:
        return ""
    words = [word for word in _WHITESPACE_RE.split(text.strip()) if word]
    return " ".join(words[-limit:])


def normalize_identifier(value: str) -> str:
    return _WHITESPACE_RE.sub("_", value.strip().lower())


def preview(value: str, *, max_length: int = 50) -> str:
    if len(value) <= max_length:
        return value
    return value[:max_length] + "..."


def within_band(size: int, target: int, *, low: float, high: float) -> bool:
    return target * low <= size <= target * high
