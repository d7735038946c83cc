"""Shared utility functions for semantic-memory."""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone

_TOKEN_RE = re.compile(r"[^\W_]+")  # alphanumeric runs, as the index tokenizer splits

# Dropped from full-text queries only; stored content is indexed verbatim.
STOP_WORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "but", "by", "for", "if", "in",
        "into", "is", "it", "no", "not", "of", "on", "or", "such", "that", "the",
        "their", "then", "there", "these", "they", "this", "to", "was", "will", "with",
    }
)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime. Naive values are taken as local time."""
    return value.astimezone(timezone.utc)


def to_iso(value: datetime) -> str:
    return to_utc(value).isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return to_utc(datetime.fromisoformat(value))


def escape_filter_value(value: str) -> str:
    """Escape single quotes in filter values to prevent injection."""
    return value.replace("'", "''")


def tokenize(text: str) -> list[str]:
    """Lower-cased word tokens with accents folded (matches the FTS index tokenizer)."""
    folded = unicodedata.normalize("NFKD", text)
    folded = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return _TOKEN_RE.findall(folded.lower())


def query_terms(query: str) -> list[str]:
    """Distinct non-stop-word terms of a full-text query, in query order."""
    return list(dict.fromkeys(t for t in tokenize(query) if t not in STOP_WORDS))
