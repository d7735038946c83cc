"""Shared data models for semantic-memory."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector


@lru_cache(maxsize=None)
def record_model(embedding_dim: int) -> type[LanceModel]:
    """LanceDB row schema for a memory and its embedding.

    IMPORTANT: Any changes to this schema require migration of existing data.
    The vector column width comes from the configured embedding dimension.
    """

    class MemoryRecord(LanceModel):
        id: str
        content: str  # Indexed for FTS
        metadata: str  # JSON object as string
        collection: str
        created_at: str  # ISO-8601, UTC
        seq: int  # first-insertion order, tie-breaker for listing
        vector: Vector(embedding_dim)  # type: ignore[valid-type]
        last_validated_at: str | None = None

    return MemoryRecord


class MatchType(str, Enum):
    VECTOR = "vector"
    FTS = "fts"


@dataclass(slots=True)
class Memory:
    """A stored text snippet. ``created_at`` is filled in by the store when None."""

    content: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)
    collection: str = "default"
    created_at: datetime | None = None
    last_validated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class SearchResult:
    memory: Memory
    match_type: MatchType
    raw_score: float
    age_days: float
    decay_factor: float

    @property
    def score(self) -> float:
        return self.raw_score * self.decay_factor


@dataclass(frozen=True, slots=True)
class StoreStats:
    memories: int
    embeddings: int
