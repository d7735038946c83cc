"""Explicit configuration shared by the memory store and the embedding client."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True, slots=True)
class Config:
    """Store and embedding configuration with sensible defaults.

    Passed to MemoryStore and EmbeddingClient at construction; nothing is
    read from the environment. Use ``dataclasses.replace`` for variants.
    """

    db_path: Path = Path.home() / ".semantic-memory" / "lancedb"
    table_name: str = "memories"
    embedding_dim: int = 1024
    half_life_days: float = 90.0
    ollama_host: str = "http://localhost:11434"
    ollama_model: str = "mxbai-embed-large"
    request_timeout: float = 30.0
    max_attempts: int = 3  # initial request + 2 retries
    retry_backoff: float = 0.5
    retry_backoff_max: float = 4.0
    batch_concurrency: int = 5
    fts_weight: float = 0.3  # Weight for FTS in hybrid fusion (vector gets 1 - this)
    rrf_k: int = 60
    fts_reindex_rows: int = 1000  # Rebuild the BM25 index past this many unindexed rows

    def __post_init__(self) -> None:
        if self.embedding_dim <= 0:
            raise ValueError(f"embedding_dim must be positive, got {self.embedding_dim}")
        if self.half_life_days <= 0:
            raise ValueError(f"half_life_days must be positive, got {self.half_life_days}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.batch_concurrency < 1:
            raise ValueError(
                f"batch_concurrency must be at least 1, got {self.batch_concurrency}"
            )
        if not 0.0 <= self.fts_weight <= 1.0:
            raise ValueError(f"fts_weight must be within [0, 1], got {self.fts_weight}")
        if self.fts_reindex_rows < 0:
            raise ValueError(
                f"fts_reindex_rows must be non-negative, got {self.fts_reindex_rows}"
            )

    @property
    def embeddings_url(self) -> str:
        return f"{self.ollama_host.rstrip('/')}/api/embeddings"

    @property
    def tags_url(self) -> str:
        return f"{self.ollama_host.rstrip('/')}/api/tags"
