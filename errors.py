"""Error taxonomy for the memory store and the embedding client."""

from __future__ import annotations

from enum import Enum


class SemanticMemoryError(Exception):
    """Base class for every error raised by this project."""


class StoreError(SemanticMemoryError):
    """Memory store errors."""


class DimensionMismatch(StoreError):
    """A vector does not have the configured embedding dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Embedding dimension mismatch: expected {expected}, got {actual}")


class NotFound(StoreError):
    """An operation that requires an existing memory targeted a missing id."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"Memory {memory_id} not found")


class EngineFailure(StoreError):
    """The storage engine failed (I/O, constraint, query error)."""

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Storage engine failure during {operation}: {reason}")


class EmbeddingErrorKind(str, Enum):
    CONNECTION = "connection"
    HTTP = "http"
    INVALID_RESPONSE = "invalid_response"
    MODEL_NOT_FOUND = "model_not_found"


class EmbeddingError(SemanticMemoryError):
    """Embedding service failure.

    ``kind`` is the programmatic category, ``reason`` the human-readable
    cause. ``retryable`` marks transient failures (connection errors, 5xx
    and 429 responses, bodies that are not JSON at all).
    """

    def __init__(
        self,
        kind: EmbeddingErrorKind,
        reason: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        self.kind = kind
        self.reason = reason
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(reason)

    def __repr__(self) -> str:
        return f"EmbeddingError(kind={self.kind.value!r}, reason={self.reason!r})"


def is_retryable_error(exception: BaseException) -> bool:
    """Only transient embedding failures are retried; everything else surfaces at once."""
    return isinstance(exception, EmbeddingError) and exception.retryable
