"""
Embedding client for a local Ollama server.

- embed: one text -> one vector, with bounded exponential-backoff retries
  on transient failures (tenacity)
- embed_batch: many texts under an explicit concurrency cap, input order
  preserved, fail-fast
- check_health: verifies the server is up and the configured model is pulled
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from typing import Any

import requests
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from config import Config
from errors import EmbeddingError, EmbeddingErrorKind, is_retryable_error

logger = logging.getLogger(__name__)


def model_matches(available: str, required: str) -> bool:
    """``name`` and ``name:tag`` both satisfy a requirement for ``name``."""
    return available == required or available.partition(":")[0] == required


class EmbeddingClient:
    """Turns text into fixed-dimension vectors via Ollama's embeddings endpoint."""

    def __init__(self, config: Config):
        self.config = config

    # =========================================================================
    # Single request
    # =========================================================================

    def _request_embedding(self, text: str) -> list[float]:
        """One POST to /api/embeddings, no retries."""
        try:
            response = requests.post(
                self.config.embeddings_url,
                json={"model": self.config.ollama_model, "prompt": text},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as e:
            raise EmbeddingError(
                EmbeddingErrorKind.CONNECTION,
                f"Connection failed: {e}",
                retryable=True,
            ) from e

        if not response.ok:
            status = response.status_code
            raise EmbeddingError(
                EmbeddingErrorKind.HTTP,
                f"HTTP {status}: {response.text}",
                status_code=status,
                retryable=status >= 500 or status == 429,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                f"Invalid JSON response: {e}",
                retryable=True,
            ) from e

        return self._parse_embedding(payload)

    def _parse_embedding(self, payload: Any) -> list[float]:
        # Well-formed JSON with the wrong shape is permanent; never retried.
        embedding = payload.get("embedding") if isinstance(payload, dict) else None
        if not isinstance(embedding, list):
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                "Invalid response shape: missing 'embedding' array",
            )
        if not all(
            isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)
            for x in embedding
        ):
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                "Invalid response shape: 'embedding' must contain only finite numbers",
            )
        if len(embedding) != self.config.embedding_dim:
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                f"Invalid response shape: expected {self.config.embedding_dim} dimensions, "
                f"got {len(embedding)}",
            )
        return [float(x) for x in embedding]

    def embed_sync(self, text: str) -> list[float]:
        """Blocking embed with retries; the last attempt's error is raised."""
        retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=wait_exponential(
                multiplier=self.config.retry_backoff, max=self.config.retry_backoff_max
            ),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(self._request_embedding, text)

    # =========================================================================
    # Async API
    # =========================================================================

    async def embed(self, text: str) -> list[float]:
        """Generate an embedding without blocking the event loop."""
        return await asyncio.to_thread(self.embed_sync, text)

    async def embed_batch(
        self, texts: Sequence[str], concurrency: int | None = None
    ) -> list[list[float]]:
        """Embed many texts with at most `concurrency` requests in flight.

        Output order matches input order. If any text fails after its own
        retries the whole batch raises that EmbeddingError; other results
        are discarded.
        """
        if not texts:
            return []
        limit = self.config.batch_concurrency if concurrency is None else concurrency
        if limit < 1:
            raise ValueError(f"concurrency must be at least 1, got {limit}")

        semaphore = asyncio.Semaphore(limit)

        async def worker(text: str) -> list[float]:
            async with semaphore:
                return await self.embed(text)

        tasks = [asyncio.create_task(worker(text)) for text in texts]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def check_health(self) -> None:
        """Raise EmbeddingError unless Ollama is reachable and the model is pulled."""
        await asyncio.to_thread(self._check_health_sync)

    def _check_health_sync(self) -> None:
        host = self.config.ollama_host
        model = self.config.ollama_model
        try:
            response = requests.get(self.config.tags_url, timeout=self.config.request_timeout)
        except requests.RequestException as e:
            raise EmbeddingError(
                EmbeddingErrorKind.CONNECTION,
                f"Cannot connect to Ollama at {host}. Is it running? ({e})",
            ) from e

        if not response.ok:
            raise EmbeddingError(
                EmbeddingErrorKind.HTTP,
                f"Ollama is not responding (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                f"Invalid response from Ollama: {e}",
            ) from e

        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            raise EmbeddingError(
                EmbeddingErrorKind.INVALID_RESPONSE,
                "Invalid response from Ollama: missing 'models' list",
            )

        names = [str(m.get("name", "")) for m in models if isinstance(m, dict)]
        if not any(model_matches(name, model) for name in names):
            raise EmbeddingError(
                EmbeddingErrorKind.MODEL_NOT_FOUND,
                f"Model '{model}' not found. Run: ollama pull {model}",
            )
        logger.debug("Ollama healthy at %s with model %s", host, model)
