"""
Semantic memory store - LanceDB persistence with decay-ranked hybrid search.

Each memory and its embedding live in one LanceDB row, so the one-to-one
ownership holds structurally and deleting a memory removes its embedding in
the same commit. On top of LanceDB's primitives the store provides:
- atomic upsert keyed by id (merge_insert), preserving created_at and
  first-insertion order
- cosine nearest-neighbour search normalized to [0, 1]
- BM25 full-text search with AND-of-terms semantics
- exponential freshness decay applied to both (see ranking.py)
- weighted Reciprocal Rank Fusion of the two paths
"""

from __future__ import annotations

import json
import logging
import math
import threading
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import timedelta
from typing import Any

import lancedb
import numpy as np
import pyarrow as pa
from lancedb.index import FTS

from config import Config
from errors import DimensionMismatch, EngineFailure, NotFound, StoreError
from models import MatchType, Memory, SearchResult, StoreStats, record_model
from ranking import build_result, rank_results, rrf_fusion
from utils import escape_filter_value, now_utc, parse_iso, query_terms, to_iso, tokenize

logger = logging.getLogger(__name__)

MEMORY_COLUMNS = [
    "id",
    "content",
    "metadata",
    "collection",
    "created_at",
    "last_validated_at",
    "seq",
]

FTS_INDEX_NAME = "content_fts"
# Query terms are tokenized the same way (utils.tokenize); no token is dropped for length.
FTS_CONFIG = FTS(
    base_tokenizer="simple",
    max_token_length=None,
    lower_case=True,
    stem=False,
    remove_stop_words=False,
    ascii_folding=True,
)


@contextmanager
def _engine(operation: str) -> Iterator[None]:
    """Surface storage engine exceptions as EngineFailure; store errors pass through."""
    try:
        yield
    except StoreError:
        raise
    except Exception as e:
        raise EngineFailure(operation, f"{type(e).__name__}: {e}") from e


def _check_limit(limit: int) -> None:
    if limit <= 0:
        raise ValueError(f"limit must be positive, got {limit}")


def _similarity(distance: float) -> float:
    """Cosine distance (0 = identical, 2 = opposite) to a similarity in [0, 1]."""
    return min(1.0, max(0.0, 1.0 - float(distance)))


def _id_filter(memory_id: str) -> str:
    return f"id = '{escape_filter_value(memory_id)}'"


def _collection_filter(collection: str | None) -> str | None:
    if collection is None:
        return None
    return f"collection = '{escape_filter_value(collection)}'"


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(response, "tables", response))


def _to_memory(row: dict[str, Any]) -> Memory:
    return Memory(
        id=row["id"],
        content=row["content"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        collection=row["collection"],
        created_at=parse_iso(row["created_at"]),
        last_validated_at=parse_iso(row.get("last_validated_at")),
    )


class MemoryStore:
    """Persistent memories with vector, full-text and hybrid decay-ranked search.

    Callers supply already-computed embeddings; see embeddings.EmbeddingClient.
    Safe to share between threads: LanceDB serializes conflicting commits and
    the only in-process state is the lazily opened table. Several stores may
    open the same path; each read sees the latest committed version.
    """

    def __init__(self, config: Config):
        self.config = config
        self._lock = threading.RLock()
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        self._last_seq = 0

    def __enter__(self) -> MemoryStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._table = None
            self._db = None

    # =========================================================================
    # Engine plumbing
    # =========================================================================

    def _get_table(self) -> lancedb.table.Table:
        """Get or create the memories table (thread-safe)."""
        if self._table is None:
            with self._lock:
                if self._table is None:  # Double-check after acquiring lock
                    self._table = self._open_table()
        return self._table

    def _open_table(self) -> lancedb.table.Table:
        dim = self.config.embedding_dim
        name = self.config.table_name
        with _engine("open"):
            self.config.db_path.mkdir(parents=True, exist_ok=True)
            # Every read checks for newer versions, so writes from other stores show up.
            self._db = lancedb.connect(
                str(self.config.db_path), read_consistency_interval=timedelta(0)
            )
            try:
                table = self._db.open_table(name)
            except Exception:
                if name in _table_names(self._db):
                    raise
                table = self._db.create_table(name, schema=record_model(dim))
                logger.info("Created memory table %r at %s", name, self.config.db_path)
            width = table.schema.field("vector").type.list_size
        if width != dim:
            raise DimensionMismatch(dim, width)
        return table

    def _check_vector(self, vector: Sequence[float] | np.ndarray) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32)
        if array.ndim != 1:
            raise ValueError(f"Embedding must be one-dimensional, got shape {array.shape}")
        if array.shape[0] != self.config.embedding_dim:
            raise DimensionMismatch(self.config.embedding_dim, int(array.shape[0]))
        if not np.isfinite(array).all():
            raise ValueError("Embedding contains NaN or infinite values")
        return array

    def _next_seq(self) -> int:
        with self._lock:
            self._last_seq = max(time.time_ns(), self._last_seq + 1)
            return self._last_seq

    def _fetch_row(self, table: lancedb.table.Table, memory_id: str) -> dict[str, Any] | None:
        rows = (
            table.search()
            .where(_id_filter(memory_id))
            .select(MEMORY_COLUMNS)
            .limit(1)
            .to_list()
        )
        return rows[0] if rows else None

    def _ensure_fts_index(self, table: lancedb.table.Table) -> None:
        """Build the BM25 index on content, or rebuild it once too many rows are unindexed.

        Rows written after the last build are still found: LanceDB flat-searches
        unindexed data, and deleted rows are masked without a rebuild. The
        decision reads the table's own index statistics, so writes made through
        other connections count too.
        """
        with self._lock:
            stats = table.index_stats(FTS_INDEX_NAME)
            if stats is not None and stats.num_unindexed_rows <= self.config.fts_reindex_rows:
                return
            table.create_index("content", config=FTS_CONFIG, replace=True, name=FTS_INDEX_NAME)
        logger.info(
            "Full-text index (BM25) %s on 'content'", "rebuilt" if stats is not None else "created"
        )

    # =========================================================================
    # CRUD
    # =========================================================================

    def store(self, memory: Memory, vector: Sequence[float] | np.ndarray) -> None:
        """Insert or fully replace a memory and its embedding in one commit.

        created_at: the caller's value wins; if None, the prior row's value is
        kept, else now.
        """
        array = self._check_vector(vector)
        table = self._get_table()
        with _engine("store"):
            existing = self._fetch_row(table, memory.id)
            if memory.created_at is not None:
                created_at = to_iso(memory.created_at)
            elif existing is not None:
                created_at = existing["created_at"]
            else:
                created_at = to_iso(now_utc())

            record = record_model(self.config.embedding_dim)(
                id=memory.id,
                content=memory.content,
                metadata=json.dumps(memory.metadata),
                collection=memory.collection,
                created_at=created_at,
                seq=existing["seq"] if existing is not None else self._next_seq(),
                vector=array.tolist(),
                last_validated_at=(
                    to_iso(memory.last_validated_at) if memory.last_validated_at else None
                ),
            )
            data = pa.Table.from_pylist([record.model_dump()], schema=table.schema)
            (
                table.merge_insert("id")
                .when_matched_update_all()
                .when_not_matched_insert_all()
                .execute(data)
            )
        logger.debug("Stored memory %s (%s)", memory.id, "updated" if existing else "new")

    def get(self, memory_id: str) -> Memory | None:
        table = self._get_table()
        with _engine("get"):
            row = self._fetch_row(table, memory_id)
        return _to_memory(row) if row is not None else None

    def list(self, collection: str | None = None, limit: int | None = None) -> list[Memory]:
        """Memories newest first (created_at descending, then insertion order)."""
        if limit is not None:
            _check_limit(limit)
        table = self._get_table()
        where = _collection_filter(collection)
        with _engine("list"):
            total = table.count_rows(where)
            if total == 0:
                return []
            query = table.search()
            if where:
                query = query.where(where)
            rows = query.select(MEMORY_COLUMNS).limit(total).to_list()

        rows.sort(key=lambda r: r["seq"])
        # Stable: rows with equal created_at keep insertion order.
        rows.sort(key=lambda r: parse_iso(r["created_at"]), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [_to_memory(row) for row in rows]

    def delete(self, memory_id: str) -> None:
        """Delete a memory and its embedding. Missing ids are not an error."""
        table = self._get_table()
        with _engine("delete"):
            table.delete(_id_filter(memory_id))
        logger.debug("Deleted memory %s", memory_id)

    def validate(self, memory_id: str) -> None:
        """Reset the decay clock of a memory to now."""
        table = self._get_table()
        where = _id_filter(memory_id)
        with _engine("validate"):
            if table.count_rows(where) == 0:
                raise NotFound(memory_id)
            table.update(where=where, values={"last_validated_at": to_iso(now_utc())})

    def get_stats(self) -> StoreStats:
        table = self._get_table()
        with _engine("get_stats"):
            return StoreStats(
                memories=table.count_rows(),
                embeddings=table.count_rows("vector IS NOT NULL"),
            )

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        vector: Sequence[float] | np.ndarray,
        limit: int = 10,
        threshold: float = 0.5,
        collection: str | None = None,
    ) -> list[SearchResult]:
        """Nearest-neighbour search ranked by decayed cosine similarity.

        The threshold applies to the decayed score. For fresh memories
        (decay factor ~1) that is the same as thresholding raw similarity.
        """
        _check_limit(limit)
        array = self._check_vector(vector)
        table = self._get_table()
        where = _collection_filter(collection)
        with _engine("search"):
            # Decay reorders results, so every candidate is scored, not just the top `limit`.
            candidates = table.count_rows(where)
            if candidates == 0:
                return []
            query = table.search(array, vector_column_name="vector").distance_type("cosine")
            if where:
                query = query.where(where, prefilter=True)
            rows = query.select([*MEMORY_COLUMNS, "_distance"]).limit(candidates).to_list()

        now = now_utc()
        results = [
            build_result(
                _to_memory(row),
                MatchType.VECTOR,
                _similarity(row["_distance"]),
                now,
                self.config.half_life_days,
            )
            for row in rows
        ]
        return rank_results(results, limit, threshold)

    def fts_search(
        self,
        query: str,
        limit: int = 10,
        collection: str | None = None,
    ) -> list[SearchResult]:
        """BM25 full-text search; every non-stop-word query term must match."""
        _check_limit(limit)
        terms = query_terms(query)
        if not terms:
            return []
        table = self._get_table()
        where = _collection_filter(collection)
        with _engine("fts_search"):
            candidates = table.count_rows(where)
            if candidates == 0:
                return []
            self._ensure_fts_index(table)
            fts_query = table.search(" ".join(terms), query_type="fts")
            if where:
                fts_query = fts_query.where(where, prefilter=True)
            rows = fts_query.select([*MEMORY_COLUMNS, "_score"]).limit(candidates).to_list()

        required = set(terms)
        now = now_utc()
        results = [
            build_result(
                _to_memory(row),
                MatchType.FTS,
                float(row["_score"]),
                now,
                self.config.half_life_days,
            )
            for row in rows
            if required.issubset(tokenize(row["content"]))
            and math.isfinite(row["_score"])
        ]
        return rank_results(results, limit)

    def hybrid_search(
        self,
        vector: Sequence[float] | np.ndarray,
        query: str,
        limit: int = 10,
        threshold: float = 0.5,
        collection: str | None = None,
    ) -> list[SearchResult]:
        """Vector + BM25 search fused with weighted Reciprocal Rank Fusion.

        A blank query degrades to vector-only ranking.
        """
        _check_limit(limit)
        fetch_limit = limit * 3
        vector_results = self.search(
            vector, limit=fetch_limit, threshold=threshold, collection=collection
        )
        fts_results = []
        if query.strip():
            fts_results = self.fts_search(query, limit=fetch_limit, collection=collection)
        fused = rrf_fusion(
            vector_results, fts_results, self.config.fts_weight, k=self.config.rrf_k
        )
        return fused[:limit]
