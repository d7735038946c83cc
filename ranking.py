"""Freshness decay and result ordering shared by vector and full-text search.

Scores decay exponentially with a fixed half-life measured from the later of
creation and last validation:

    decay_factor = 0.5 ** (age_days / half_life_days)
    score        = raw_score * decay_factor

The factor is 1.0 at age zero, 0.5 after one half-life and never reaches 0.
"""

from __future__ import annotations

import sys
from collections.abc import Iterable
from datetime import datetime

from models import MatchType, Memory, SearchResult
from utils import to_utc

SECONDS_PER_DAY = 86400.0


def reference_time(memory: Memory) -> datetime:
    """The decay clock starts at last validation if there was one, else at creation."""
    ref = memory.last_validated_at or memory.created_at
    if ref is None:
        raise ValueError(f"Memory {memory.id} has no created_at")
    return ref


def age_in_days(reference: datetime, now: datetime) -> float:
    # Future timestamps count as age zero.
    return max(0.0, (to_utc(now) - to_utc(reference)).total_seconds() / SECONDS_PER_DAY)


def decay_factor(age_days: float, half_life_days: float) -> float:
    factor = 0.5 ** (max(0.0, age_days) / half_life_days)
    # Underflows to 0.0 only after ~1000 half-lives; keep it strictly positive.
    return max(factor, sys.float_info.min)


def build_result(
    memory: Memory,
    match_type: MatchType,
    raw_score: float,
    now: datetime,
    half_life_days: float,
) -> SearchResult:
    age = age_in_days(reference_time(memory), now)
    return SearchResult(
        memory=memory,
        match_type=match_type,
        raw_score=raw_score,
        age_days=age,
        decay_factor=decay_factor(age, half_life_days),
    )


def result_sort_key(result: SearchResult) -> tuple[float, float, str]:
    return (-result.score, -result.raw_score, result.memory.id)


def rank_results(
    results: Iterable[SearchResult],
    limit: int,
    threshold: float | None = None,
) -> list[SearchResult]:
    """Drop results whose decayed score is below threshold, order, truncate."""
    kept = [r for r in results if threshold is None or r.score >= threshold]
    kept.sort(key=result_sort_key)
    return kept[:limit]


def rrf_fusion(
    vector_results: list[SearchResult],
    fts_results: list[SearchResult],
    fts_weight: float,
    k: int = 60,
) -> list[SearchResult]:
    """Weighted Reciprocal Rank Fusion of two ranked result lists.

    Each memory appears once, represented by the result from the list that
    contributed most to its fused score (vector wins ties).
    """
    scores: dict[str, float] = {}
    best: dict[str, tuple[float, SearchResult]] = {}

    vector_weight = 1 - fts_weight
    for weight, ranked in ((vector_weight, vector_results), (fts_weight, fts_results)):
        for rank, result in enumerate(ranked):
            rid = result.memory.id
            contribution = weight / (k + rank + 1)
            scores[rid] = scores.get(rid, 0.0) + contribution
            if rid not in best or contribution > best[rid][0]:
                best[rid] = (contribution, result)

    sorted_ids = sorted(scores, key=lambda rid: (-scores[rid], rid))
    return [best[rid][1] for rid in sorted_ids]
