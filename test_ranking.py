"""Tests for the freshness decay model and result ordering."""

from datetime import datetime, timedelta, timezone

import pytest

from models import MatchType, Memory, SearchResult
from ranking import (
    age_in_days,
    build_result,
    decay_factor,
    rank_results,
    reference_time,
    rrf_fusion,
)

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


def result(memory_id: str, raw: float, age: float = 0.0) -> SearchResult:
    memory = Memory(id=memory_id, content="x", created_at=NOW - timedelta(days=age))
    return build_result(memory, MatchType.VECTOR, raw, NOW, 90.0)


class TestDecay:
    """Exponential decay with a 90-day half-life."""

    def test_fresh_is_one(self):
        assert decay_factor(0.0, 90.0) == 1.0

    def test_half_life(self):
        assert decay_factor(90.0, 90.0) == pytest.approx(0.5)

    def test_strictly_decreasing(self):
        factors = [decay_factor(age, 90.0) for age in (0, 1, 10, 90, 365, 3650)]
        assert all(a > b for a, b in zip(factors, factors[1:]))

    def test_never_zero(self):
        """Ancient memories fade but never reach zero."""
        assert decay_factor(1e9, 90.0) > 0.0

    def test_negative_age_clamped(self):
        assert decay_factor(-5.0, 90.0) == 1.0


class TestAge:
    """Age measured from the later of created_at / last_validated_at."""

    def test_age_in_days(self):
        assert age_in_days(NOW - timedelta(days=3, hours=12), NOW) == pytest.approx(3.5)

    def test_future_reference_is_zero(self):
        assert age_in_days(NOW + timedelta(days=1), NOW) == 0.0

    def test_naive_datetimes_are_local_time(self):
        """Naive timestamps are interpreted in local time, like datetime.now()."""
        naive_now = datetime.now()
        assert age_in_days(naive_now, datetime.now(timezone.utc)) < 1e-3

    def test_validation_moves_reference(self):
        memory = Memory(
            content="x",
            created_at=NOW - timedelta(days=100),
            last_validated_at=NOW - timedelta(days=1),
        )
        assert reference_time(memory) == memory.last_validated_at

    def test_missing_created_at(self):
        with pytest.raises(ValueError):
            reference_time(Memory(content="x"))


class TestRankResults:
    """Threshold, ordering and truncation."""

    def test_score_is_raw_times_decay(self):
        r = result("a", 0.8, age=90)
        assert r.score == pytest.approx(0.4)

    def test_orders_by_score_then_raw_then_id(self):
        ranked = rank_results(
            [result("c", 0.5), result("b", 0.5), result("a", 0.9), result("d", 1.0, age=90)],
            limit=10,
        )
        # d: 1.0 * 0.5 = 0.5, ties with b/c on score but wins on raw score
        assert [r.memory.id for r in ranked] == ["a", "d", "b", "c"]

    def test_threshold_uses_decayed_score(self):
        ranked = rank_results([result("old", 1.0, age=90), result("new", 0.6)], 10, threshold=0.55)
        assert [r.memory.id for r in ranked] == ["new"]

    def test_limit(self):
        ranked = rank_results([result(str(i), 0.9) for i in range(5)], limit=3)
        assert len(ranked) == 3


class TestRrfFusion:
    """Weighted Reciprocal Rank Fusion."""

    def test_memory_in_both_lists_wins(self):
        vector = [result("a", 0.9), result("b", 0.8)]
        fts = [result("b", 3.0)]
        fused = rrf_fusion(vector, fts, fts_weight=0.3)
        assert [r.memory.id for r in fused] == ["b", "a"]

    def test_keeps_best_contribution(self):
        vector = [result("a", 0.9)]
        fts_hit = build_result(
            Memory(id="a", content="x", created_at=NOW), MatchType.FTS, 2.0, NOW, 90.0
        )
        fused = rrf_fusion(vector, [fts_hit], fts_weight=0.3)
        assert len(fused) == 1
        assert fused[0].match_type == MatchType.VECTOR

    def test_fts_weight_one_prefers_text(self):
        fts_hit = build_result(
            Memory(id="z", content="x", created_at=NOW), MatchType.FTS, 2.0, NOW, 90.0
        )
        fused = rrf_fusion([result("a", 0.9)], [fts_hit], fts_weight=1.0)
        assert [r.memory.id for r in fused] == ["z", "a"]

    def test_empty(self):
        assert rrf_fusion([], [], fts_weight=0.3) == []
