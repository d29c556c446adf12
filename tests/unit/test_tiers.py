"""Tier threshold math."""

from __future__ import annotations

import pytest

from coinbook.achievements.tiers import (
    max_tier,
    next_threshold,
    points_for_tier,
    points_through,
    tier_for_progress,
    tiers_between,
    validate_thresholds,
)

RANKER = [("bronze", 5), ("silver", 25), ("gold", 100)]
RANKER_POINTS = [10, 40, 200]


class TestTierForProgress:
    def test_below_first_threshold(self):
        assert tier_for_progress(RANKER, 4) == "none"

    def test_exact_threshold_grants_tier(self):
        assert tier_for_progress(RANKER, 5) == "bronze"
        assert tier_for_progress(RANKER, 25) == "silver"

    def test_far_above_top(self):
        assert tier_for_progress(RANKER, 10_000) == "gold"

    def test_equal_thresholds_grant_the_higher_tier(self):
        assert tier_for_progress([("bronze", 5), ("silver", 5)], 5) == "silver"

    def test_singleton(self):
        assert tier_for_progress([("gold", 1)], 1) == "gold"
        assert tier_for_progress([("gold", 1)], 0) == "none"


class TestPoints:
    def test_points_through_sums_lower_tiers(self):
        assert points_through(RANKER, RANKER_POINTS, "silver") == 50
        assert points_through(RANKER, RANKER_POINTS, "gold") == 250
        assert points_through(RANKER, RANKER_POINTS, "none") == 0

    def test_points_for_single_tier(self):
        assert points_for_tier(RANKER, RANKER_POINTS, "gold") == 200
        assert points_for_tier(RANKER, RANKER_POINTS, "diamond") == 0


class TestTierSteps:
    def test_tiers_between_skipped_tiers(self):
        assert tiers_between(RANKER, "none", "gold") == ["bronze", "silver", "gold"]
        assert tiers_between(RANKER, "bronze", "silver") == ["silver"]
        assert tiers_between(RANKER, "gold", "gold") == []

    def test_next_threshold(self):
        assert next_threshold(RANKER, "none") == ("bronze", 5)
        assert next_threshold(RANKER, "silver") == ("gold", 100)
        assert next_threshold(RANKER, "gold") is None

    def test_max_tier(self):
        assert max_tier("silver", "bronze") == "silver"
        assert max_tier("none", "gold") == "gold"


class TestValidateThresholds:
    def test_accepts_well_formed(self):
        validate_thresholds(RANKER, RANKER_POINTS)

    def test_rejects_empty(self):
        with pytest.raises(ValueError, match="at least one"):
            validate_thresholds([], [])

    def test_rejects_points_length_mismatch(self):
        with pytest.raises(ValueError, match="one entry per threshold"):
            validate_thresholds(RANKER, [10, 20])

    def test_rejects_descending_tiers(self):
        with pytest.raises(ValueError, match="ascending"):
            validate_thresholds([("silver", 5), ("bronze", 10)], [1, 2])

    def test_rejects_decreasing_counts(self):
        with pytest.raises(ValueError, match="non-decreasing"):
            validate_thresholds([("bronze", 10), ("silver", 5)], [1, 2])

    def test_rejects_unknown_tier(self):
        with pytest.raises(ValueError, match="unknown tier"):
            validate_thresholds([("mythril", 1)], [1])
