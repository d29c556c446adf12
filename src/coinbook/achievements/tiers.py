"""Tier ordering and threshold math.

Thresholds are an ordered list of (tier, required) pairs, e.g.
[("bronze", 5), ("silver", 25), ("gold", 100)]. A singleton achievement
is simply a list with one pair.
"""

from __future__ import annotations

from collections.abc import Sequence

TIERS: tuple[str, ...] = ("none", "bronze", "silver", "gold", "platinum", "diamond")
TIER_ORDINAL: dict[str, int] = {tier: i for i, tier in enumerate(TIERS)}

# Percentage tiers used by static and dynamic collections
DEFAULT_COLLECTION_THRESHOLDS: tuple[tuple[str, int], ...] = (
    ("bronze", 40),
    ("silver", 60),
    ("gold", 75),
    ("platinum", 90),
    ("diamond", 100),
)

Thresholds = Sequence[tuple[str, int]]


def tier_ordinal(tier: str) -> int:
    """Ordinal of a tier name; unknown names raise KeyError."""
    return TIER_ORDINAL[tier]


def max_tier(a: str, b: str) -> str:
    return a if TIER_ORDINAL[a] >= TIER_ORDINAL[b] else b


def tier_for_progress(thresholds: Thresholds, progress: int) -> str:
    """Highest tier whose required count is met.

    With equal thresholds (bronze=silver=5) reaching the count grants the
    higher of the two.
    """
    best = "none"
    for tier, required in thresholds:
        if progress >= required and TIER_ORDINAL[tier] > TIER_ORDINAL[best]:
            best = tier
    return best


def points_through(thresholds: Thresholds, points_per_tier: Sequence[int], tier: str) -> int:
    """Sum of per-tier points for every tier up to and including ``tier``."""
    ceiling = TIER_ORDINAL[tier]
    total = 0
    for (name, _required), points in zip(thresholds, points_per_tier):
        if TIER_ORDINAL[name] <= ceiling:
            total += points
    return total


def tiers_between(thresholds: Thresholds, old: str, new: str) -> list[str]:
    """Tiers crossed when moving from ``old`` (exclusive) to ``new`` (inclusive)."""
    low, high = TIER_ORDINAL[old], TIER_ORDINAL[new]
    return [name for name, _ in thresholds if low < TIER_ORDINAL[name] <= high]


def points_for_tier(thresholds: Thresholds, points_per_tier: Sequence[int], tier: str) -> int:
    for (name, _required), points in zip(thresholds, points_per_tier):
        if name == tier:
            return points
    return 0


def next_threshold(thresholds: Thresholds, tier: str) -> tuple[str, int] | None:
    """The first threshold above ``tier``, or None when the top tier is held."""
    current = TIER_ORDINAL[tier]
    for name, required in thresholds:
        if TIER_ORDINAL[name] > current:
            return name, required
    return None


def first_tier(thresholds: Thresholds) -> str | None:
    return thresholds[0][0] if thresholds else None


def validate_thresholds(thresholds: Thresholds, points_per_tier: Sequence[int]) -> None:
    """Raise ValueError unless thresholds are well-formed.

    Tiers must be known, strictly ascending by ordinal, and required counts
    non-decreasing. There must be one points entry per threshold.
    """
    if not thresholds:
        msg = "at least one tier threshold is required"
        raise ValueError(msg)
    if len(points_per_tier) != len(thresholds):
        msg = "points_per_tier must have one entry per threshold"
        raise ValueError(msg)

    last_ordinal = 0
    last_required = 0
    for name, required in thresholds:
        if name not in TIER_ORDINAL or name == "none":
            msg = f"unknown tier '{name}'"
            raise ValueError(msg)
        if TIER_ORDINAL[name] <= last_ordinal:
            msg = "tiers must be listed in ascending order"
            raise ValueError(msg)
        if required < 1 or required < last_required:
            msg = "required counts must be positive and non-decreasing"
            raise ValueError(msg)
        last_ordinal = TIER_ORDINAL[name]
        last_required = required

    if any(p < 0 for p in points_per_tier):
        msg = "points must be non-negative"
        raise ValueError(msg)
