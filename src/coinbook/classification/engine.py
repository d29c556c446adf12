"""Flavor lifecycle state rules.

Pure functions, no I/O. A (user, profile) pair below ``min_products`` ranked
products is curious, seeker or taster depending on its orders. At or above
it, the pair joins the profile's cohort and is placed by the percentile of
its average ranking position (lower is better) within that cohort.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass

from coinbook.classification.config import FlavorCommunitySettings

FLAVOR_PROFILES: tuple[str, ...] = (
    "sweet",
    "savory",
    "spicy",
    "smoky",
    "teriyaki",
    "peppered",
    "original",
    "exotic",
)

PRE_COHORT_STATES = ("curious", "seeker", "taster")
COHORT_STATES = ("enthusiast", "moderate", "explorer")
STATES = PRE_COHORT_STATES + COHORT_STATES

# Averages closer than this are one tie group
_TIE_DECIMALS = 6


@dataclass(frozen=True)
class ProfileFacts:
    """Supporting counts for one (user, flavor profile)."""

    user_id: int
    profile: str
    purchased_count: int = 0
    delivered_count: int = 0
    ranked_count: int = 0
    avg_position: float | None = None

    @property
    def purchased(self) -> bool:
        return self.purchased_count > 0

    @property
    def delivered(self) -> bool:
        return self.delivered_count > 0


@dataclass(frozen=True)
class CohortPartition:
    states: dict[int, str]
    cohort_size: int
    enthusiast_cutoff: float | None
    explorer_cutoff: float | None


def in_cohort(facts: ProfileFacts, config: FlavorCommunitySettings) -> bool:
    return facts.ranked_count >= config.min_products and facts.avg_position is not None


def pre_cohort_state(facts: ProfileFacts, config: FlavorCommunitySettings) -> str | None:
    """curious / seeker / taster, or None when the pair belongs to the cohort."""
    if in_cohort(facts, config):
        return None
    if facts.delivered:
        return "taster"
    if facts.purchased:
        return "seeker"
    return "curious"


def partition_cohort(
    members: Sequence[tuple[int, float]],
    enthusiast_top_pct: int,
    explorer_bottom_pct: int,
) -> CohortPartition:
    """Split (user_id, avg_position) pairs into enthusiast / moderate / explorer.

    Sorted by average then user id. The top ``ceil(N * top%)`` are
    enthusiasts and the bottom ``floor(N * bottom%)`` are explorers. A group
    of equal averages is never split: it lands entirely on the side where
    its first member (enthusiast) or last member (explorer) falls.
    """
    ordered = sorted(members, key=lambda m: (m[1], m[0]))
    n = len(ordered)
    if n == 0:
        return CohortPartition(states={}, cohort_size=0, enthusiast_cutoff=None, explorer_cutoff=None)

    top = min(n, math.ceil(n * enthusiast_top_pct / 100))
    bottom = min(n - top, math.floor(n * explorer_bottom_pct / 100))
    explorer_start = n - bottom

    states: dict[int, str] = {}
    i = 0
    while i < n:
        key = round(ordered[i][1], _TIE_DECIMALS)
        j = i
        while j + 1 < n and round(ordered[j + 1][1], _TIE_DECIMALS) == key:
            j += 1
        if i < top:
            state = "enthusiast"
        elif bottom and j >= explorer_start:
            state = "explorer"
        else:
            state = "moderate"
        for user_id, _avg in ordered[i : j + 1]:
            states[user_id] = state
        i = j + 1

    enthusiast_avgs = [avg for uid, avg in ordered if states[uid] == "enthusiast"]
    explorer_avgs = [avg for uid, avg in ordered if states[uid] == "explorer"]
    return CohortPartition(
        states=states,
        cohort_size=n,
        enthusiast_cutoff=max(enthusiast_avgs) if enthusiast_avgs else None,
        explorer_cutoff=min(explorer_avgs) if explorer_avgs else None,
    )


def state_from_thresholds(avg_position: float, enthusiast_cutoff: float | None, explorer_cutoff: float | None) -> str:
    """Place a cohort member using boundaries from the last full run."""
    if enthusiast_cutoff is not None and avg_position <= enthusiast_cutoff:
        return "enthusiast"
    if explorer_cutoff is not None and avg_position >= explorer_cutoff:
        return "explorer"
    return "moderate"


def assign_state(
    facts: ProfileFacts,
    config: FlavorCommunitySettings,
    cohort_size: int,
    enthusiast_cutoff: float | None,
    explorer_cutoff: float | None,
) -> str:
    """Incremental assignment from stored thresholds.

    Until a full run has seen at least one cohort member for the profile,
    qualifying users stay ``taster``.
    """
    state = pre_cohort_state(facts, config)
    if state is not None:
        return state
    if cohort_size < 1:
        return "taster"
    return state_from_thresholds(facts.avg_position, enthusiast_cutoff, explorer_cutoff)  # type: ignore[arg-type]
