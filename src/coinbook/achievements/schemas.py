"""Pydantic response models for achievement and progress endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


# --- Achievements ---


class AchievementResponse(BaseModel):
    code: str
    name: str
    description: str
    icon: str | None = None
    category: str
    collection_type: str
    current_tier: str
    progress: int
    next_tier: str | None = None
    next_target: int | None = None
    percent: int
    points_awarded: int = 0
    hidden: bool = False
    first_earned_at: datetime | None = None


class AchievementListResponse(BaseModel):
    achievements: list[AchievementResponse]
    total: int
    earned: int


class CoinTypeResponse(BaseModel):
    collection_type: str
    label: str
    description: str
    color: str
    icon: str | None = None


class CoinTypeListResponse(BaseModel):
    coin_types: list[CoinTypeResponse]


# --- Progress ---


class MilestoneResponse(BaseModel):
    code: str
    name: str
    category: str
    icon: str | None = None
    next_tier: str
    target: int
    progress: int
    remaining: int
    percent: int


class RecentAchievementResponse(BaseModel):
    code: str
    name: str
    icon: str | None = None
    tier: str
    points: int
    awarded_at: datetime


class ProgressSummaryResponse(BaseModel):
    total_rankings: int
    unique_products: int
    current_streak: int
    longest_streak: int
    total_points: int
    achievements_earned: int
    recent_achievements: list[RecentAchievementResponse]
    next_milestones: list[MilestoneResponse]
    computed_at: datetime | None = None


class AchievementUpdateRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    icon: str | None = None
    category: str | None = None
    collection_type: str | None = None
    tier_thresholds: list[tuple[str, int]] | None = None
    points_per_tier: list[int] | None = None
    is_hidden: bool | None = None
    predicate: dict | None = None
    prerequisite_code: str | None = None
    is_active: bool | None = None
    sort_order: int | None = None
