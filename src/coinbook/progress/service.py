"""Per-user progress summary: totals, streaks, recent awards and next milestones."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.predicates import EvaluationContext, PredicateError, measure
from coinbook.achievements.projection import UserProjection, load_catalog, load_projection
from coinbook.achievements.registry import AchievementRegistry, AchievementSpec, registry
from coinbook.achievements.streaks import current_streak, local_dates, longest_streak, user_zone
from coinbook.achievements.tiers import next_threshold
from coinbook.db.models import AchievementDefinition, AchievementTierAward, UserAchievement
from coinbook.progress.cache import progress_cache
from coinbook.timeutil import as_utc

logger = logging.getLogger(__name__)

RECENT_LIMIT = 10
MILESTONE_LIMIT = 3
ACTIVITY_WINDOW_DAYS = 30


@dataclass(frozen=True)
class Milestone:
    code: str
    name: str
    category: str
    icon: str | None
    next_tier: str
    target: int
    progress: int
    remaining: int
    percent: int


@dataclass(frozen=True)
class RecentAchievement:
    code: str
    name: str
    icon: str | None
    tier: str
    points: int
    awarded_at: datetime


@dataclass(frozen=True)
class ProgressSummary:
    user_id: int
    total_rankings: int
    unique_products: int
    current_streak: int
    longest_streak: int
    total_points: int
    achievements_earned: int
    recent_achievements: list[RecentAchievement] = field(default_factory=list)
    next_milestones: list[Milestone] = field(default_factory=list)
    registered_at: datetime | None = None
    last_activity_at: datetime | None = None
    activities_30d: int = 0
    computed_at: datetime | None = None


def _milestones(
    specs: tuple[AchievementSpec, ...],
    projection: UserProjection,
    tiers: dict[int, str],
    ctx: EvaluationContext,
) -> list[Milestone]:
    """Next unearned tier of every visible achievement, with distance to it."""
    earned_codes = {s.code for s in specs if tiers.get(s.id, "none") != "none"}
    milestones: list[Milestone] = []
    for spec in specs:
        tier = tiers.get(spec.id, "none")
        if spec.is_hidden:
            continue
        if spec.prerequisite_code and spec.prerequisite_code not in earned_codes:
            continue
        upcoming = next_threshold(spec.thresholds, tier)
        if upcoming is None:
            continue
        try:
            progress = measure(spec.predicate, projection, ctx)
        except (PredicateError, KeyError):
            logger.warning("Skipping milestone for %s: bad predicate", spec.code)
            continue
        next_tier, target = upcoming
        milestones.append(Milestone(
            code=spec.code,
            name=spec.name,
            category=spec.category,
            icon=spec.icon,
            next_tier=next_tier,
            target=target,
            progress=progress,
            remaining=max(0, target - progress),
            percent=min(100, progress * 100 // target) if target else 100,
        ))
    return milestones


async def _load_context(
    db: AsyncSession,
    user_id: int,
    reg: AchievementRegistry,
) -> tuple[tuple[AchievementSpec, ...], UserProjection | None, dict[int, str]]:
    specs = await reg.get_all(db)
    projection = await load_projection(db, user_id)
    if projection is not None and any(s.needs_catalog for s in specs):
        projection.catalog = await load_catalog(db)
    result = await db.execute(
        select(UserAchievement.achievement_id, UserAchievement.current_tier).where(UserAchievement.user_id == user_id)
    )
    tiers = {aid: tier for aid, tier in result.all()}
    return specs, projection, tiers


async def compute_progress(
    db: AsyncSession,
    user_id: int,
    *,
    achievement_registry: AchievementRegistry | None = None,
    now: datetime | None = None,
) -> ProgressSummary | None:
    """Compute the summary from the event log and achievement rows. No caching."""
    now = now or datetime.now(timezone.utc)
    specs, projection, tiers = await _load_context(db, user_id, achievement_registry or registry)
    if projection is None:
        return None

    zone = user_zone(projection.timezone)
    days = local_dates(projection.times("rank"), zone)
    activity = [t for kind, times in projection.events.items() if kind != "delivery" for t in times]
    window_start = now - timedelta(days=ACTIVITY_WINDOW_DAYS)

    rows = await db.execute(
        select(UserAchievement.current_tier, UserAchievement.points_awarded).where(UserAchievement.user_id == user_id)
    )
    total_points = 0
    earned = 0
    for tier, points in rows.all():
        total_points += points or 0
        if tier != "none":
            earned += 1

    recent_rows = await db.execute(
        select(AchievementTierAward, AchievementDefinition)
        .join(AchievementDefinition, AchievementDefinition.id == AchievementTierAward.achievement_id)
        .where(AchievementTierAward.user_id == user_id)
        .order_by(AchievementTierAward.awarded_at.desc(), AchievementTierAward.id.desc())
        .limit(RECENT_LIMIT)
    )
    recent = [
        RecentAchievement(
            code=d.code,
            name=d.name,
            icon=d.icon,
            tier=a.tier,
            points=a.points,
            awarded_at=as_utc(a.awarded_at),
        )
        for a, d in recent_rows.all()
    ]

    ctx = EvaluationContext(now=now)
    milestones = sorted(
        _milestones(specs, projection, tiers, ctx),
        key=lambda m: (m.remaining, -m.percent, m.code),
    )[:MILESTONE_LIMIT]

    return ProgressSummary(
        user_id=user_id,
        total_rankings=len(projection.times("rank")),
        unique_products=len(projection.rankings),
        current_streak=current_streak(days, now.astimezone(zone).date()),
        longest_streak=longest_streak(days),
        total_points=total_points,
        achievements_earned=earned,
        recent_achievements=recent,
        next_milestones=milestones,
        registered_at=projection.created_at,
        last_activity_at=max(activity, default=None),
        activities_30d=sum(1 for t in activity if t >= window_start),
        computed_at=now,
    )


async def get_progress(db: AsyncSession, user_id: int) -> ProgressSummary | None:
    """Cached summary; recomputed lazily after an invalidating event."""
    return await progress_cache.get(user_id, lambda: compute_progress(db, user_id))


async def closest_unearned(
    db: AsyncSession,
    user_id: int,
    *,
    category: str | None = None,
    achievement_registry: AchievementRegistry | None = None,
    now: datetime | None = None,
) -> Milestone | None:
    """The visible unearned tier the user is closest to, by completion percentage."""
    specs, projection, tiers = await _load_context(db, user_id, achievement_registry or registry)
    if projection is None:
        return None
    candidates = _milestones(specs, projection, tiers, EvaluationContext(now=now or datetime.now(timezone.utc)))
    if category is not None:
        candidates = [m for m in candidates if m.category == category]
    if not candidates:
        return None
    return max(candidates, key=lambda m: (m.percent, -m.remaining, m.code))
