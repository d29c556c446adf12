"""Achievement listings and administrative operations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.predicates import EvaluationContext, PredicateError, measure, validate_predicate
from coinbook.achievements.projection import load_catalog, load_projection
from coinbook.achievements.registry import COLLECTION_TYPES, AchievementRegistry, normalize_icon, registry
from coinbook.achievements.tiers import next_threshold, validate_thresholds
from coinbook.db.models import AchievementDefinition, AchievementTierAward, CoinTypeConfig, UserAchievement
from coinbook.errors import ValidationFailed
from coinbook.progress.cache import progress_cache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementProgress:
    code: str
    name: str
    description: str
    icon: str | None
    category: str
    collection_type: str
    current_tier: str
    progress: int
    next_tier: str | None
    next_target: int | None
    percent: int
    points_awarded: int
    hidden: bool
    first_earned_at: datetime | None


async def list_achievements_with_progress(
    db: AsyncSession,
    user_id: int,
    *,
    achievement_registry: AchievementRegistry | None = None,
    now: datetime | None = None,
) -> list[AchievementProgress]:
    """Every definition visible to this user, with live progress.

    Hidden definitions are omitted unless this user has earned them.
    """
    reg = achievement_registry or registry
    specs = await reg.get_all(db)
    projection = await load_projection(db, user_id)
    if projection is None:
        return []
    if any(s.needs_catalog for s in specs):
        projection.catalog = await load_catalog(db)

    result = await db.execute(select(UserAchievement).where(UserAchievement.user_id == user_id))
    rows = {row.achievement_id: row for row in result.scalars()}
    ctx = EvaluationContext(now=now or datetime.now(timezone.utc))

    items: list[AchievementProgress] = []
    for spec in specs:
        row = rows.get(spec.id)
        tier = row.current_tier if row is not None else "none"
        if spec.is_hidden and tier == "none":
            continue
        try:
            progress = measure(spec.predicate, projection, ctx)
        except (PredicateError, KeyError):
            logger.warning("Skipping achievement %s with bad predicate", spec.code)
            continue
        upcoming = next_threshold(spec.thresholds, tier)
        if upcoming is None:
            percent = 100
        else:
            percent = min(100, progress * 100 // upcoming[1]) if upcoming[1] else 100
        items.append(AchievementProgress(
            code=spec.code,
            name=spec.name,
            description=spec.description,
            icon=spec.icon,
            category=spec.category,
            collection_type=spec.collection_type,
            current_tier=tier,
            progress=progress,
            next_tier=upcoming[0] if upcoming else None,
            next_target=upcoming[1] if upcoming else None,
            percent=percent,
            points_awarded=row.points_awarded if row is not None else 0,
            hidden=spec.is_hidden,
            first_earned_at=row.first_earned_at if row is not None else None,
        ))
    return items


async def list_coin_types(db: AsyncSession) -> list[CoinTypeConfig]:
    result = await db.execute(select(CoinTypeConfig).order_by(CoinTypeConfig.sort_order))
    return list(result.scalars())


def validate_definition_fields(fields: dict[str, Any]) -> None:
    """Validate the parts of a definition that the evaluator interprets."""
    if "collection_type" in fields and fields["collection_type"] not in COLLECTION_TYPES:
        raise ValidationFailed("Unknown collection type", field="collection_type")
    if "tier_thresholds" in fields or "points_per_tier" in fields:
        try:
            validate_thresholds(
                [(str(t), int(c)) for t, c in fields.get("tier_thresholds", [])],
                fields.get("points_per_tier", []),
            )
        except (TypeError, ValueError) as exc:
            raise ValidationFailed(str(exc), field="tier_thresholds") from exc
    if "predicate" in fields:
        try:
            validate_predicate(fields["predicate"])
        except PredicateError as exc:
            raise ValidationFailed(str(exc), field="predicate") from exc


async def update_definition(
    db: AsyncSession,
    code: str,
    changes: dict[str, Any],
    *,
    achievement_registry: AchievementRegistry | None = None,
) -> AchievementDefinition:
    """Apply an admin edit and drop the registry cache."""
    result = await db.execute(select(AchievementDefinition).where(AchievementDefinition.code == code))
    definition = result.scalar_one_or_none()
    if definition is None:
        raise ValidationFailed(f"Unknown achievement '{code}'", field="code")

    merged = {
        "tier_thresholds": definition.tier_thresholds,
        "points_per_tier": definition.points_per_tier,
        **changes,
    }
    validate_definition_fields(merged)

    if "icon" in changes:
        changes["icon"] = normalize_icon(changes["icon"])
    for key, value in changes.items():
        setattr(definition, key, value)
    definition.updated_at = datetime.now(timezone.utc)
    await db.commit()

    (achievement_registry or registry).invalidate()
    logger.info("Achievement %s updated: %s", code, sorted(changes))
    return definition


async def reset_user_achievements(db: AsyncSession, user_id: int, codes: list[str] | None = None) -> int:
    """Administrative reset: the only path by which a tier goes down.

    Returns the number of achievement rows removed.
    """
    achievement_ids: list[int] | None = None
    if codes:
        result = await db.execute(
            select(AchievementDefinition.id).where(AchievementDefinition.code.in_(codes))
        )
        achievement_ids = list(result.scalars())

    stmt = delete(UserAchievement).where(UserAchievement.user_id == user_id)
    awards_stmt = delete(AchievementTierAward).where(AchievementTierAward.user_id == user_id)
    if achievement_ids is not None:
        stmt = stmt.where(UserAchievement.achievement_id.in_(achievement_ids))
        awards_stmt = awards_stmt.where(AchievementTierAward.achievement_id.in_(achievement_ids))

    removed = (await db.execute(stmt)).rowcount or 0
    await db.execute(awards_stmt)
    await db.commit()
    progress_cache.invalidate(user_id)
    logger.info("Reset %d achievements for user %s", removed, user_id)
    return removed
