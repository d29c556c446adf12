"""Achievement evaluator.

Given a user and a trigger kind, re-reads the user's projection and computes
the minimal set of achievement state changes. Tiers only ratchet upward; the
points column is recomputed from the tier, never incremented, so replays
converge on the same value.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.predicates import EvaluationContext, PredicateError, measure
from coinbook.achievements.projection import UserProjection, load_catalog, load_projection
from coinbook.achievements.registry import AchievementRegistry, AchievementSpec, registry
from coinbook.achievements.serializer import CoalescingSerializer, acquire_user_lock
from coinbook.achievements.tiers import (
    TIER_ORDINAL,
    first_tier,
    points_for_tier,
    points_through,
    tier_for_progress,
    tiers_between,
)
from coinbook.db.models import AchievementTierAward, UserAchievement
from coinbook.errors import InvariantViolation, TransientError
from coinbook.events import ACHIEVEMENT_EARNED, emit_user_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementAward:
    """One achievement.earned event."""

    code: str
    name: str
    icon: str | None
    tier: str
    previous_tier: str
    tiers_awarded: tuple[str, ...]
    points_awarded: int
    points_delta: int
    is_tier_upgrade: bool
    hidden: bool
    description: str

    def to_event(self) -> dict[str, Any]:
        data = asdict(self)
        data["tiers_awarded"] = list(self.tiers_awarded)
        return data


# One in-flight evaluation per user within this process
_serializer: CoalescingSerializer[list[AchievementAward]] = CoalescingSerializer()


def is_tier_upgrade(spec: AchievementSpec, previous: str, new: str) -> bool:
    """True when the user already held a tier, or the award skips past the first tier."""
    if previous != "none":
        return True
    first = first_tier(spec.thresholds)
    return first is not None and TIER_ORDINAL[new] > TIER_ORDINAL[first]


class AchievementEvaluator:
    """Evaluates achievement predicates for one user at a time."""

    def __init__(
        self,
        db: AsyncSession,
        redis: object = None,
        *,
        achievement_registry: AchievementRegistry | None = None,
        now: datetime | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.registry = achievement_registry or registry
        self._now = now

    def _clock(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    async def evaluate(self, user_id: int, trigger: str) -> list[AchievementAward]:
        """Evaluate every definition that listens to ``trigger``.

        Concurrent calls for the same user coalesce into one follow-up round;
        callers that joined it receive that round's awards.
        """
        return await _serializer.run(user_id, trigger, lambda triggers: self._evaluate_round(user_id, triggers))

    async def _evaluate_round(self, user_id: int, triggers: frozenset[str]) -> list[AchievementAward]:
        try:
            awards = await self._evaluate_locked(user_id, triggers)
            await self.db.commit()
        except IntegrityError as exc:
            # Another process awarded the same tier between our read and write
            await self.db.rollback()
            msg = f"Concurrent achievement award for user {user_id}"
            raise TransientError(msg) from exc

        for award in awards:
            await emit_user_event(self.redis, user_id, ACHIEVEMENT_EARNED, award.to_event())
        if awards:
            logger.info(
                "Awarded %s to user %s (triggers=%s)",
                [f"{a.code}:{a.tier}" for a in awards], user_id, sorted(triggers),
            )
        return awards

    async def _evaluate_locked(self, user_id: int, triggers: frozenset[str]) -> list[AchievementAward]:
        await acquire_user_lock(self.db, user_id)

        specs = await self.registry.for_triggers(self.db, triggers)
        if not specs:
            return []

        projection = await load_projection(self.db, user_id)
        if projection is None:
            return []
        if any(spec.needs_catalog for spec in specs):
            projection.catalog = await load_catalog(self.db)

        rows = await self._load_rows(user_id)
        all_specs = {s.id: s for s in await self.registry.get_all(self.db)}
        projection.earned = {
            all_specs[aid].code: row.current_tier for aid, row in rows.items() if aid in all_specs
        }

        now = self._clock()
        ctx = EvaluationContext(now=now)
        awards: list[AchievementAward] = []
        for spec in specs:
            award = await self._apply(spec, projection, rows, ctx, now)
            if award is not None:
                awards.append(award)
                projection.earned[spec.code] = award.tier
        await self.db.flush()
        return awards

    async def _load_rows(self, user_id: int) -> dict[int, UserAchievement]:
        result = await self.db.execute(select(UserAchievement).where(UserAchievement.user_id == user_id))
        return {row.achievement_id: row for row in result.scalars()}

    async def _apply(
        self,
        spec: AchievementSpec,
        projection: UserProjection,
        rows: dict[int, UserAchievement],
        ctx: EvaluationContext,
        now: datetime,
    ) -> AchievementAward | None:
        if spec.prerequisite_code and projection.earned.get(spec.prerequisite_code, "none") == "none":
            return None

        try:
            progress = measure(spec.predicate, projection, ctx)
        except (PredicateError, KeyError) as exc:
            msg = f"Achievement '{spec.code}' has an uninterpretable predicate"
            raise InvariantViolation(msg, code=spec.code) from exc

        row = rows.get(spec.id)
        previous = row.current_tier if row is not None else "none"
        reached = tier_for_progress(spec.thresholds, progress)

        if TIER_ORDINAL[reached] <= TIER_ORDINAL[previous]:
            # Ratchet: tiers never drop, but progress follows the log
            if row is not None:
                row.progress = progress
            return None

        crossed = tiers_between(spec.thresholds, previous, reached)
        await self._record_tiers(projection.user_id, spec, crossed, now)

        total_points = points_through(spec.thresholds, spec.points_per_tier, reached)
        if row is None:
            row = UserAchievement(
                user_id=projection.user_id,
                achievement_id=spec.id,
                first_earned_at=now,
            )
            self.db.add(row)
            rows[spec.id] = row
        previous_points = row.points_awarded or 0
        row.current_tier = reached
        row.progress = progress
        row.points_awarded = total_points
        row.last_upgraded_at = now
        if row.first_earned_at is None:
            row.first_earned_at = now

        return AchievementAward(
            code=spec.code,
            name=spec.name,
            icon=spec.icon,
            tier=reached,
            previous_tier=previous,
            tiers_awarded=tuple(crossed),
            points_awarded=total_points,
            points_delta=total_points - previous_points,
            is_tier_upgrade=is_tier_upgrade(spec, previous, reached),
            hidden=spec.is_hidden,
            description=spec.description,
        )

    async def _record_tiers(self, user_id: int, spec: AchievementSpec, tiers: list[str], now: datetime) -> None:
        """Insert one award row per crossed tier; tiers already recorded are skipped."""
        existing = await self.db.execute(
            select(AchievementTierAward.tier).where(
                AchievementTierAward.user_id == user_id,
                AchievementTierAward.achievement_id == spec.id,
            )
        )
        have = set(existing.scalars())
        for tier in tiers:
            if tier in have:
                continue
            self.db.add(AchievementTierAward(
                user_id=user_id,
                achievement_id=spec.id,
                tier=tier,
                points=points_for_tier(spec.thresholds, spec.points_per_tier, tier),
                awarded_at=now,
            ))
