"""Flavor classification: nightly full run and per-user incremental updates.

The full run recomputes every profile's cohort partition and stores the
boundary averages as snapshots. Incremental updates between runs place a
single user against those stored boundaries, so they may lag the true
population boundary until the next full run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.serializer import CLASSIFICATION_LOCK_KEY
from coinbook.classification.config import FlavorCommunitySettings, flavor_config
from coinbook.classification.engine import (
    FLAVOR_PROFILES,
    STATES,
    CohortPartition,
    ProfileFacts,
    assign_state,
    partition_cohort,
    pre_cohort_state,
)
from coinbook.db.models import (
    CustomerOrderItem,
    FlavorPercentileSnapshot,
    FlavorProfileState,
    ProductMetadata,
    ProductRanking,
    User,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500


@dataclass(frozen=True)
class ClassificationResult:
    user_id: int
    states: dict[str, str]
    changed: dict[str, tuple[str | None, str]]


@dataclass
class FullRunReport:
    users_processed: int = 0
    cohort_sizes: dict[str, int] = field(default_factory=dict)
    skipped: bool = False
    cancelled: bool = False


def _profiles(raw: Iterable[str] | None) -> set[str]:
    return {p.strip().lower() for p in (raw or ()) if p and p.strip()}


async def load_profile_facts(
    db: AsyncSession,
    user_ids: list[int],
    delivered_status: str,
) -> dict[int, dict[str, ProfileFacts]]:
    """Supporting counts per user and profile, for the taxonomy plus any tagged profile."""
    if not user_ids:
        return {}

    purchased: dict[tuple[int, str], set[int]] = defaultdict(set)
    delivered: dict[tuple[int, str], set[int]] = defaultdict(set)
    ranked_positions: dict[tuple[int, str], list[int]] = defaultdict(list)
    seen_profiles: set[str] = set(FLAVOR_PROFILES)

    orders = await db.execute(
        select(CustomerOrderItem.user_id, CustomerOrderItem.product_id, CustomerOrderItem.fulfillment_status,
               ProductMetadata.flavor_profiles)
        .join(ProductMetadata, ProductMetadata.product_id == CustomerOrderItem.product_id)
        .where(CustomerOrderItem.user_id.in_(user_ids))
    )
    for user_id, product_id, status, profiles in orders.all():
        for profile in _profiles(profiles):
            seen_profiles.add(profile)
            if status == delivered_status:
                delivered[(user_id, profile)].add(product_id)
            else:
                purchased[(user_id, profile)].add(product_id)

    rankings = await db.execute(
        select(ProductRanking.user_id, ProductRanking.position, ProductMetadata.flavor_profiles)
        .join(ProductMetadata, ProductMetadata.product_id == ProductRanking.product_id)
        .where(ProductRanking.user_id.in_(user_ids))
    )
    for user_id, position, profiles in rankings.all():
        for profile in _profiles(profiles):
            seen_profiles.add(profile)
            ranked_positions[(user_id, profile)].append(position)

    facts: dict[int, dict[str, ProfileFacts]] = {}
    for user_id in user_ids:
        per_profile: dict[str, ProfileFacts] = {}
        for profile in sorted(seen_profiles):
            positions = ranked_positions.get((user_id, profile), [])
            per_profile[profile] = ProfileFacts(
                user_id=user_id,
                profile=profile,
                purchased_count=len(purchased.get((user_id, profile), ())),
                delivered_count=len(delivered.get((user_id, profile), ())),
                ranked_count=len(positions),
                avg_position=(sum(positions) / len(positions)) if positions else None,
            )
        facts[user_id] = per_profile
    return facts


async def _write_states(
    db: AsyncSession,
    assignments: dict[int, dict[str, tuple[ProfileFacts, str]]],
    now: datetime,
) -> dict[int, dict[str, tuple[str | None, str]]]:
    """Upsert state rows; returns the changes per user as profile -> (old, new)."""
    user_ids = list(assignments)
    result = await db.execute(select(FlavorProfileState).where(FlavorProfileState.user_id.in_(user_ids)))
    existing = {(row.user_id, row.flavor_profile): row for row in result.scalars()}

    changes: dict[int, dict[str, tuple[str | None, str]]] = defaultdict(dict)
    for user_id, per_profile in assignments.items():
        for profile, (facts, state) in per_profile.items():
            row = existing.get((user_id, profile))
            if row is None:
                row = FlavorProfileState(user_id=user_id, flavor_profile=profile)
                db.add(row)
                changes[user_id][profile] = (None, state)
            elif row.state != state:
                changes[user_id][profile] = (row.state, state)
            row.state = state
            row.purchased_count = facts.purchased_count
            row.delivered_count = facts.delivered_count
            row.ranked_count = facts.ranked_count
            row.avg_position = facts.avg_position
            row.computed_at = now
    await db.flush()
    return changes


async def load_snapshots(db: AsyncSession) -> dict[str, FlavorPercentileSnapshot]:
    result = await db.execute(select(FlavorPercentileSnapshot))
    return {row.flavor_profile: row for row in result.scalars()}


async def classify_user(
    db: AsyncSession,
    user_id: int,
    *,
    config: FlavorCommunitySettings | None = None,
    now: datetime | None = None,
) -> ClassificationResult:
    """Incrementally reclassify one user against the last full run's boundaries."""
    config = config or await flavor_config.get(db)
    now = now or datetime.now(timezone.utc)
    snapshots = await load_snapshots(db)
    facts = (await load_profile_facts(db, [user_id], config.delivered_status)).get(user_id, {})

    assignments: dict[str, tuple[ProfileFacts, str]] = {}
    for profile, profile_facts in facts.items():
        snap = snapshots.get(profile)
        state = assign_state(
            profile_facts,
            config,
            snap.cohort_size if snap else 0,
            snap.enthusiast_cutoff if snap else None,
            snap.explorer_cutoff if snap else None,
        )
        assignments[profile] = (profile_facts, state)

    changes = await _write_states(db, {user_id: assignments}, now)
    await db.commit()
    return ClassificationResult(
        user_id=user_id,
        states={p: s for p, (_f, s) in assignments.items()},
        changed=changes.get(user_id, {}),
    )


@asynccontextmanager
async def classification_lock(db: AsyncSession) -> AsyncIterator[bool]:
    """Global advisory lock for the full run, held on a dedicated connection.

    Yields False when another run holds it. Outside PostgreSQL there is
    nothing to coordinate with and the lock is always granted.
    """
    if db.bind.dialect.name != "postgresql":
        yield True
        return
    async with db.bind.connect() as conn:
        acquired = bool((await conn.execute(
            text("SELECT pg_try_advisory_lock(:key)"), {"key": CLASSIFICATION_LOCK_KEY},
        )).scalar())
        try:
            yield acquired
        finally:
            if acquired:
                await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": CLASSIFICATION_LOCK_KEY})
            await conn.commit()


async def _compute_partitions(db: AsyncSession, config: FlavorCommunitySettings) -> dict[str, CohortPartition]:
    """Stream the ranking projection once and partition every profile's cohort."""
    sums: dict[tuple[str, int], list[int]] = {}
    stream = await db.stream(
        select(ProductRanking.user_id, ProductRanking.position, ProductMetadata.flavor_profiles)
        .join(ProductMetadata, ProductMetadata.product_id == ProductRanking.product_id)
        .order_by(ProductRanking.user_id)
        .execution_options(yield_per=5000)
    )
    async for user_id, position, profiles in stream:
        for profile in _profiles(profiles):
            acc = sums.setdefault((profile, user_id), [0, 0])
            acc[0] += position
            acc[1] += 1

    members: dict[str, list[tuple[int, float]]] = defaultdict(list)
    for (profile, user_id), (total, count) in sums.items():
        if count >= config.min_products:
            members[profile].append((user_id, total / count))

    profiles = set(FLAVOR_PROFILES) | {profile for profile, _uid in sums}
    return {
        profile: partition_cohort(members.get(profile, []), config.enthusiast_top_pct, config.explorer_bottom_pct)
        for profile in sorted(profiles)
    }


async def _store_snapshots(db: AsyncSession, partitions: dict[str, CohortPartition], now: datetime) -> None:
    existing = await load_snapshots(db)
    for profile, partition in partitions.items():
        row = existing.get(profile)
        if row is None:
            row = FlavorPercentileSnapshot(flavor_profile=profile)
            db.add(row)
        row.cohort_size = partition.cohort_size
        row.enthusiast_cutoff = partition.enthusiast_cutoff
        row.explorer_cutoff = partition.explorer_cutoff
        row.computed_at = now
    await db.commit()


async def run_full_classification(
    db: AsyncSession,
    *,
    config: FlavorCommunitySettings | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    should_cancel: Callable[[], Awaitable[bool]] | None = None,
    on_batch: Callable[[dict[int, dict[str, tuple[str | None, str]]]], Awaitable[None]] | None = None,
    now: datetime | None = None,
) -> FullRunReport:
    """Recompute every profile's cohort and every user's states.

    Commits once per batch of users; a cancel request is honored between
    batches and keeps the batches already written.
    """
    config = config or await flavor_config.get(db)
    now = now or datetime.now(timezone.utc)
    report = FullRunReport()

    async with classification_lock(db) as acquired:
        if not acquired:
            logger.info("Full classification already running elsewhere; skipping")
            report.skipped = True
            return report

        partitions = await _compute_partitions(db, config)
        await _store_snapshots(db, partitions, now)
        report.cohort_sizes = {p: part.cohort_size for p, part in partitions.items()}

        last_id = 0
        while True:
            if should_cancel is not None and await should_cancel():
                report.cancelled = True
                logger.info("Full classification cancelled after %d users", report.users_processed)
                break

            result = await db.execute(
                select(User.id)
                .where(User.id > last_id, User.deleted_at.is_(None))
                .order_by(User.id)
                .limit(batch_size)
            )
            user_ids = list(result.scalars())
            if not user_ids:
                break
            last_id = user_ids[-1]

            facts = await load_profile_facts(db, user_ids, config.delivered_status)
            assignments: dict[int, dict[str, tuple[ProfileFacts, str]]] = {}
            for user_id, per_profile in facts.items():
                assignments[user_id] = {}
                for profile, profile_facts in per_profile.items():
                    state = pre_cohort_state(profile_facts, config)
                    if state is None:
                        partition = partitions.get(profile)
                        # Ranked since the stream read: fall back to the stored boundaries
                        if partition is None or user_id not in partition.states:
                            state = assign_state(
                                profile_facts, config,
                                partition.cohort_size if partition else 0,
                                partition.enthusiast_cutoff if partition else None,
                                partition.explorer_cutoff if partition else None,
                            )
                        else:
                            state = partition.states[user_id]
                    assignments[user_id][profile] = (profile_facts, state)

            changes = await _write_states(db, assignments, now)
            await db.commit()
            report.users_processed += len(user_ids)
            if on_batch is not None and changes:
                await on_batch(dict(changes))

    logger.info(
        "Full classification finished: %d users, cohorts=%s",
        report.users_processed, report.cohort_sizes,
    )
    return report


async def community_summary(db: AsyncSession) -> dict[str, dict[str, int]]:
    """Users per state for each flavor profile."""
    result = await db.execute(
        select(FlavorProfileState.flavor_profile, FlavorProfileState.state, func.count())
        .group_by(FlavorProfileState.flavor_profile, FlavorProfileState.state)
    )
    summary: dict[str, dict[str, int]] = {}
    for profile, state, count in result.all():
        summary.setdefault(profile, dict.fromkeys(STATES, 0))[state] = count
    return summary


async def user_flavor_states(db: AsyncSession, user_id: int) -> list[FlavorProfileState]:
    result = await db.execute(
        select(FlavorProfileState)
        .where(FlavorProfileState.user_id == user_id)
        .order_by(FlavorProfileState.flavor_profile)
    )
    return list(result.scalars())