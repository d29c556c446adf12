"""Ranking ingestion: idempotent snapshot replacement over the append-only event log."""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.serializer import acquire_user_lock
from coinbook.db.models import (
    CustomerOrderItem,
    IngestRequest,
    Product,
    ProductMetadata,
    ProductRanking,
    RankingEvent,
    User,
    UserEvent,
)
from coinbook.errors import IdempotencyConflict, IneligibleProduct, TransientError, ValidationFailed

logger = logging.getLogger(__name__)

RANKING_LOCK_NAMESPACE = 7303

# Order statuses that make a purchased product rankable
RANKABLE_STATUSES = ("fulfilled", "delivered")

ACTIVITY_KINDS = ("login", "rate", "review", "view", "search")


@dataclass(frozen=True)
class IngestOutcome:
    result: dict[str, Any]
    replayed: bool

    @property
    def changed(self) -> bool:
        return not self.replayed and bool(self.result.get("ranked") or self.result.get("removed"))


def payload_hash(entries: Sequence[tuple[int, int]]) -> str:
    """Stable digest of a snapshot: (position, product_id) pairs sorted by position."""
    canonical = json.dumps(sorted([int(pos), int(pid)] for pos, pid in entries), separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def validate_snapshot(entries: Sequence[tuple[int, int]]) -> None:
    positions = [pos for pos, _ in entries]
    product_ids = [pid for _, pid in entries]
    if any(pos < 1 for pos in positions):
        raise ValidationFailed("Positions must be positive integers", field="rankings")
    if len(set(positions)) != len(positions):
        dupes = sorted({p for p in positions if positions.count(p) > 1})
        raise ValidationFailed("Duplicate positions in ranking", field="rankings", positions=dupes)
    if len(set(product_ids)) != len(product_ids):
        dupes = sorted({p for p in product_ids if product_ids.count(p) > 1})
        raise ValidationFailed("Product ranked more than once", field="rankings", product_ids=dupes)


async def rankable_product_ids(db: AsyncSession, user: User, product_ids: set[int]) -> set[int]:
    """Subset of product_ids this user may rank."""
    if user.is_admin or not product_ids:
        return set(product_ids)

    forced = await db.execute(
        select(ProductMetadata.product_id).where(
            ProductMetadata.product_id.in_(list(product_ids)),
            ProductMetadata.force_rankable.is_(True),
        )
    )
    allowed = set(forced.scalars())

    purchased = await db.execute(
        select(CustomerOrderItem.product_id).where(
            CustomerOrderItem.user_id == user.id,
            CustomerOrderItem.product_id.in_(list(product_ids)),
            CustomerOrderItem.fulfillment_status.in_(RANKABLE_STATUSES),
        )
    )
    allowed.update(purchased.scalars())
    return allowed


async def count_rankable_products(db: AsyncSession, user: User) -> int:
    """Number of active products this user may place in their list."""
    active = select(Product.id).where(Product.is_active.is_(True))
    if user.is_admin:
        return len((await db.execute(active)).scalars().all())
    forced = await db.execute(
        active.join(ProductMetadata, ProductMetadata.product_id == Product.id)
        .where(ProductMetadata.force_rankable.is_(True))
    )
    purchased = await db.execute(
        active.join(CustomerOrderItem, CustomerOrderItem.product_id == Product.id).where(
            CustomerOrderItem.user_id == user.id,
            CustomerOrderItem.fulfillment_status.in_(RANKABLE_STATUSES),
        )
    )
    return len(set(forced.scalars()) | set(purchased.scalars()))


async def _prior_request(db: AsyncSession, key: str) -> IngestRequest | None:
    result = await db.execute(select(IngestRequest).where(IngestRequest.idempotency_key == key))
    return result.scalar_one_or_none()


def _replay_or_conflict(prior: IngestRequest, user_id: int, digest: str) -> IngestOutcome:
    if prior.user_id != user_id or prior.payload_hash != digest:
        raise IdempotencyConflict("Idempotency key was already used with a different payload")
    return IngestOutcome(result=dict(prior.result), replayed=True)


async def ingest_ranking_snapshot(
    db: AsyncSession,
    user: User,
    entries: Sequence[tuple[int, int]],
    idempotency_key: str,
    *,
    now: datetime | None = None,
) -> IngestOutcome:
    """Replace the user's current ranking with ``entries`` as (position, product_id) pairs.

    Appends one RankingEvent per addition, position change or removal, then
    rewrites the changed rows of the projection. A key seen before with the
    same payload returns the stored result; with a different payload it is a
    conflict.
    """
    if not idempotency_key:
        raise ValidationFailed("Idempotency key is required", field="idempotency_key")
    validate_snapshot(entries)
    digest = payload_hash(entries)

    prior = await _prior_request(db, idempotency_key)
    if prior is not None:
        return _replay_or_conflict(prior, user.id, digest)

    wanted = {int(pid): int(pos) for pos, pid in entries}
    existing = await db.execute(select(Product.id).where(Product.id.in_(list(wanted))))
    missing = set(wanted) - set(existing.scalars())
    if missing:
        raise ValidationFailed("Unknown products", field="rankings", product_ids=sorted(missing))

    allowed = await rankable_product_ids(db, user, set(wanted))
    ineligible = set(wanted) - allowed
    if ineligible:
        raise IneligibleProduct(sorted(ineligible))

    now = now or datetime.now(timezone.utc)
    try:
        await acquire_user_lock(db, user.id, RANKING_LOCK_NAMESPACE)
        result = await _apply_snapshot(db, user.id, wanted, idempotency_key, now)
        db.add(IngestRequest(
            idempotency_key=idempotency_key,
            user_id=user.id,
            payload_hash=digest,
            result=result,
            created_at=now,
        ))
        await db.flush()
        await db.commit()
    except IntegrityError as exc:
        # Concurrent request with the same key, or a racing writer on the same positions
        await db.rollback()
        prior = await _prior_request(db, idempotency_key)
        if prior is not None:
            return _replay_or_conflict(prior, user.id, digest)
        msg = f"Concurrent ranking update for user {user.id}"
        raise TransientError(msg) from exc

    logger.info(
        "Ranking snapshot for user %s: %d ranked, %d removed",
        user.id, len(result["ranked"]), len(result["removed"]),
    )
    return IngestOutcome(result=result, replayed=False)


async def _apply_snapshot(
    db: AsyncSession,
    user_id: int,
    wanted: dict[int, int],
    idempotency_key: str,
    now: datetime,
) -> dict[str, Any]:
    current_rows = await db.execute(select(ProductRanking).where(ProductRanking.user_id == user_id))
    current = {row.product_id: row for row in current_rows.scalars()}

    changed = sorted(
        (pid for pid, pos in wanted.items() if pid not in current or current[pid].position != pos),
        key=lambda pid: wanted[pid],
    )
    removed = sorted(pid for pid in current if pid not in wanted)

    events: dict[int, RankingEvent] = {}
    for pid in changed:
        events[pid] = RankingEvent(
            user_id=user_id, product_id=pid, action="ranked",
            position=wanted[pid], occurred_at=now, idempotency_key=idempotency_key,
        )
    for pid in removed:
        db.add(RankingEvent(
            user_id=user_id, product_id=pid, action="removed",
            position=None, occurred_at=now, idempotency_key=idempotency_key,
        ))
    db.add_all(events.values())
    await db.flush()

    # Free positions before reusing them
    stale = [pid for pid in changed if pid in current] + removed
    for pid in stale:
        await db.delete(current[pid])
    if stale:
        await db.flush()

    for pid in changed:
        db.add(ProductRanking(
            user_id=user_id,
            product_id=pid,
            position=wanted[pid],
            event_id=events[pid].id,
            ranked_at=now,
        ))

    sequence = max((e.id for e in events.values()), default=None)
    if removed:
        last = await db.execute(
            select(RankingEvent.id)
            .where(RankingEvent.user_id == user_id)
            .order_by(RankingEvent.id.desc())
            .limit(1)
        )
        sequence = last.scalar_one()

    return {
        "accepted": len(wanted),
        "ranked": changed,
        "removed": removed,
        "sequence": sequence,
    }


async def list_rankings(db: AsyncSession, user_id: int) -> list[tuple[ProductRanking, Product]]:
    result = await db.execute(
        select(ProductRanking, Product)
        .join(Product, Product.id == ProductRanking.product_id)
        .where(ProductRanking.user_id == user_id)
        .order_by(ProductRanking.position)
    )
    return list(result.unique().tuples().all())


async def remove_rankings(
    db: AsyncSession,
    user_id: int,
    product_ids: Sequence[int],
    *,
    reason: str = "admin",
    now: datetime | None = None,
) -> int:
    """Administrative removal: appends 'removed' events and drops projection rows."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(ProductRanking.product_id).where(
            ProductRanking.user_id == user_id,
            ProductRanking.product_id.in_(list(product_ids)),
        )
    )
    present = sorted(result.scalars())
    if not present:
        return 0

    await acquire_user_lock(db, user_id, RANKING_LOCK_NAMESPACE)
    key = f"{reason}:{now.isoformat()}"
    for pid in present:
        db.add(RankingEvent(
            user_id=user_id, product_id=pid, action="removed",
            position=None, occurred_at=now, idempotency_key=key,
        ))
    await db.execute(
        delete(ProductRanking).where(ProductRanking.user_id == user_id, ProductRanking.product_id.in_(present))
    )
    await db.commit()
    logger.info("Removed %d rankings for user %s (%s)", len(present), user_id, reason)
    return len(present)


async def rebuild_user_rankings(db: AsyncSession, user_id: int) -> int:
    """Rebuild the ranking projection for one user by replaying the event log.

    Returns the number of rows in the rebuilt projection.
    """
    await acquire_user_lock(db, user_id, RANKING_LOCK_NAMESPACE)
    result = await db.execute(
        select(RankingEvent).where(RankingEvent.user_id == user_id).order_by(RankingEvent.id)
    )
    state: dict[int, RankingEvent] = {}
    for event in result.scalars():
        if event.action == "removed":
            state.pop(event.product_id, None)
        else:
            state[event.product_id] = event

    rows = await db.execute(select(ProductRanking).where(ProductRanking.user_id == user_id))
    for row in rows.scalars():
        await db.delete(row)
    await db.flush()
    for pid, event in state.items():
        db.add(ProductRanking(
            user_id=user_id,
            product_id=pid,
            position=event.position,
            event_id=event.id,
            ranked_at=event.occurred_at,
        ))
    await db.commit()
    logger.info("Rebuilt %d rankings for user %s from the event log", len(state), user_id)
    return len(state)


async def record_user_event(
    db: AsyncSession,
    user_id: int,
    kind: str,
    idempotency_key: str,
    *,
    product_id: int | None = None,
    value: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> tuple[UserEvent, bool]:
    """Append an activity event. Returns (event, created); a seen key returns the original."""
    if kind not in ACTIVITY_KINDS:
        raise ValidationFailed(f"Unknown activity kind '{kind}'", field="kind")

    result = await db.execute(select(UserEvent).where(UserEvent.idempotency_key == idempotency_key))
    prior = result.scalar_one_or_none()
    if prior is not None:
        if prior.user_id != user_id or prior.kind != kind:
            raise IdempotencyConflict("Idempotency key was already used for a different event")
        return prior, False

    event = UserEvent(
        user_id=user_id,
        kind=kind,
        product_id=product_id,
        value=value,
        occurred_at=occurred_at or datetime.now(timezone.utc),
        idempotency_key=idempotency_key,
    )
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(select(UserEvent).where(UserEvent.idempotency_key == idempotency_key))
        prior = result.scalar_one_or_none()
        if prior is None:
            raise
        return prior, False
    return event, True
