"""Ranking and activity ingestion endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.auth.dependencies import get_current_user
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.dependencies import get_redis_dep
from coinbook.errors import ValidationFailed
from coinbook.events import RANK_MUTATED, emit_user_event
from coinbook.jobs.kinds import schedule_user_followups
from coinbook.rankings.schemas import (
    ActivityRequest,
    ActivityResponse,
    RankedProductResponse,
    RankingListResponse,
    RankingSaveResponse,
    RankingSnapshotRequest,
)
from coinbook.rankings.service import ingest_ranking_snapshot, list_rankings, record_user_event
from coinbook.timeutil import as_utc

router = APIRouter(prefix="/api/v1", tags=["Rankings"])


@router.put("/rankings", response_model=RankingSaveResponse)
async def save_rankings(
    body: RankingSnapshotRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
):
    """Replace the caller's ranking list with a full snapshot."""
    if not idempotency_key:
        raise ValidationFailed("Idempotency-Key header is required", field="Idempotency-Key")

    outcome = await ingest_ranking_snapshot(
        db, user, [(e.position, e.product_id) for e in body.rankings], idempotency_key,
    )
    if outcome.changed:
        await schedule_user_followups(db, user.id, "rank", idempotency_key)
        await db.commit()
        await emit_user_event(redis, user.id, RANK_MUTATED, {
            "ranked": outcome.result["ranked"],
            "removed": outcome.result["removed"],
            "sequence": outcome.result.get("sequence"),
        })

    return RankingSaveResponse(**outcome.result, replayed=outcome.replayed)


@router.get("/rankings", response_model=RankingListResponse)
async def get_rankings(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """The caller's current ranking list, best first."""
    rows = await list_rankings(db, user.id)
    items = [
        RankedProductResponse(
            position=ranking.position,
            product_id=product.id,
            title=product.title,
            vendor=product.vendor,
            ranked_at=as_utc(ranking.ranked_at),
        )
        for ranking, product in rows
    ]
    return RankingListResponse(rankings=items, total=len(items))


@router.post("/activity", response_model=ActivityResponse)
async def record_activity(
    body: ActivityRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
):
    """Record a login, rating, review, product view or search."""
    event, created = await record_user_event(
        db,
        user.id,
        body.kind,
        body.idempotency_key,
        product_id=body.product_id,
        value=body.value,
        occurred_at=body.occurred_at,
    )
    if created:
        await schedule_user_followups(db, user.id, body.kind, body.idempotency_key, classify=False)
        await db.commit()
    return ActivityResponse(id=event.id, kind=event.kind, recorded=created)
