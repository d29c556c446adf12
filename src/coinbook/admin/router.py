"""Admin endpoints: bulk import, queue, flavor community, webhooks and achievement ops."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.schemas import AchievementUpdateRequest
from coinbook.achievements.service import reset_user_achievements, update_definition
from coinbook.auth.dependencies import require_admin
from coinbook.classification.config import flavor_config
from coinbook.classification.service import community_summary
from coinbook.database import get_session
from coinbook.db.models import User
from coinbook.dependencies import get_redis_dep
from coinbook.events import RANK_MUTATED, emit_user_event
from coinbook.imports.orchestrator import BulkImportOrchestrator, session_dict
from coinbook.jobs.kinds import CLASSIFY_ALL
from coinbook.jobs.queue import JobQueue
from coinbook.rankings.service import rebuild_user_rankings, remove_rankings
from coinbook.timeutil import as_utc
from coinbook.webhooks.service import clear_failed_webhooks, list_deliveries

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/admin", tags=["Admin"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class ImportStartRequest(BaseModel):
    mode: str = "incremental"
    batch_size: int | None = Field(default=None, ge=1)
    target_unprocessed: int | None = Field(default=None, ge=1)
    reimport_all: bool = False


class CleanJobsRequest(BaseModel):
    older_than_hours: float = Field(default=24, ge=0)


class FlavorConfigUpdate(BaseModel):
    min_products: int | None = None
    enthusiast_top_pct: int | None = None
    explorer_bottom_pct: int | None = None
    delivered_status: str | None = None


class ResetAchievementsRequest(BaseModel):
    codes: list[str] | None = None


class RemoveRankingsRequest(BaseModel):
    product_ids: list[int] = Field(min_length=1)


class ClassificationRunRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1)


def _delivery_dict(delivery: Any) -> dict[str, Any]:  # noqa: ANN401
    return {
        "id": delivery.id,
        "topic": delivery.topic,
        "external_id": delivery.external_id,
        "disposition": delivery.disposition,
        "reason": delivery.reason,
        "job_id": delivery.job_id,
        "received_at": as_utc(delivery.received_at),
        "processed_at": as_utc(delivery.processed_at),
    }


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------


@router.post("/imports")
async def start_import(
    body: ImportStartRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    """Start a bulk import session."""
    session = await BulkImportOrchestrator(db, redis=redis).start(
        mode=body.mode,
        batch_size=body.batch_size,
        target_unprocessed=body.target_unprocessed,
        reimport_all=body.reimport_all,
    )
    return session_dict(session)


@router.post("/imports/resume")
async def resume_import(
    session_id: str | None = Query(default=None),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    """Resume the latest (or the given) session from its stored cursor."""
    session = await BulkImportOrchestrator(db, redis=redis).resume(session_id)
    return session_dict(session)


@router.post("/imports/cancel")
async def cancel_import(
    session_id: str | None = Query(default=None),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    session = await BulkImportOrchestrator(db, redis=redis).cancel(session_id)
    return session_dict(session)


@router.get("/imports/progress")
async def import_progress(
    session_id: str | None = Query(default=None),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, Any]:
    return await BulkImportOrchestrator(db, redis=redis).progress(session_id)


# ---------------------------------------------------------------------------
# Job queue
# ---------------------------------------------------------------------------


@router.get("/jobs/stats")
async def job_stats(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return {"kinds": await JobQueue(db).stats()}


@router.get("/jobs/dead-letters")
async def job_dead_letters(
    kind: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    letters = await JobQueue(db).dead_letters(kind, limit=limit)
    return {
        "dead_letters": [
            {
                "job_id": d.job_id,
                "kind": d.kind,
                "group_key": d.group_key,
                "payload": d.payload,
                "attempts": d.attempts,
                "error": d.last_error,
                "failed_at": as_utc(d.failed_at),
            }
            for d in letters
        ],
    }


@router.post("/jobs/clean")
async def clean_completed_jobs(
    body: CleanJobsRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    """Delete completed job rows older than the given age."""
    removed = await JobQueue(db).clean_completed(timedelta(hours=body.older_than_hours))
    await db.commit()
    logger.info("jobs_cleaned", removed=removed, older_than_hours=body.older_than_hours)
    return {"removed": removed}


# ---------------------------------------------------------------------------
# Flavor community
# ---------------------------------------------------------------------------


@router.get("/flavor-config")
async def get_flavor_config(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return (await flavor_config.get(db)).model_dump()


@router.put("/flavor-config")
async def put_flavor_config(
    body: FlavorConfigUpdate,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Partial update; range checks happen in the config model."""
    updated = await flavor_config.update(db, body.model_dump(exclude_none=True))
    return updated.model_dump()


@router.get("/flavor-community")
async def get_community_summary(
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return {"profiles": await community_summary(db)}


@router.post("/classification/run", status_code=202)
async def run_classification(
    body: ClassificationRunRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Queue a full classification run. Repeated clicks within a minute share one job."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {"batch_size": body.batch_size} if body.batch_size else {}
    outcome = await JobQueue(db).enqueue(
        CLASSIFY_ALL, payload, idempotency_key=f"classify-all:manual:{now:%Y%m%d%H%M}", now=now,
    )
    await db.commit()
    return {"job_id": outcome.job_id, "created": outcome.created}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


@router.get("/webhooks")
async def recent_webhooks(
    family: str | None = Query(default=None, pattern="^(product|customer|order)$"),
    disposition: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    deliveries = await list_deliveries(db, family=family, disposition=disposition, limit=limit)
    return {"webhooks": [_delivery_dict(d) for d in deliveries]}


@router.delete("/webhooks/failed")
async def clear_failed_product_webhooks(
    family: str = Query(default="product", pattern="^(product|customer|order)$"),
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    return {"removed": await clear_failed_webhooks(db, family)}


# ---------------------------------------------------------------------------
# Achievements and rankings
# ---------------------------------------------------------------------------


@router.patch("/achievements/{code}")
async def patch_achievement(
    code: str,
    body: AchievementUpdateRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    changes = body.model_dump(exclude_unset=True, mode="json")
    definition = await update_definition(db, code, changes)
    return {"code": definition.code, "updated": sorted(changes)}


@router.post("/users/{user_id}/achievements/reset")
async def reset_achievements(
    user_id: int,
    body: ResetAchievementsRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
) -> dict[str, int]:
    """Remove a user's achievements (all, or the listed codes)."""
    return {"removed": await reset_user_achievements(db, user_id, body.codes)}


@router.post("/users/{user_id}/rankings/rebuild")
async def rebuild_rankings(
    user_id: int,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, int]:
    """Rebuild a user's ranking projection from the event log."""
    count = await rebuild_user_rankings(db, user_id)
    await emit_user_event(redis, user_id, RANK_MUTATED, {"rebuilt": count})
    return {"rankings": count}


@router.post("/users/{user_id}/rankings/remove")
async def remove_user_rankings(
    user_id: int,
    body: RemoveRankingsRequest,
    _admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_session),
    redis: object = Depends(get_redis_dep),
) -> dict[str, int]:
    removed = await remove_rankings(db, user_id, body.product_ids)
    if removed:
        await emit_user_event(redis, user_id, RANK_MUTATED, {"removed": removed})
    return {"removed": removed}
