"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.database import get_session
from coinbook.db.models import Job, JobDeadLetter
from coinbook.redis_client import get_optional_redis

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: returns 200 if the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe.

    The database is required. Redis only carries advisory fanout, so a missing
    or failing Redis degrades the status without failing it. Queue depth is
    reported for the admin console.
    """
    checks: dict[str, object] = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as exc:
        checks["database"] = f"error: {exc}"

    redis = get_optional_redis()
    if redis is None:
        checks["redis"] = "not configured"
    else:
        try:
            await redis.ping()
            checks["redis"] = "ok"
        except Exception as exc:
            checks["redis"] = f"error: {exc}"

    if checks["database"] == "ok":
        waiting = await db.execute(select(func.count()).select_from(Job).where(Job.state == "waiting"))
        dead = await db.execute(select(func.count()).select_from(JobDeadLetter))
        checks["jobs_waiting"] = int(waiting.scalar_one())
        checks["dead_letters"] = int(dead.scalar_one())

    if checks["database"] != "ok":
        status = "unavailable"
    elif checks["redis"] != "ok":
        status = "degraded"
    else:
        status = "ready"
    return {"status": status, "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    """Return API version and environment."""
    settings = get_settings()
    return {
        "service": "coinbook",
        "version": settings.app_version,
        "environment": settings.environment,
    }
