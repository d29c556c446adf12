"""Scheduled maintenance run by the arq scheduler process.

The heavy work stays on the job queue: the nightly task only enqueues a
full classification, so whichever worker pool is running picks it up and
the run gets the queue's retry and dead-letter handling.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from arq import cron
from arq.connections import RedisSettings

from coinbook.config import get_settings
from coinbook.database import close_db, get_session_factory, init_db
from coinbook.jobs.kinds import CLASSIFY_ALL
from coinbook.jobs.queue import JobQueue
from coinbook.middleware.logging import setup_logging
from coinbook.webhooks.service import prune_deliveries

logger = logging.getLogger(__name__)

COMPLETED_JOB_RETENTION = timedelta(hours=24)
WEBHOOK_RETENTION = timedelta(days=7)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["session_factory"] = get_session_factory()
    logger.info("Scheduler started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    await close_db()
    logger.info("Scheduler stopped")


async def enqueue_nightly_classification(ctx: dict) -> int:  # type: ignore[type-arg]
    """Queue the full flavor classification run; one per day however often this fires."""
    now = datetime.now(timezone.utc)
    async with ctx["session_factory"]() as db:
        outcome = await JobQueue(db).enqueue(
            CLASSIFY_ALL, {}, idempotency_key=f"classify-all:nightly:{now:%Y-%m-%d}", now=now,
        )
        await db.commit()
    logger.info("Nightly classification job %s (new=%s)", outcome.job_id, outcome.created)
    return outcome.job_id


async def cleanup(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Drop completed jobs and settled webhook deliveries past their retention."""
    async with ctx["session_factory"]() as db:
        jobs = await JobQueue(db).clean_completed(COMPLETED_JOB_RETENTION)
        deliveries = await prune_deliveries(db, WEBHOOK_RETENTION)
        await db.commit()
    if jobs or deliveries:
        logger.info("Cleanup removed %d jobs and %d webhook deliveries", jobs, deliveries)
    return {"jobs": jobs, "webhook_deliveries": deliveries}


class WorkerSettings:
    """arq settings for the scheduler process."""

    functions = [enqueue_nightly_classification, cleanup]
    cron_jobs = [
        cron(enqueue_nightly_classification, hour={3}, minute={0}, run_at_startup=False),
        cron(cleanup, minute={15}),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(get_settings().redis_url)
    max_jobs = 2
    timezone = timezone.utc
