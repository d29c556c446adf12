"""Scheduled maintenance tasks."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from coinbook.database import get_session_factory
from coinbook.db.models import Job, WebhookDelivery
from coinbook.jobs.kinds import CLASSIFY_ALL
from coinbook.jobs.queue import JobQueue
from coinbook.workers.scheduler import cleanup, enqueue_nightly_classification

pytestmark = pytest.mark.asyncio


@pytest.fixture
def ctx(database) -> dict:
    return {"session_factory": get_session_factory()}


async def test_nightly_classification_enqueued_once_per_day(ctx, db_session):
    first = await enqueue_nightly_classification(ctx)
    second = await enqueue_nightly_classification(ctx)

    assert first == second
    jobs = (await db_session.execute(select(Job.kind, Job.idempotency_key))).all()
    today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    assert jobs == [(CLASSIFY_ALL, f"classify-all:nightly:{today}")]


async def test_cleanup_respects_retention(ctx, db_session):
    now = datetime.now(timezone.utc)
    queue = JobQueue(db_session)
    for enqueued_at in (now - timedelta(days=2), now):
        await queue.enqueue("evaluate-achievements", {}, now=enqueued_at)
        job = await queue.reserve(now=enqueued_at)
        await queue.ack(job.id, now=enqueued_at)
    await queue.enqueue("evaluate-achievements", {}, now=now - timedelta(days=3))

    db_session.add_all([
        WebhookDelivery(topic="product.updated", external_id="1", source_updated_at="a", payload={},
                        disposition="processed", received_at=now - timedelta(days=8)),
        WebhookDelivery(topic="product.updated", external_id="2", source_updated_at="a", payload={},
                        disposition="pending", received_at=now - timedelta(days=8)),
        WebhookDelivery(topic="product.updated", external_id="3", source_updated_at="a", payload={},
                        disposition="processed", received_at=now - timedelta(days=1)),
    ])
    await db_session.commit()

    assert await cleanup(ctx) == {"jobs": 1, "webhook_deliveries": 1}
    remaining_jobs = (await db_session.execute(select(func.count()).select_from(Job))).scalar_one()
    remaining_deliveries = (await db_session.execute(select(func.count()).select_from(WebhookDelivery))).scalar_one()
    assert (remaining_jobs, remaining_deliveries) == (2, 2)
