"""Job handlers driven through the worker pool."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from coinbook.database import get_session_factory
from coinbook.db.models import FlavorProfileState, Job, UserAchievement, WebhookDelivery
from coinbook.errors import ValidationFailed
from coinbook.jobs import handlers
from coinbook.jobs.handlers import DEAD_LETTER_HOOKS, HANDLERS
from coinbook.jobs.kinds import PROCESS_WEBHOOK, schedule_user_followups
from coinbook.jobs.queue import JobQueue
from coinbook.jobs.worker import WorkerPool
from coinbook.rankings.service import ingest_ranking_snapshot
from coinbook.webhooks.service import receive_webhook

pytestmark = pytest.mark.asyncio


async def _drain(pool: WorkerPool) -> int:
    ran = 0
    while await pool.run_once():
        ran += 1
    return ran


async def test_rank_followups_award_and_classify(seeded_db, make_user, make_product, mock_redis):
    user = await make_user()
    products = [await make_product(f"Sweet Chili {i}", flavors=("sweet",)) for i in range(5)]
    await ingest_ranking_snapshot(
        seeded_db, user, [(i + 1, p.id) for i, p in enumerate(products)], "save-1",
        now=datetime(2026, 6, 15, 12, tzinfo=timezone.utc),
    )
    await schedule_user_followups(seeded_db, user.id, "rank", "save-1")
    await seeded_db.commit()

    pool = WorkerPool(get_session_factory(), HANDLERS, redis=mock_redis, concurrency=1)
    assert await _drain(pool) == 2

    earned = (await seeded_db.execute(
        select(UserAchievement.current_tier).where(UserAchievement.user_id == user.id)
    )).scalars().all()
    assert "bronze" in earned
    state = (await seeded_db.execute(
        select(FlavorProfileState.state).where(
            FlavorProfileState.user_id == user.id, FlavorProfileState.flavor_profile == "sweet",
        )
    )).scalar_one()
    assert state == "taster"
    states = (await seeded_db.execute(select(Job.state).execution_options(populate_existing=True))).scalars().all()
    assert set(states) == {"completed"}


async def test_missing_user_id_dead_letters(db_session):
    await JobQueue(db_session).enqueue("evaluate-achievements", {"trigger": "rank"})
    await db_session.commit()

    pool = WorkerPool(get_session_factory(), HANDLERS, concurrency=1)
    await _drain(pool)
    letters = await JobQueue(db_session).dead_letters("evaluate-achievements")
    assert len(letters) == 1
    assert "user_id" in letters[0].last_error


async def test_webhook_job_marks_missing_delivery_failed(db_session):
    await JobQueue(db_session).enqueue(PROCESS_WEBHOOK, {"delivery_id": 404})
    await db_session.commit()

    pool = WorkerPool(get_session_factory(), HANDLERS, dead_letter_hooks=DEAD_LETTER_HOOKS, concurrency=1)
    await _drain(pool)
    assert await db_session.get(WebhookDelivery, 404) is None
    assert len(await JobQueue(db_session).dead_letters(PROCESS_WEBHOOK)) == 1


async def test_rejected_webhook_delivery_is_marked_failed(db_session, monkeypatch):
    delivery, _ = await receive_webhook(db_session, "product.updated", {"id": 77, "title": "Maple Pepper Bites"})
    delivery_id = delivery.id

    async def reject(db, redis, delivery_id):
        raise ValidationFailed("malformed product payload")

    monkeypatch.setattr(handlers, "process_delivery", reject)
    pool = WorkerPool(get_session_factory(), HANDLERS, dead_letter_hooks=DEAD_LETTER_HOOKS, concurrency=1)
    assert await _drain(pool) == 1

    stored = await db_session.get(WebhookDelivery, delivery_id, populate_existing=True)
    assert stored.disposition == "failed"
    assert stored.reason == "malformed product payload"
