"""Relational job queue: reservation, retry and dead-lettering."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from coinbook.db.models import Job
from coinbook.jobs.kinds import CLASSIFY_USER, EVALUATE_ACHIEVEMENTS, schedule_user_followups
from coinbook.jobs.queue import JobQueue, backoff_delay

pytestmark = pytest.mark.asyncio

T0 = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)


def _queue(db) -> JobQueue:
    return JobQueue(db, visibility_timeout=60, idempotency_ttl=3600, max_attempts=3, backoff_base=1.0)


async def _job(db, job_id: int) -> Job:
    return await db.get(Job, job_id, populate_existing=True)


async def test_idempotent_enqueue(db_session):
    queue = _queue(db_session)
    first = await queue.enqueue("evaluate-achievements", {"user_id": 1}, idempotency_key="k1", now=T0)
    again = await queue.enqueue("evaluate-achievements", {"user_id": 1}, idempotency_key="k1", now=T0 + timedelta(minutes=5))
    assert first.created and not again.created
    assert again.job_id == first.job_id

    # Outside the TTL the key is free again
    later = await queue.enqueue("evaluate-achievements", {"user_id": 1}, idempotency_key="k1", now=T0 + timedelta(hours=2))
    assert later.created


async def test_reserve_in_enqueue_order(db_session):
    queue = _queue(db_session)
    ids = [(await queue.enqueue("k", {"n": n}, now=T0)).job_id for n in range(3)]
    reserved = [(await queue.reserve(now=T0)).id for _ in range(3)]
    assert reserved == ids
    assert await queue.reserve(now=T0) is None


async def test_reserve_filters_by_kind_and_delay(db_session):
    queue = _queue(db_session)
    await queue.enqueue("later", {}, delay_seconds=30, now=T0)
    other = await queue.enqueue("other", {}, now=T0)

    assert await queue.reserve(["later"], now=T0) is None
    assert (await queue.reserve(["other"], now=T0)).id == other.job_id
    assert (await queue.reserve(["later"], now=T0 + timedelta(seconds=31))) is not None


async def test_ack_completes(db_session):
    queue = _queue(db_session)
    result = await queue.enqueue("k", {}, now=T0)
    job = await queue.reserve(now=T0)
    await queue.ack(job.id, now=T0)
    assert (await _job(db_session, result.job_id)).state == "completed"
    assert await queue.stats() == {"k": {"waiting": 0, "active": 0, "completed": 1, "failed": 0}}


async def test_nack_backs_off_then_dead_letters(db_session):
    queue = _queue(db_session)
    result = await queue.enqueue("k", {"x": 1}, group_key="grp", now=T0)

    job = await queue.reserve(now=T0)
    assert job.attempts == 1
    assert await queue.nack(job.id, "boom", now=T0) == "waiting"
    assert await queue.reserve(now=T0 + timedelta(seconds=0.5)) is None

    job = await queue.reserve(now=T0 + timedelta(seconds=1))
    assert job.attempts == 2
    assert await queue.nack(job.id, "boom", now=T0 + timedelta(seconds=1)) == "waiting"
    assert (await _job(db_session, result.job_id)).next_attempt_at is not None

    job = await queue.reserve(now=T0 + timedelta(seconds=4))
    assert await queue.nack(job.id, "still boom", now=T0 + timedelta(seconds=4)) == "failed"

    letters = await queue.dead_letters("k")
    assert [(d.job_id, d.attempts, d.last_error) for d in letters] == [(result.job_id, 3, "still boom")]
    assert await queue.purge_dead_letters("k", "gr") == 1


async def test_terminal_failure_skips_retries(db_session):
    queue = _queue(db_session)
    await queue.enqueue("k", {}, now=T0)
    job = await queue.reserve(now=T0)
    assert await queue.nack(job.id, "bad payload", terminal=True, now=T0) == "failed"


async def test_rate_limit_does_not_consume_attempt(db_session):
    queue = _queue(db_session)
    result = await queue.enqueue("k", {}, now=T0)
    for _ in range(5):
        job = await queue.reserve(now=T0 + timedelta(hours=1))
        state = await queue.nack(job.id, "429", retry_after=0, consume_attempt=False, now=T0)
        assert state == "waiting"
    assert (await _job(db_session, result.job_id)).attempts == 0


async def test_abandoned_reservation_is_redelivered(db_session):
    queue = _queue(db_session)
    result = await queue.enqueue("k", {}, now=T0)
    await queue.reserve(now=T0)

    assert await queue.reserve(now=T0 + timedelta(seconds=30)) is None
    again = await queue.reserve(now=T0 + timedelta(seconds=61))
    assert again.id == result.job_id
    assert again.attempts == 2


async def test_extend_keeps_reservation(db_session):
    queue = _queue(db_session)
    await queue.enqueue("k", {}, now=T0)
    job = await queue.reserve(now=T0)
    await queue.extend(job.id, now=T0 + timedelta(seconds=50))
    assert await queue.reserve(now=T0 + timedelta(seconds=70)) is None


async def test_abandoned_too_often_is_dead_lettered(db_session):
    queue = _queue(db_session)
    await queue.enqueue("k", {}, max_attempts=1, now=T0)
    await queue.reserve(now=T0)
    assert await queue.reserve(now=T0 + timedelta(seconds=61)) is None
    assert len(await queue.dead_letters()) == 1


async def test_outstanding_and_clean(db_session):
    queue = _queue(db_session)
    await queue.enqueue("import-user", {}, group_key="s1", now=T0)
    done = await queue.enqueue("import-user", {}, group_key="s1", now=T0)
    assert await queue.outstanding("import-user", "s1") == 2

    job = await queue.reserve(now=T0)
    await queue.ack(job.id, now=T0)
    assert await queue.outstanding("import-user", "s1") == 1
    assert await queue.clean_completed(timedelta(hours=24), now=T0 + timedelta(days=2)) == 1
    assert done.job_id != job.id


async def test_followups_dedupe_by_source(db_session):
    await schedule_user_followups(db_session, 7, "rank", "save-1")
    await schedule_user_followups(db_session, 7, "rank", "save-1")
    await schedule_user_followups(db_session, 7, "login", "login-1", classify=False)

    rows = (await db_session.execute(select(Job.kind, Job.idempotency_key).order_by(Job.id))).all()
    assert rows == [
        (EVALUATE_ACHIEVEMENTS, "eval:rank:7:save-1"),
        (CLASSIFY_USER, "classify:7:save-1"),
        (EVALUATE_ACHIEVEMENTS, "eval:login:7:login-1"),
    ]


def test_backoff_delay():
    assert [backoff_delay(n, 1.5) for n in (1, 2, 3)] == [1.5, 3.0, 6.0]
