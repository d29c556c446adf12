"""Worker pool error mapping."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from coinbook.config import get_settings
from coinbook.database import get_session_factory
from coinbook.db.models import Job
from coinbook.errors import InvariantViolation, RateLimited, ValidationFailed
from coinbook.jobs.queue import JobQueue
from coinbook.jobs.worker import WorkerPool

pytestmark = pytest.mark.asyncio


async def _enqueue(db, kind: str, payload: dict | None = None) -> int:
    result = await JobQueue(db).enqueue(kind, payload or {})
    await db.commit()
    return result.job_id


async def _state(db, job_id: int) -> tuple[str, int]:
    job = await db.get(Job, job_id, populate_existing=True)
    return job.state, job.attempts


def _pool(handlers, **kwargs) -> WorkerPool:
    return WorkerPool(get_session_factory(), handlers, concurrency=1, poll_interval=0.01, **kwargs)


async def test_success_acks(db_session):
    seen = []

    async def handler(ctx, payload):
        seen.append((ctx.kind, ctx.attempt, payload))

    job_id = await _enqueue(db_session, "ok", {"n": 1})
    pool = _pool({"ok": handler})

    assert await pool.run_once() is True
    assert await pool.run_once() is False
    assert seen == [("ok", 1, {"n": 1})]
    assert await _state(db_session, job_id) == ("completed", 1)


async def test_rate_limited_retries_without_spending_attempts(db_session):
    async def handler(ctx, payload):
        raise RateLimited("slow down", retry_after=0)

    job_id = await _enqueue(db_session, "throttled")
    pool = _pool({"throttled": handler})
    for _ in range(4):
        assert await pool.run_once()
    assert await _state(db_session, job_id) == ("waiting", 0)


async def test_validation_failure_is_terminal(db_session):
    async def handler(ctx, payload):
        raise ValidationFailed("bad payload")

    job_id = await _enqueue(db_session, "bad")
    await _pool({"bad": handler}).run_once()
    assert await _state(db_session, job_id) == ("failed", 1)


async def test_invariant_violation_is_terminal(db_session):
    async def handler(ctx, payload):
        raise InvariantViolation("impossible state")

    job_id = await _enqueue(db_session, "bug")
    await _pool({"bug": handler}).run_once()
    assert (await _state(db_session, job_id))[0] == "failed"


async def test_unexpected_error_is_retried(db_session):
    async def handler(ctx, payload):
        raise RuntimeError("flaky")

    job_id = await _enqueue(db_session, "flaky")
    await _pool({"flaky": handler}).run_once()
    job = await db_session.get(Job, job_id, populate_existing=True)
    assert job.state == "waiting"
    assert job.last_error == "RuntimeError: flaky"


async def test_timeout_is_retried(db_session):
    async def handler(ctx, payload):
        await asyncio.sleep(5)

    job_id = await _enqueue(db_session, "slow")
    await _pool({"slow": handler}, default_timeout=0.05).run_once()
    job = await db_session.get(Job, job_id, populate_existing=True)
    assert job.state == "waiting"
    assert "timed out" in job.last_error


async def test_unknown_kind_is_dropped(db_session):
    job_id = await _enqueue(db_session, "mystery")
    await _pool({"ok": lambda ctx, p: None}, kinds=["mystery"]).run_once()
    assert (await _state(db_session, job_id))[0] == "failed"


async def test_publishes_queue_stats(db_session, mock_redis):
    async def handler(ctx, payload):
        return None

    await _enqueue(db_session, "ok")
    await _pool({"ok": handler}, redis=mock_redis).run_once()
    channel, message = mock_redis.publish.call_args.args
    assert channel == "ws:room:queue-monitor"
    assert '"queue.stats"' in message


async def test_run_stops(db_session):
    pool = _pool({"ok": lambda ctx, p: None})
    task = asyncio.create_task(pool.run())
    await asyncio.sleep(0.05)
    pool.stop()
    await asyncio.wait_for(task, timeout=2)
    assert pool.processed == 0


async def test_rate_limit_refunds_are_capped(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "job_max_rate_limit_deferrals", 2)

    async def handler(ctx, payload):
        raise RateLimited("slow down", retry_after=0)

    job_id = await _enqueue(db_session, "throttled")
    pool = _pool({"throttled": handler})
    for _ in range(5):
        assert await pool.run_once()

    job = await db_session.get(Job, job_id, populate_existing=True)
    assert (job.state, job.attempts, job.deferrals) == ("failed", 3, 2)
    assert await pool.run_once() is False


async def test_dead_letter_hook_runs_on_final_failure(db_session):
    seen = []

    async def handler(ctx, payload):
        raise ValidationFailed("bad payload")

    async def hook(db, redis, payload, error):
        seen.append((payload, error))

    await _enqueue(db_session, "owned", {"record": 7})
    await _pool({"owned": handler}, dead_letter_hooks={"owned": hook}).run_once()
    assert seen == [({"record": 7}, "bad payload")]


async def test_dead_letter_hook_skips_retries(db_session):
    seen = []

    async def handler(ctx, payload):
        raise RuntimeError("flaky")

    async def hook(db, redis, payload, error):
        seen.append(error)

    await _enqueue(db_session, "owned")
    await _pool({"owned": handler}, dead_letter_hooks={"owned": hook}).run_once()
    assert seen == []


async def test_dead_letter_hook_runs_for_expired_reservations(db_session):
    seen = []

    async def hook(db, redis, payload, error):
        seen.append((payload, error))

    job_id = await _enqueue(db_session, "owned", {"record": 8})
    job = await db_session.get(Job, job_id)
    job.state = "active"
    job.attempts = job.max_attempts
    job.reserved_until = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db_session.commit()

    pool = _pool({"owned": lambda ctx, p: None}, dead_letter_hooks={"owned": hook})
    assert await pool.run_once() is False
    assert seen == [({"record": 8}, "visibility timeout exhausted")]
    assert (await _state(db_session, job_id))[0] == "failed"


async def test_failing_hook_keeps_the_worker_alive(db_session):
    async def handler(ctx, payload):
        raise ValidationFailed("bad payload")

    async def hook(db, redis, payload, error):
        raise RuntimeError("owner unavailable")

    job_id = await _enqueue(db_session, "owned")
    assert await _pool({"owned": handler}, dead_letter_hooks={"owned": hook}).run_once()
    assert (await _state(db_session, job_id))[0] == "failed"
