"""Durable job queue on the relational store.

At-least-once delivery: a reserved job that is not acked before its
visibility timeout becomes reservable again, so handlers must be idempotent.
Jobs of one kind are handed out in enqueue order. Idempotency keys dedupe
enqueues within a TTL window.

The queue never commits; callers own the transaction so that an enqueue can
ride along with the write that caused it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.db.models import Job, JobDeadLetter

logger = logging.getLogger(__name__)

JOB_STATES = ("waiting", "active", "completed", "failed")


@dataclass(frozen=True)
class EnqueueResult:
    job_id: int
    created: bool


@dataclass(frozen=True)
class DeadLettered:
    """A job this queue moved to the dead-letter table, for follow-up once committed."""

    job_id: int
    kind: str
    payload: dict[str, Any]
    error: str


def backoff_delay(attempt: int, base_seconds: float) -> float:
    """Exponential backoff: base, 2*base, 4*base, ..."""
    return base_seconds * (2 ** max(0, attempt - 1))


class JobQueue:
    """Queue operations bound to one session."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        visibility_timeout: float | None = None,
        idempotency_ttl: float | None = None,
        max_attempts: int | None = None,
        backoff_base: float | None = None,
        max_deferrals: int | None = None,
    ) -> None:
        settings = get_settings()
        self.db = db
        self.visibility_timeout = (
            visibility_timeout if visibility_timeout is not None else settings.job_visibility_timeout_seconds
        )
        self.idempotency_ttl = idempotency_ttl if idempotency_ttl is not None else settings.job_idempotency_ttl_seconds
        self.max_attempts = max_attempts if max_attempts is not None else settings.job_max_attempts
        self.backoff_base = backoff_base if backoff_base is not None else settings.job_backoff_base_seconds
        self.max_deferrals = max_deferrals if max_deferrals is not None else settings.job_max_rate_limit_deferrals
        self.dead_lettered: list[DeadLettered] = []

    async def enqueue(
        self,
        kind: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str | None = None,
        group_key: str | None = None,
        delay_seconds: float = 0,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        """Add a job. A key seen within the TTL returns the existing job instead."""
        now = now or datetime.now(timezone.utc)
        if idempotency_key is not None:
            cutoff = now - timedelta(seconds=self.idempotency_ttl)
            existing = await self.db.execute(
                select(Job.id)
                .where(Job.idempotency_key == idempotency_key, Job.created_at >= cutoff)
                .order_by(Job.id.desc())
                .limit(1)
            )
            job_id = existing.scalar_one_or_none()
            if job_id is not None:
                return EnqueueResult(job_id=job_id, created=False)

        job = Job(
            kind=kind,
            payload=payload,
            state="waiting",
            attempts=0,
            max_attempts=max_attempts or self.max_attempts,
            idempotency_key=idempotency_key,
            group_key=group_key,
            next_attempt_at=now + timedelta(seconds=delay_seconds),
            created_at=now,
            updated_at=now,
        )
        self.db.add(job)
        await self.db.flush()
        return EnqueueResult(job_id=job.id, created=True)

    def _reservable(self, now: datetime):  # noqa: ANN202
        return or_(
            and_(Job.state == "waiting", Job.next_attempt_at <= now),
            and_(Job.state == "active", Job.reserved_until < now),
        )

    async def reserve(self, kinds: list[str] | None = None, *, now: datetime | None = None) -> Job | None:
        """Claim the oldest due job, optionally restricted to some kinds.

        Claiming is an optimistic conditional update, so concurrent workers
        (in any process) never both win the same job.
        """
        now = now or datetime.now(timezone.utc)
        query = select(Job.id).where(self._reservable(now)).order_by(Job.id).limit(10)
        if kinds:
            query = query.where(Job.kind.in_(kinds))
        candidates = list((await self.db.execute(query)).scalars())

        for job_id in candidates:
            claimed = await self.db.execute(
                update(Job)
                .where(Job.id == job_id, self._reservable(now))
                .values(
                    state="active",
                    attempts=Job.attempts + 1,
                    reserved_until=now + timedelta(seconds=self.visibility_timeout),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                continue
            job = await self.db.get(Job, job_id, populate_existing=True)
            if job is None:
                continue
            if job.attempts > job.max_attempts:
                # Reserved and abandoned too many times (worker crashes or timeouts)
                await self._dead_letter(job, job.last_error or "visibility timeout exhausted", now)
                continue
            return job
        return None

    async def ack(self, job_id: int, *, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        await self.db.execute(
            update(Job)
            .where(Job.id == job_id)
            .values(state="completed", reserved_until=None, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def nack(
        self,
        job_id: int,
        error: str,
        *,
        retry_after: float | None = None,
        terminal: bool = False,
        consume_attempt: bool = True,
        now: datetime | None = None,
    ) -> str:
        """Schedule a retry, or dead-letter when attempts are exhausted.

        ``consume_attempt=False`` refunds the attempt, at most ``max_deferrals``
        times per job. Returns the job's new state ("waiting" or "failed").
        """
        now = now or datetime.now(timezone.utc)
        job = await self.db.get(Job, job_id, populate_existing=True)
        if job is None:
            return "failed"

        if not consume_attempt and job.deferrals < self.max_deferrals:
            # Refunded, but only so many times per job
            job.deferrals += 1
            job.attempts = max(0, job.attempts - 1)

        if terminal or job.attempts >= job.max_attempts:
            await self._dead_letter(job, error, now)
            return "failed"

        delay = retry_after if retry_after is not None else backoff_delay(job.attempts, self.backoff_base)
        job.state = "waiting"
        job.reserved_until = None
        job.last_error = error
        job.next_attempt_at = now + timedelta(seconds=delay)
        job.updated_at = now
        await self.db.flush()
        return "waiting"

    async def _dead_letter(self, job: Job, error: str, now: datetime) -> None:
        job.state = "failed"
        job.reserved_until = None
        job.last_error = error
        job.updated_at = now
        self.db.add(JobDeadLetter(
            job_id=job.id,
            kind=job.kind,
            payload=job.payload,
            group_key=job.group_key,
            attempts=job.attempts,
            last_error=error,
            failed_at=now,
        ))
        await self.db.flush()
        self.dead_lettered.append(DeadLettered(job_id=job.id, kind=job.kind, payload=dict(job.payload or {}), error=error))
        logger.warning("Job %s (%s) dead-lettered after %d attempts: %s", job.id, job.kind, job.attempts, error)

    async def extend(self, job_id: int, *, now: datetime | None = None) -> None:
        """Push out the visibility timeout of a long-running job."""
        now = now or datetime.now(timezone.utc)
        await self.db.execute(
            update(Job)
            .where(Job.id == job_id, Job.state == "active")
            .values(reserved_until=now + timedelta(seconds=self.visibility_timeout), updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def stats(self) -> dict[str, dict[str, int]]:
        """Job counts by kind and state."""
        result = await self.db.execute(
            select(Job.kind, Job.state, func.count()).group_by(Job.kind, Job.state)
        )
        stats: dict[str, dict[str, int]] = {}
        for kind, state, count in result.all():
            stats.setdefault(kind, dict.fromkeys(JOB_STATES, 0))[state] = count
        return stats

    async def outstanding(self, kind: str, group_key: str) -> int:
        """Waiting or active jobs of one kind in a group."""
        result = await self.db.execute(
            select(func.count())
            .select_from(Job)
            .where(Job.kind == kind, Job.group_key == group_key, Job.state.in_(("waiting", "active")))
        )
        return int(result.scalar_one())

    async def clean_completed(self, older_than: timedelta, *, now: datetime | None = None) -> int:
        now = now or datetime.now(timezone.utc)
        result = await self.db.execute(
            delete(Job).where(Job.state == "completed", Job.completed_at < now - older_than)
        )
        return result.rowcount or 0

    async def dead_letters(self, kind: str | None = None, group_key: str | None = None, limit: int = 100) -> list[JobDeadLetter]:
        query = select(JobDeadLetter).order_by(JobDeadLetter.failed_at.desc()).limit(limit)
        if kind:
            query = query.where(JobDeadLetter.kind == kind)
        if group_key:
            query = query.where(JobDeadLetter.group_key == group_key)
        return list((await self.db.execute(query)).scalars())

    async def purge_dead_letters(self, kind: str, group_key_prefix: str | None = None) -> int:
        stmt = delete(JobDeadLetter).where(JobDeadLetter.kind == kind)
        if group_key_prefix:
            stmt = stmt.where(JobDeadLetter.group_key.startswith(group_key_prefix))
        result = await self.db.execute(stmt)
        return result.rowcount or 0
