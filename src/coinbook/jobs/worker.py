"""Worker pool draining the job queue.

Each worker loops reserve -> execute with a per-kind timeout -> ack/nack.
The reservation, the handler and the ack each run in their own session and
transaction, so no transaction is held across a handler's external I/O.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coinbook.config import get_settings
from coinbook.errors import InvariantViolation, RateLimited, ValidationFailed
from coinbook.events import publish_to_room
from coinbook.jobs.kinds import KIND_TIMEOUTS
from coinbook.jobs.queue import DeadLettered, JobQueue
from coinbook.observability import report_bug

logger = structlog.get_logger()

QUEUE_MONITOR_ROOM = "queue-monitor"
STATS_INTERVAL_SECONDS = 2.0


@dataclass
class JobContext:
    """What a handler gets besides its payload."""

    db: AsyncSession
    redis: Any
    job_id: int
    kind: str
    attempt: int
    session_factory: async_sessionmaker[AsyncSession]
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    async def should_cancel(self) -> bool:
        return self.cancel_event.is_set()


Handler = Callable[[JobContext, dict[str, Any]], Awaitable[Any]]
# Runs in a fresh session after a job of its kind is dead-lettered and committed
DeadLetterHook = Callable[[AsyncSession, Any, dict[str, Any], str], Awaitable[None]]


class WorkerPool:
    """N cooperative workers sharing one process."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        handlers: Mapping[str, Handler],
        *,
        dead_letter_hooks: Mapping[str, DeadLetterHook] | None = None,
        redis: Any = None,  # noqa: ANN401
        concurrency: int | None = None,
        poll_interval: float | None = None,
        default_timeout: float | None = None,
        kinds: list[str] | None = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.handlers = dict(handlers)
        self.dead_letter_hooks = dict(dead_letter_hooks or {})
        self.redis = redis
        self.concurrency = concurrency or settings.worker_concurrency
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.default_timeout = default_timeout if default_timeout is not None else settings.job_default_timeout_seconds
        self.kinds = kinds or sorted(self.handlers)
        self._stopping = asyncio.Event()
        self._cancel = asyncio.Event()
        self._last_stats = 0.0
        self.processed = 0

    def timeout_for(self, kind: str) -> float:
        return KIND_TIMEOUTS.get(kind, self.default_timeout)

    async def _reserve(self) -> tuple[int, str, dict[str, Any], int] | None:
        async with self.session_factory() as db:
            queue = JobQueue(db)
            job = await queue.reserve(self.kinds)
            # Commit even when nothing was claimed: reserve may have dead-lettered
            await db.commit()
            reserved = None if job is None else (job.id, job.kind, dict(job.payload), job.attempts)
        await self._after_dead_letter(queue.dead_lettered)
        return reserved

    async def _heartbeat(self, job_id: int) -> None:
        """Keep a long-running job's reservation alive."""
        interval = max(1.0, get_settings().job_visibility_timeout_seconds / 2)
        while True:
            await asyncio.sleep(interval)
            async with self.session_factory() as db:
                await JobQueue(db).extend(job_id)
                await db.commit()

    async def run_once(self) -> bool:
        """Reserve and execute one job. Returns False when nothing was due."""
        reserved = await self._reserve()
        if reserved is None:
            return False
        job_id, kind, payload, attempt = reserved
        log = logger.bind(job_id=job_id, kind=kind, attempt=attempt)

        handler = self.handlers.get(kind)
        if handler is None:
            await self._finish(job_id, error=f"No handler for job kind '{kind}'", terminal=True)
            log.error("job_unhandled_kind")
            return True

        heartbeat = asyncio.create_task(self._heartbeat(job_id))
        started = time.monotonic()
        try:
            async with self.session_factory() as db:
                ctx = JobContext(
                    db=db,
                    redis=self.redis,
                    job_id=job_id,
                    kind=kind,
                    attempt=attempt,
                    session_factory=self.session_factory,
                    cancel_event=self._cancel,
                )
                # Domain loggers inside the handler pick these up through the shared formatter
                with structlog.contextvars.bound_contextvars(job_id=job_id, job_kind=kind):
                    await asyncio.wait_for(handler(ctx, payload), timeout=self.timeout_for(kind))
        except RateLimited as exc:
            await self._finish(job_id, error=exc.message, retry_after=exc.retry_after, consume_attempt=False)
            log.info("job_rate_limited", retry_after=exc.retry_after)
        except ValidationFailed as exc:
            await self._finish(job_id, error=exc.message, terminal=True)
            log.warning("job_rejected", error=exc.message)
        except InvariantViolation as exc:
            await self._finish(job_id, error=exc.message, terminal=True)
            await report_bug(exc, job_id=job_id, kind=kind)
        except TimeoutError:
            state = await self._finish(job_id, error=f"timed out after {self.timeout_for(kind)}s")
            log.warning("job_timed_out", state=state)
        except asyncio.CancelledError:
            # Shutdown: leave the reservation to expire and be picked up again
            log.info("job_interrupted")
            raise
        except Exception as exc:
            state = await self._finish(job_id, error=f"{type(exc).__name__}: {exc}")
            log.warning("job_failed", error=str(exc), state=state, exc_info=True)
        else:
            async with self.session_factory() as db:
                await JobQueue(db).ack(job_id)
                await db.commit()
            self.processed += 1
            log.debug("job_completed", elapsed_ms=round((time.monotonic() - started) * 1000, 1))
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        await self._publish_stats()
        return True

    async def _finish(
        self,
        job_id: int,
        *,
        error: str,
        terminal: bool = False,
        retry_after: float | None = None,
        consume_attempt: bool = True,
    ) -> str:
        async with self.session_factory() as db:
            queue = JobQueue(db)
            state = await queue.nack(
                job_id,
                error,
                terminal=terminal,
                retry_after=retry_after,
                consume_attempt=consume_attempt,
            )
            await db.commit()
        await self._after_dead_letter(queue.dead_lettered)
        return state

    async def _after_dead_letter(self, dead: list[DeadLettered]) -> None:
        """Let the owning subsystem record a job that will never run again."""
        for entry in dead:
            hook = self.dead_letter_hooks.get(entry.kind)
            if hook is None:
                continue
            try:
                async with self.session_factory() as db:
                    await hook(db, self.redis, entry.payload, entry.error)
                    await db.commit()
            except Exception:
                # The job stays dead-lettered; owners reconcile on their own schedule
                logger.exception("dead_letter_hook_failed", job_id=entry.job_id, kind=entry.kind)

    async def _publish_stats(self, *, force: bool = False) -> None:
        if self.redis is None:
            return
        now = time.monotonic()
        if not force and now - self._last_stats < STATS_INTERVAL_SECONDS:
            return
        self._last_stats = now
        async with self.session_factory() as db:
            stats = await JobQueue(db).stats()
        await publish_to_room(self.redis, QUEUE_MONITOR_ROOM, "queue.stats", {"kinds": stats})

    async def _worker(self, index: int) -> None:
        log = logger.bind(worker=index)
        log.info("worker_started")
        while not self._stopping.is_set():
            try:
                ran = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                # Store unreachable or similar: back off and keep the loop alive
                log.exception("worker_loop_error")
                ran = False
            if not ran:
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        log.info("worker_stopped")

    async def run(self) -> None:
        """Run workers until stop() is called."""
        logger.info("worker_pool_started", concurrency=self.concurrency, kinds=self.kinds)
        tasks = [asyncio.create_task(self._worker(i)) for i in range(self.concurrency)]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("worker_pool_stopped", processed=self.processed)

    def stop(self) -> None:
        """Stop taking new jobs and ask running handlers to wind down."""
        self._stopping.set()
        self._cancel.set()
