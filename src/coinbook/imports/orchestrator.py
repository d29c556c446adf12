"""Resumable bulk import of commerce customers and their order histories.

A session walks three working phases:

1. ``fetching_customers``: page through customers, upserting users and
   marking the ones that need history as pending for this session. The
   page cursor is persisted after every page.
2. ``enqueuing_jobs``: one ``import-user`` job per pending user, keyed on
   user and session so replays and resumes never double-enqueue.
3. ``processing_customers``: workers drain those jobs. The session is
   ``completed`` once no job for it is outstanding and every selected user
   has a terminal import status.

A cancelled session, or one whose ``import-session`` job was dead-lettered,
is ``failed`` and remembers the phase it stopped in so ``resume`` can pick
it up again. Single users failing never fail the session; they are listed
in its errors.

Counters are recomputed from user rows rather than incremented, so duplicate
job executions converge to the same totals.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.config import get_settings
from coinbook.db.models import ImportSession, User
from coinbook.errors import RateLimited, ValidationFailed
from coinbook.events import ORDER_DELIVERED, emit_user_event, publish_to_room
from coinbook.imports.commerce_client import CommerceClient
from coinbook.imports.order_sync import mark_import_status, sync_orders, upsert_customer
from coinbook.jobs.kinds import CLASSIFY_USER, EVALUATE_ACHIEVEMENTS, IMPORT_SESSION, IMPORT_USER
from coinbook.jobs.queue import JobQueue

logger = structlog.get_logger()

BULK_IMPORT_ROOM = "bulk-import"
MODES = ("incremental", "full")
PHASES = ("fetching_customers", "enqueuing_jobs", "processing_customers", "completed", "failed")
ACTIVE_PHASES = ("fetching_customers", "enqueuing_jobs", "processing_customers")
UNFINISHED_STATUSES = ("pending", "in_progress")
ORPHANED_USER_ERROR = "import job ended without a result"
ENQUEUE_BATCH = 500
MAX_SESSION_ERRORS = 200


class ProgressThrottle:
    """At most one broadcast per session per interval."""

    def __init__(self, interval_ms: int | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = (interval_ms if interval_ms is not None else get_settings().import_progress_interval_ms) / 1000
        self._clock = clock
        self._last: dict[str, float] = {}

    def ready(self, session_id: str, *, force: bool = False) -> bool:
        now = self._clock()
        last = self._last.get(session_id)
        if force or last is None or now - last >= self._interval:
            self._last[session_id] = now
            return True
        return False


_throttle = ProgressThrottle()


class BulkImportOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        *,
        redis: Any = None,  # noqa: ANN401
        client_factory: Callable[[], CommerceClient] = CommerceClient,
        throttle: ProgressThrottle | None = None,
    ) -> None:
        self.db = db
        self.redis = redis
        self.client_factory = client_factory
        self.throttle = throttle or _throttle
        self.queue = JobQueue(db)

    # ── Admin operations ──

    async def start(
        self,
        *,
        mode: str = "incremental",
        batch_size: int | None = None,
        target_unprocessed: int | None = None,
        reimport_all: bool = False,
    ) -> ImportSession:
        settings = get_settings()
        if not (settings.commerce_api_url and settings.commerce_api_token):
            raise ValidationFailed("Commerce API URL and token must be configured", field="commerce_api_url")
        if mode not in MODES:
            raise ValidationFailed(f"Unknown import mode '{mode}'", field="mode")
        if mode == "incremental" and target_unprocessed is None:
            target_unprocessed = batch_size
        active = await self.db.execute(
            select(ImportSession.id).where(ImportSession.phase.in_(ACTIVE_PHASES)).limit(1)
        )
        running = active.scalar_one_or_none()
        if running is not None:
            raise ValidationFailed("An import is already in progress", session_id=running)

        session = ImportSession(
            id=str(uuid.uuid4()),
            mode=mode,
            phase="fetching_customers",
            options={
                "batch_size": batch_size,
                "target_unprocessed": target_unprocessed,
                "reimport_all": reimport_all,
            },
        )
        self.db.add(session)
        await self.db.flush()
        await self.queue.enqueue(
            IMPORT_SESSION, {"session_id": session.id},
            idempotency_key=f"import-session:{session.id}", group_key=session.id,
        )
        await self.db.commit()
        logger.info("import_started", session_id=session.id, mode=mode, options=session.options)
        await self.broadcast(session, force=True)
        return session

    async def resume(self, session_id: str | None = None) -> ImportSession:
        """Continue a failed, cancelled or interrupted session from its stored cursor.

        Users left pending by a cancel are enqueued again under a fresh key.
        """
        session = await self._session(session_id)
        if session.phase == "completed":
            raise ValidationFailed("Import session already completed", session_id=session.id)
        other = await self.db.execute(
            select(ImportSession.id)
            .where(ImportSession.phase.in_(ACTIVE_PHASES), ImportSession.id != session.id)
            .limit(1)
        )
        running = other.scalar_one_or_none()
        if running is not None:
            raise ValidationFailed("An import is already in progress", session_id=running)

        options = dict(session.options or {})
        resumes = int(options.get("resumes", 0)) + 1
        options["resumes"] = resumes
        interrupted = options.pop("interrupted_phase", None)
        if session.phase == "failed":
            session.phase = interrupted or "fetching_customers"
            if session.phase == "processing_customers":
                session.phase = "enqueuing_jobs"
                options["requeue_round"] = resumes
        session.options = options
        session.cancel_requested = False
        session.ended_at = None
        session.updated_at = datetime.now(timezone.utc)
        await self.queue.enqueue(
            IMPORT_SESSION, {"session_id": session.id},
            idempotency_key=f"import-session:{session.id}:resume:{resumes}", group_key=session.id,
        )
        await self.db.commit()
        logger.info("import_resumed", session_id=session.id, phase=session.phase, cursor=bool(session.cursor))
        await self.broadcast(session, force=True)
        return session

    async def cancel(self, session_id: str | None = None) -> ImportSession:
        """Stop a running session. It ends ``failed`` and can be resumed."""
        session = await self._session(session_id)
        if session.phase in ACTIVE_PHASES:
            self._fail(session)
            session.cancel_requested = True
            await self.db.commit()
            logger.info("import_cancel_requested", session_id=session.id)
            await self.broadcast(session, force=True)
        return session

    async def mark_session_failed(self, session_id: str, error: str) -> ImportSession | None:
        """Called when the ``import-session`` job is dead-lettered."""
        session = await self._session(session_id, required=False)
        if session is None or session.phase not in ACTIVE_PHASES:
            return session
        self._fail(session)
        errors = list(session.errors or [])
        if len(errors) < MAX_SESSION_ERRORS:
            errors.append({"error": error[:500]})
            session.errors = errors
        await self.db.commit()
        logger.warning("import_session_failed", session_id=session.id, error=error)
        await self.broadcast(session, force=True)
        return session

    async def progress(self, session_id: str | None = None) -> dict[str, Any]:
        """Session counters, user import states, commerce gap and dead letters."""
        session = await self._session(session_id, required=False)
        if session is not None and session.phase == "processing_customers":
            # Two last jobs finishing together can each see the other outstanding
            session = await self.check_completion(session.id)
        users = await self._user_counts()
        report: dict[str, Any] = {
            "session": session_dict(session) if session else None,
            "users": users,
            "queue": await self.queue.stats(),
        }
        if session is not None:
            report["outstanding_jobs"] = await self.queue.outstanding(IMPORT_USER, session.id)
            report["dead_letters"] = [
                {
                    "job_id": d.job_id,
                    "user_id": (d.payload or {}).get("user_id"),
                    "attempts": d.attempts,
                    "error": d.last_error,
                    "failed_at": d.failed_at,
                }
                for d in await self.queue.dead_letters(IMPORT_USER, group_key=session.id)
            ]
            if session.commerce_total is not None:
                report["gap"] = {
                    "commerce_customers": session.commerce_total,
                    "users_in_db": users["total"],
                    "missing": max(0, session.commerce_total - users["total"]),
                }
        return report

    # ── Job bodies ──

    async def run_session(
        self,
        session_id: str,
        *,
        should_cancel: Callable[[], Awaitable[bool]] | None = None,
    ) -> ImportSession:
        """Drive a session through fetching and enqueuing. Safe to re-run."""
        session = await self._session(session_id)
        async with self.client_factory() as client:
            if session.commerce_total is None:
                await self.db.commit()
                try:
                    total = await client.customer_count()
                except RateLimited:
                    raise
                except Exception as exc:
                    # The gap figure is informational only
                    logger.warning("import_customer_count_failed", session_id=session_id, error=str(exc))
                    total = None
                session = await self._session(session_id)
                session.commerce_total = total
                await self.db.commit()

            while session.phase == "fetching_customers":
                if await self._cancelled(session, should_cancel):
                    return session
                # Release the transaction before calling out
                await self.db.commit()
                page = await client.customer_page(session.cursor)
                session = await self._session(session_id)
                if session.phase != "fetching_customers":
                    return session
                done = await self._store_page(session, page.items, page.next_url)
                await self.db.commit()
                logger.info(
                    "import_page_fetched",
                    session_id=session_id, page=session.pages_fetched,
                    customers=len(page.items), has_more=page.has_more,
                )
                await self.broadcast(session)
                if done:
                    session.phase = "enqueuing_jobs"
                    await self.db.commit()

        if session.phase == "enqueuing_jobs":
            await self._enqueue_pending(session, should_cancel)
        if session.phase == "processing_customers":
            await self.check_completion(session.id)
        return session

    async def import_user(self, user_id: int, session_id: str | None) -> dict[str, Any]:
        """Sync one user's full order history."""
        if session_id is not None:
            session = await self.db.get(ImportSession, session_id, populate_existing=True)
            if session is not None and session.cancel_requested:
                logger.info("import_user_skipped_cancelled", user_id=user_id, session_id=session_id)
                return {"skipped": True}

        user = await self.db.get(User, user_id)
        if user is None or not user.external_customer_id:
            raise ValidationFailed("User has no commerce customer id", user_id=user_id)
        external_id = user.external_customer_id
        await mark_import_status(self.db, user_id, "in_progress")
        await self.db.commit()

        async with self.client_factory() as client:
            orders = await client.customer_orders(external_id)

        result = await sync_orders(self.db, user_id, orders)
        await mark_import_status(self.db, user_id, "completed")
        source = f"import:{session_id or 'direct'}"
        await self.queue.enqueue(CLASSIFY_USER, {"user_id": user_id}, idempotency_key=f"classify:{user_id}:{source}")
        if result.newly_delivered:
            await self.queue.enqueue(
                EVALUATE_ACHIEVEMENTS, {"user_id": user_id, "trigger": "delivery"},
                idempotency_key=f"eval:delivery:{user_id}:{source}",
            )
        await self.db.commit()

        if result.newly_delivered:
            await emit_user_event(self.redis, user_id, ORDER_DELIVERED, {"product_ids": result.newly_delivered})
        if session_id is not None:
            await self.check_completion(session_id, exclude_job=True)
        return {"orders": result.orders, "items": result.items, "delivered": len(result.newly_delivered)}

    async def record_user_failure(self, user_id: int, session_id: str | None, error: str) -> None:
        """Called once an import-user job is dead-lettered, so the job is no longer outstanding."""
        await mark_import_status(self.db, user_id, "failed")
        if session_id is not None:
            session = await self.db.get(ImportSession, session_id, populate_existing=True)
            if session is not None:
                self._record_error(session, user_id, error)
        await self.db.commit()
        if session_id is not None:
            await self.check_completion(session_id)

    async def check_completion(self, session_id: str, *, exclude_job: bool = False) -> ImportSession | None:
        """Refresh counters and complete the session once nothing is outstanding.

        ``exclude_job`` accounts for the calling job, which is still active
        until the worker acks it. Without it the job count is authoritative,
        and users still unfinished with no job left are marked failed.
        """
        session = await self.db.get(ImportSession, session_id, populate_existing=True)
        if session is None:
            return None
        outstanding = 0
        if session.phase == "processing_customers":
            outstanding = await self.queue.outstanding(IMPORT_USER, session_id)
            if exclude_job:
                outstanding -= 1
            elif outstanding <= 0:
                await self._fail_orphaned_users(session)
        await self._refresh_counters(session)
        if session.phase == "processing_customers" and outstanding <= 0:
            if await self._unfinished_count(session_id) == 0:
                session.phase = "completed"
                session.ended_at = datetime.now(timezone.utc)
                logger.info(
                    "import_completed",
                    session_id=session_id, completed=session.jobs_completed, failed=session.jobs_failed,
                )
        await self.db.commit()
        await self.broadcast(session, force=session.phase == "completed")
        return session

    # ── Internals ──

    async def _session(self, session_id: str | None, *, required: bool = True) -> ImportSession | None:
        if session_id is None:
            result = await self.db.execute(select(ImportSession).order_by(ImportSession.started_at.desc()).limit(1))
            session = result.scalar_one_or_none()
        else:
            session = await self.db.get(ImportSession, session_id, populate_existing=True)
        if session is None and required:
            raise ValidationFailed("Import session not found", session_id=session_id)
        return session

    async def _cancelled(self, session: ImportSession, should_cancel: Callable[[], Awaitable[bool]] | None) -> bool:
        if session.cancel_requested:
            return True
        if should_cancel is not None and await should_cancel():
            logger.info("import_interrupted", session_id=session.id, phase=session.phase)
            return True
        return False

    def _fail(self, session: ImportSession) -> None:
        session.options = {**(session.options or {}), "interrupted_phase": session.phase}
        session.phase = "failed"
        session.ended_at = datetime.now(timezone.utc)
        session.updated_at = session.ended_at

    def _record_error(self, session: ImportSession, user_id: int, error: str) -> None:
        """One entry per user; a later error replaces an earlier one."""
        errors = [e for e in (session.errors or []) if e.get("user_id") != user_id]
        if len(errors) < MAX_SESSION_ERRORS:
            errors.append({"user_id": user_id, "error": error[:500]})
        session.errors = errors

    async def _unfinished_count(self, session_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(User)
            .where(User.last_import_session_id == session_id, User.import_status.in_(UNFINISHED_STATUSES))
        )
        return int(result.scalar_one())

    async def _fail_orphaned_users(self, session: ImportSession) -> None:
        """Users whose job is gone without marking them; a dead-letter hook that never ran."""
        result = await self.db.execute(
            select(User.id)
            .where(User.last_import_session_id == session.id, User.import_status.in_(UNFINISHED_STATUSES))
            .order_by(User.id)
        )
        orphaned = list(result.scalars())
        for user_id in orphaned:
            await mark_import_status(self.db, user_id, "failed")
            self._record_error(session, user_id, ORPHANED_USER_ERROR)
        if orphaned:
            await self.db.flush()
            logger.warning("import_orphaned_users_failed", session_id=session.id, users=len(orphaned))

    async def _store_page(self, session: ImportSession, customers: list[dict[str, Any]], next_url: str | None) -> bool:
        """Upsert one page of customers. Returns True when fetching is finished."""
        options = session.options or {}
        batch_size = options.get("batch_size")
        target = options.get("target_unprocessed") if session.mode == "incremental" else None
        reimport_all = bool(options.get("reimport_all"))

        selected = await self._pending_count(session.id)
        done = next_url is None or not customers
        for customer in customers:
            if session.mode == "full" and batch_size and session.customers_fetched >= batch_size:
                done = True
                break
            if target and selected >= target:
                done = True
                break
            outcome = await upsert_customer(
                self.db, customer, reimport_all=reimport_all or session.mode == "full", import_session_id=session.id,
            )
            session.customers_fetched += 1
            if outcome.created:
                session.users_created += 1
            elif outcome.updated:
                session.users_updated += 1
            if outcome.should_import:
                selected += 1
        if target and selected >= target:
            done = True
        if session.mode == "full" and batch_size and session.customers_fetched >= batch_size:
            done = True

        session.pages_fetched += 1
        session.cursor = next_url
        session.updated_at = datetime.now(timezone.utc)
        return done

    async def _pending_count(self, session_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(User).where(User.last_import_session_id == session_id)
        )
        return int(result.scalar_one())

    async def _enqueue_pending(
        self, session: ImportSession, should_cancel: Callable[[], Awaitable[bool]] | None,
    ) -> None:
        # A resume after a cancel mid-drain re-enqueues skipped users under a new key
        requeue_round = (session.options or {}).get("requeue_round")
        suffix = f":{requeue_round}" if requeue_round else ""
        last_id = 0
        while True:
            if await self._cancelled(session, should_cancel):
                return
            result = await self.db.execute(
                select(User.id, User.external_customer_id)
                .where(
                    User.last_import_session_id == session.id,
                    User.import_status == "pending",
                    User.id > last_id,
                )
                .order_by(User.id)
                .limit(ENQUEUE_BATCH)
            )
            rows = result.all()
            if not rows:
                break
            last_id = rows[-1][0]
            for user_id, external_id in rows:
                outcome = await self.queue.enqueue(
                    IMPORT_USER,
                    {"user_id": user_id, "session_id": session.id, "external_customer_id": external_id},
                    idempotency_key=f"import-user:{user_id}:{session.id}{suffix}",
                    group_key=session.id,
                )
                if outcome.created:
                    session.jobs_enqueued += 1
            session.updated_at = datetime.now(timezone.utc)
            await self.db.commit()
            await self.broadcast(session)
            session = await self._session(session.id)

        if session.phase != "enqueuing_jobs":
            return
        session.phase = "processing_customers"
        await self.db.commit()
        logger.info("import_jobs_enqueued", session_id=session.id, jobs=session.jobs_enqueued)

    async def _refresh_counters(self, session: ImportSession) -> None:
        result = await self.db.execute(
            select(User.import_status, func.count())
            .where(User.last_import_session_id == session.id)
            .group_by(User.import_status)
        )
        counts = dict(result.all())
        await self.db.execute(
            update(ImportSession)
            .where(ImportSession.id == session.id)
            .values(
                jobs_completed=counts.get("completed", 0),
                jobs_failed=counts.get("failed", 0),
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session="fetch")
        )
        await self.db.refresh(session)

    async def _user_counts(self) -> dict[str, int]:
        result = await self.db.execute(select(User.import_status, func.count()).group_by(User.import_status))
        by_status = {status or "none": count for status, count in result.all()}
        imported = await self.db.execute(
            select(func.count()).select_from(User).where(User.full_history_imported.is_(True))
        )
        return {
            "total": sum(by_status.values()),
            "imported": int(imported.scalar_one()),
            "pending": by_status.get("pending", 0),
            "in_progress": by_status.get("in_progress", 0),
            "failed": by_status.get("failed", 0),
        }

    async def broadcast(self, session: ImportSession, *, force: bool = False) -> None:
        if self.redis is None or not self.throttle.ready(session.id, force=force):
            return
        await publish_to_room(self.redis, BULK_IMPORT_ROOM, "import.progress", session_dict(session))


def session_dict(session: ImportSession) -> dict[str, Any]:
    return {
        "id": session.id,
        "mode": session.mode,
        "phase": session.phase,
        "options": session.options,
        "pages_fetched": session.pages_fetched,
        "customers_fetched": session.customers_fetched,
        "users_created": session.users_created,
        "users_updated": session.users_updated,
        "jobs_enqueued": session.jobs_enqueued,
        "jobs_completed": session.jobs_completed,
        "jobs_failed": session.jobs_failed,
        "commerce_total": session.commerce_total,
        "errors": session.errors,
        "cancel_requested": session.cancel_requested,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
    }
