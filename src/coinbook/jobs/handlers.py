"""Job handlers, one per kind.

Handlers run inside a worker's own session and raise typed errors; the
worker decides whether that means retry, dead-letter or drop. Kinds that own
a record with a status (import users and sessions, webhook deliveries) also
register a dead-letter hook that marks it failed.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.achievements.evaluator import AchievementEvaluator
from coinbook.classification.service import DEFAULT_BATCH_SIZE, classify_user, run_full_classification
from coinbook.errors import ValidationFailed
from coinbook.events import FLAVOR_UPDATED, emit_user_event
from coinbook.imports.orchestrator import BulkImportOrchestrator
from coinbook.jobs.kinds import (
    CLASSIFY_ALL,
    CLASSIFY_USER,
    EVALUATE_ACHIEVEMENTS,
    IMPORT_SESSION,
    IMPORT_USER,
    PROCESS_WEBHOOK,
)
from coinbook.jobs.worker import DeadLetterHook, Handler, JobContext
from coinbook.webhooks.processor import mark_failed, process_delivery

logger = structlog.get_logger()


def _user_id(payload: dict[str, Any]) -> int:
    try:
        return int(payload["user_id"])
    except (KeyError, TypeError, ValueError) as exc:
        msg = "Job payload needs an integer user_id"
        raise ValidationFailed(msg) from exc


def _flavor_event(changed: dict[str, tuple[str | None, str]]) -> dict[str, Any]:
    return {
        "changes": [
            {"flavor_profile": profile, "previous_state": previous, "state": state}
            for profile, (previous, state) in sorted(changed.items())
        ],
    }


async def evaluate_achievements(ctx: JobContext, payload: dict[str, Any]) -> None:
    trigger = payload.get("trigger")
    if not trigger:
        msg = "evaluate-achievements needs a trigger"
        raise ValidationFailed(msg)
    await AchievementEvaluator(ctx.db, ctx.redis).evaluate(_user_id(payload), trigger)


async def classify_one(ctx: JobContext, payload: dict[str, Any]) -> None:
    result = await classify_user(ctx.db, _user_id(payload))
    if result.changed:
        await emit_user_event(ctx.redis, result.user_id, FLAVOR_UPDATED, _flavor_event(result.changed))


async def classify_all(ctx: JobContext, payload: dict[str, Any]) -> None:
    async def on_batch(changes: dict[int, dict[str, tuple[str | None, str]]]) -> None:
        for user_id, changed in changes.items():
            await emit_user_event(ctx.redis, user_id, FLAVOR_UPDATED, _flavor_event(changed))

    report = await run_full_classification(
        ctx.db,
        batch_size=int(payload.get("batch_size") or DEFAULT_BATCH_SIZE),
        should_cancel=ctx.should_cancel,
        on_batch=on_batch,
    )
    logger.info(
        "classification_run_finished",
        users=report.users_processed, skipped=report.skipped, cancelled=report.cancelled,
    )


async def import_session(ctx: JobContext, payload: dict[str, Any]) -> None:
    session_id = payload.get("session_id")
    if not session_id:
        msg = "import-session needs a session_id"
        raise ValidationFailed(msg)
    await BulkImportOrchestrator(ctx.db, redis=ctx.redis).run_session(session_id, should_cancel=ctx.should_cancel)


async def import_user(ctx: JobContext, payload: dict[str, Any]) -> None:
    await BulkImportOrchestrator(ctx.db, redis=ctx.redis).import_user(_user_id(payload), payload.get("session_id"))


async def process_webhook(ctx: JobContext, payload: dict[str, Any]) -> None:
    delivery_id = payload.get("delivery_id")
    if delivery_id is None:
        msg = "process-webhook needs a delivery_id"
        raise ValidationFailed(msg)
    await process_delivery(ctx.db, ctx.redis, int(delivery_id))


HANDLERS: dict[str, Handler] = {
    EVALUATE_ACHIEVEMENTS: evaluate_achievements,
    CLASSIFY_USER: classify_one,
    CLASSIFY_ALL: classify_all,
    IMPORT_SESSION: import_session,
    IMPORT_USER: import_user,
    PROCESS_WEBHOOK: process_webhook,
}


# ── Dead-letter hooks ──
# Whatever ended the job (a terminal error, its last timeout, or a reservation
# that expired once too often), the owning record must not stay in progress.


async def import_user_dead_lettered(db: AsyncSession, redis: Any, payload: dict[str, Any], error: str) -> None:  # noqa: ANN401
    try:
        user_id = int(payload["user_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("import_user_dead_letter_without_user", payload=payload)
        return
    await BulkImportOrchestrator(db, redis=redis).record_user_failure(user_id, payload.get("session_id"), error)


async def import_session_dead_lettered(db: AsyncSession, redis: Any, payload: dict[str, Any], error: str) -> None:  # noqa: ANN401
    session_id = payload.get("session_id")
    if session_id:
        await BulkImportOrchestrator(db, redis=redis).mark_session_failed(session_id, error)


async def webhook_dead_lettered(db: AsyncSession, redis: Any, payload: dict[str, Any], error: str) -> None:  # noqa: ANN401
    delivery_id = payload.get("delivery_id")
    if delivery_id is not None:
        await mark_failed(db, int(delivery_id), error)


DEAD_LETTER_HOOKS: dict[str, DeadLetterHook] = {
    IMPORT_USER: import_user_dead_lettered,
    IMPORT_SESSION: import_session_dead_lettered,
    PROCESS_WEBHOOK: webhook_dead_lettered,
}
