"""Job kinds and the follow-up jobs scheduled after a user's activity changes."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from coinbook.jobs.queue import JobQueue

EVALUATE_ACHIEVEMENTS = "evaluate-achievements"
CLASSIFY_USER = "classify-user"
CLASSIFY_ALL = "classify-all"
IMPORT_SESSION = "import-session"
IMPORT_USER = "import-user"
PROCESS_WEBHOOK = "process-webhook"

ALL_KINDS = (
    EVALUATE_ACHIEVEMENTS,
    CLASSIFY_USER,
    CLASSIFY_ALL,
    IMPORT_SESSION,
    IMPORT_USER,
    PROCESS_WEBHOOK,
)

# Seconds; kinds not listed use job_default_timeout_seconds
KIND_TIMEOUTS: dict[str, float] = {
    CLASSIFY_ALL: 30 * 60,
    IMPORT_SESSION: 10 * 60,
    IMPORT_USER: 120,
}


async def schedule_user_followups(
    db: AsyncSession,
    user_id: int,
    trigger: str,
    source_key: str,
    *,
    classify: bool = True,
) -> None:
    """Enqueue achievement evaluation (and optionally reclassification) for a user.

    Keys derive from the source operation so a replayed request schedules
    nothing new within the dedup window. Does not commit.
    """
    queue = JobQueue(db)
    await queue.enqueue(
        EVALUATE_ACHIEVEMENTS,
        {"user_id": user_id, "trigger": trigger},
        idempotency_key=f"eval:{trigger}:{user_id}:{source_key}",
    )
    if classify:
        await queue.enqueue(
            CLASSIFY_USER,
            {"user_id": user_id},
            idempotency_key=f"classify:{user_id}:{source_key}",
        )
