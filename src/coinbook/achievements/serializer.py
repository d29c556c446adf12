"""Per-user serialization of achievement evaluation.

In-process, a user-keyed slot map lets only one evaluation run per user.
Triggers that arrive while one is running are merged, and a single follow-up
round evaluates them all. Across processes, the evaluation transaction takes
a PostgreSQL advisory lock on the user id.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

T = TypeVar("T")

# Namespace for pg_advisory_xact_lock(int, int)
EVALUATION_LOCK_NAMESPACE = 7301
CLASSIFICATION_LOCK_KEY = 7302


async def acquire_user_lock(db: AsyncSession, user_id: int, namespace: int = EVALUATION_LOCK_NAMESPACE) -> None:
    """Take a transaction-scoped advisory lock on the user (PostgreSQL only)."""
    if db.bind.dialect.name != "postgresql":
        return
    await db.execute(
        text("SELECT pg_advisory_xact_lock(:ns, :key)"),
        {"ns": namespace, "key": user_id % 2_147_483_647},
    )


@dataclass
class _Slot(Generic[T]):
    pending: set[str] = field(default_factory=set)
    waiters: list[asyncio.Future[T]] = field(default_factory=list)


class CoalescingSerializer(Generic[T]):
    """Run at most one job per key; coalesce triggers that arrive meanwhile."""

    def __init__(self) -> None:
        self._slots: dict[int, _Slot[T]] = {}

    def is_running(self, key: int) -> bool:
        return key in self._slots

    async def run(
        self,
        key: int,
        trigger: str,
        fn: Callable[[frozenset[str]], Awaitable[T]],
    ) -> T:
        slot = self._slots.get(key)
        if slot is not None:
            # Someone is evaluating this user: join the follow-up round
            future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
            slot.pending.add(trigger)
            slot.waiters.append(future)
            return await future

        slot = _Slot()
        self._slots[key] = slot
        try:
            return await fn(frozenset({trigger}))
        finally:
            await self._drain(key, slot, fn)

    async def _drain(self, key: int, slot: _Slot[T], fn: Callable[[frozenset[str]], Awaitable[T]]) -> None:
        try:
            while slot.pending:
                triggers = frozenset(slot.pending)
                waiters = slot.waiters
                slot.pending = set()
                slot.waiters = []
                try:
                    result = await fn(triggers)
                except Exception as exc:  # noqa: BLE001
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_exception(exc)
                else:
                    for waiter in waiters:
                        if not waiter.done():
                            waiter.set_result(result)
        finally:
            self._slots.pop(key, None)
            for waiter in slot.waiters:
                if not waiter.done():
                    waiter.cancel()
