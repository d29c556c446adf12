"""Per-user memo of progress summaries.

Entries are computed lazily on first read, dropped when an invalidating event
for the user is seen, and expire after sitting idle. A load that races an
invalidation is returned to its caller but not stored.

Per-user locks and invalidation counters exist only while a load for that
user is in flight, so memory tracks the entries held, not every user seen.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

import structlog

from coinbook.config import get_settings

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class _Entry(Generic[T]):
    value: T
    last_access: float


class ProgressCache(Generic[T]):
    def __init__(self, idle_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._idle_seconds = idle_seconds
        self._clock = clock
        self._entries: dict[int, _Entry[T]] = {}
        self._generations: dict[int, int] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._loading: dict[int, int] = {}

    @property
    def idle_seconds(self) -> float:
        if self._idle_seconds is not None:
            return self._idle_seconds
        return float(get_settings().progress_cache_idle_seconds)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def tracked_users(self) -> int:
        """Users with any per-user state, entries included."""
        return len(self._entries.keys() | self._locks.keys() | self._generations.keys())

    def peek(self, user_id: int) -> T | None:
        entry = self._entries.get(user_id)
        if entry is None or self._expired(entry):
            return None
        return entry.value

    def _expired(self, entry: _Entry[T]) -> bool:
        return self._clock() - entry.last_access >= self.idle_seconds

    async def get(self, user_id: int, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached summary, computing it at most once per invalidation."""
        entry = self._entries.get(user_id)
        if entry is not None and not self._expired(entry):
            entry.last_access = self._clock()
            return entry.value

        self._loading[user_id] = self._loading.get(user_id, 0) + 1
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        try:
            async with lock:
                entry = self._entries.get(user_id)
                if entry is not None and not self._expired(entry):
                    entry.last_access = self._clock()
                    return entry.value

                generation = self._generations.get(user_id, 0)
                value = await loader()
                if self._generations.get(user_id, 0) == generation:
                    self._entries[user_id] = _Entry(value=value, last_access=self._clock())
                return value
        finally:
            remaining = self._loading.get(user_id, 1) - 1
            if remaining:
                self._loading[user_id] = remaining
            else:
                self._loading.pop(user_id, None)
                self._locks.pop(user_id, None)
                self._generations.pop(user_id, None)

    def invalidate(self, user_id: int) -> None:
        self._entries.pop(user_id, None)
        # Only an in-flight load can race this; nothing to remember otherwise
        if user_id in self._loading:
            self._generations[user_id] = self._generations.get(user_id, 0) + 1

    def purge_idle(self) -> int:
        """Drop expired entries; returns how many were removed."""
        expired = [uid for uid, entry in self._entries.items() if self._expired(entry)]
        for uid in expired:
            del self._entries[uid]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()
        self._generations.clear()
        self._locks.clear()
        self._loading.clear()


async def purge_periodically(cache: ProgressCache, interval_seconds: float) -> None:
    """Sweep idle entries until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        removed = cache.purge_idle()
        if removed:
            logger.debug("progress_cache_purged", removed=removed, remaining=len(cache))


# Global singleton
progress_cache: ProgressCache = ProgressCache()
