"""Idle-expiring per-user progress cache."""

from __future__ import annotations

import asyncio

import pytest

from coinbook.progress.cache import ProgressCache, purge_periodically

pytestmark = pytest.mark.asyncio


class Clock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


async def test_loads_once_until_invalidated():
    cache: ProgressCache[int] = ProgressCache(idle_seconds=60, clock=Clock())
    calls = 0

    async def loader() -> int:
        nonlocal calls
        calls += 1
        return calls

    assert await cache.get(1, loader) == 1
    assert await cache.get(1, loader) == 1
    cache.invalidate(1)
    assert await cache.get(1, loader) == 2
    assert calls == 2


async def test_idle_entries_expire():
    clock = Clock()
    cache: ProgressCache[str] = ProgressCache(idle_seconds=60, clock=clock)

    async def loader() -> str:
        return "summary"

    await cache.get(7, loader)
    clock.now += 30
    assert cache.peek(7) == "summary"
    clock.now += 60
    assert cache.peek(7) is None
    assert cache.purge_idle() == 1
    assert len(cache) == 0


async def test_load_racing_invalidation_is_not_stored():
    cache: ProgressCache[str] = ProgressCache(idle_seconds=60, clock=Clock())
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow_loader() -> str:
        started.set()
        await release.wait()
        return "stale"

    task = asyncio.create_task(cache.get(3, slow_loader))
    await started.wait()
    cache.invalidate(3)
    release.set()

    assert await task == "stale"
    assert cache.peek(3) is None


async def test_concurrent_reads_share_one_load():
    cache: ProgressCache[int] = ProgressCache(idle_seconds=60, clock=Clock())
    calls = 0

    async def loader() -> int:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0)
        return 42

    results = await asyncio.gather(*(cache.get(5, loader) for _ in range(5)))
    assert results == [42] * 5
    assert calls == 1


async def test_per_user_state_is_released():
    clock = Clock()
    cache: ProgressCache[int] = ProgressCache(idle_seconds=60, clock=clock)

    async def loader() -> int:
        return 1

    for user_id in range(10_000):
        await cache.get(user_id, loader)
        cache.invalidate(user_id)
    for user_id in range(10_000, 10_100):
        await cache.get(user_id, loader)
    clock.now += 61

    assert cache.purge_idle() == 100
    assert len(cache) == 0
    assert cache.tracked_users == 0


async def test_invalidation_during_load_is_remembered_only_while_loading():
    cache: ProgressCache[str] = ProgressCache(idle_seconds=60, clock=Clock())
    release = asyncio.Event()

    async def slow_loader() -> str:
        await release.wait()
        return "stale"

    task = asyncio.create_task(cache.get(9, slow_loader))
    await asyncio.sleep(0)
    cache.invalidate(9)
    assert cache.tracked_users == 1
    release.set()
    await task

    assert cache.peek(9) is None
    assert cache.tracked_users == 0


async def test_periodic_purge():
    clock = Clock()
    cache: ProgressCache[str] = ProgressCache(idle_seconds=60, clock=clock)

    async def loader() -> str:
        return "summary"

    await cache.get(1, loader)
    clock.now += 61
    sweeper = asyncio.create_task(purge_periodically(cache, 0.01))
    for _ in range(100):
        if len(cache) == 0:
            break
        await asyncio.sleep(0.01)
    sweeper.cancel()
    with pytest.raises(asyncio.CancelledError):
        await sweeper

    assert len(cache) == 0
