"""Commerce API token bucket."""

from __future__ import annotations

import pytest

from coinbook.imports.token_bucket import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.mark.asyncio
async def test_burst_is_free(clock):
    bucket = TokenBucket(2.0, 3, clock=clock, sleep=clock.sleep)
    for _ in range(3):
        assert await bucket.acquire() == 0.0
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_waits_for_refill(clock):
    bucket = TokenBucket(2.0, 1, clock=clock, sleep=clock.sleep)
    await bucket.acquire()
    waited = await bucket.acquire()
    assert waited == pytest.approx(0.5)
    assert clock.now == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_refill_caps_at_burst(clock):
    bucket = TokenBucket(10.0, 4, clock=clock, sleep=clock.sleep)
    await bucket.acquire(4)
    clock.now += 100
    assert bucket.available == 4


@pytest.mark.asyncio
async def test_drain_holds_bucket_empty(clock):
    bucket = TokenBucket(2.0, 4, clock=clock, sleep=clock.sleep)
    bucket.drain(3.0)
    waited = await bucket.acquire()
    # 6 tokens of debt plus the one requested
    assert waited == pytest.approx(3.5)


def test_rejects_bad_parameters():
    with pytest.raises(ValueError):
        TokenBucket(0, 1)
    with pytest.raises(ValueError):
        TokenBucket(1.0, 0)
