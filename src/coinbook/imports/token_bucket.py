"""Token bucket limiting calls to the commerce API."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

from coinbook.config import get_settings


class TokenBucket:
    """``rate`` tokens per second, holding at most ``burst``.

    Callers block in ``acquire`` until a token is available. One bucket is
    shared by every worker in the process.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if rate <= 0 or burst < 1:
            msg = "rate must be positive and burst at least 1"
            raise ValueError(msg)
        self.rate = rate
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    async def acquire(self, tokens: float = 1.0) -> float:
        """Take ``tokens``, waiting as needed. Returns seconds spent waiting."""
        waited = 0.0
        # The lock keeps waiters in arrival order
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return waited
                delay = (tokens - self._tokens) / self.rate
                await self._sleep(delay)
                waited += delay

    def drain(self, seconds: float) -> None:
        """Empty the bucket and hold it empty for ``seconds`` (server said retry later)."""
        self._refill()
        self._tokens = -seconds * self.rate


_bucket: TokenBucket | None = None


def get_commerce_bucket() -> TokenBucket:
    """Process-wide bucket for the commerce API, built from settings on first use."""
    global _bucket  # noqa: PLW0603
    if _bucket is None:
        settings = get_settings()
        _bucket = TokenBucket(settings.commerce_rate_per_second, settings.commerce_burst)
    return _bucket
