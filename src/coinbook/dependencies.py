"""Shared FastAPI dependencies."""

from collections.abc import AsyncGenerator

from coinbook.redis_client import get_optional_redis


async def get_redis_dep() -> AsyncGenerator[object, None]:
    """Yield the Redis client, or None when fanout is not configured.

    Routes publish through ``coinbook.events``, which treats None as a no-op.
    Tests override this dependency with a recording mock.
    """
    yield get_optional_redis()
