"""Domain events and fanout publishing.

Publishers write JSON envelopes to Redis channels ``ws:user:{id}`` and
``ws:room:{name}``; the websocket bridge in each API process forwards them to
connected clients. Fanout is informational: a failed publish is logged and
never fails the operation that produced the event.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from coinbook.progress.cache import progress_cache

logger = logging.getLogger(__name__)

USER_CHANNEL_PREFIX = "ws:user:"
ROOM_CHANNEL_PREFIX = "ws:room:"

SHARED_ROOMS = frozenset({"queue-monitor", "bulk-import", "product-webhooks", "customer-orders"})

RANK_MUTATED = "rank.mutated"
ACHIEVEMENT_EARNED = "achievement.earned"
ORDER_DELIVERED = "order.delivered"
FLAVOR_UPDATED = "flavor.updated"

# Events after which a user's progress summary must be recomputed
INVALIDATING_EVENTS = frozenset({RANK_MUTATED, ACHIEVEMENT_EARNED, ORDER_DELIVERED})


def _envelope(event: str, data: dict[str, Any]) -> str:
    return json.dumps({"event": event, "data": data}, default=str)


async def publish_to_user(redis: Any, user_id: int, event: str, data: dict[str, Any]) -> None:  # noqa: ANN401
    if redis is None:
        return
    try:
        await redis.publish(f"{USER_CHANNEL_PREFIX}{user_id}", _envelope(event, data))
    except Exception:
        logger.warning("Failed to publish %s for user %s", event, user_id, exc_info=True)


async def publish_to_room(redis: Any, room: str, event: str, data: dict[str, Any]) -> None:  # noqa: ANN401
    if redis is None:
        return
    try:
        await redis.publish(f"{ROOM_CHANNEL_PREFIX}{room}", _envelope(event, data))
    except Exception:
        logger.warning("Failed to publish %s to room %s", event, room, exc_info=True)


async def emit_user_event(redis: Any, user_id: int, event: str, data: dict[str, Any]) -> None:  # noqa: ANN401
    """Apply local side effects of a domain event, then fan it out.

    Other processes drop their cached progress when the bridge sees the
    event, so invalidation here only covers the current process.
    """
    if event in INVALIDATING_EVENTS:
        progress_cache.invalidate(user_id)
    await publish_to_user(redis, user_id, event, {"user_id": user_id, **data})
