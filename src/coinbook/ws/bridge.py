"""Bridges Redis pub/sub to WebSocket clients.

Publishers anywhere (API processes, workers) write to ``ws:user:{id}`` and
``ws:room:{name}``; every API process runs one bridge that forwards those
messages to its own connections. Seeing an invalidating user event also
drops this process's cached progress summary for that user.
"""

import asyncio
import json

import redis.asyncio as aioredis
import structlog

from coinbook.events import INVALIDATING_EVENTS, ROOM_CHANNEL_PREFIX, USER_CHANNEL_PREFIX
from coinbook.progress.cache import progress_cache
from coinbook.ws.manager import ConnectionManager, manager

logger = structlog.get_logger()

PATTERNS = (f"{USER_CHANNEL_PREFIX}*", f"{ROOM_CHANNEL_PREFIX}*")


def _decode(value: object) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class PubSubBridge:
    """Subscribes to Redis pub/sub and pushes messages to WebSocket clients."""

    def __init__(self, redis_client: aioredis.Redis, connection_manager: ConnectionManager | None = None) -> None:
        self.redis = redis_client
        self.manager = connection_manager or manager
        self._running = False

    async def handle_message(self, message: dict) -> int:
        """Forward one pub/sub message. Returns the number of connections it was queued for."""
        if message.get("type") not in ("pmessage", "message"):
            return 0
        channel = _decode(message.get("channel", ""))
        try:
            envelope = json.loads(_decode(message.get("data", b"")))
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.warning("pubsub_invalid_message", channel=channel)
            return 0

        event = envelope.get("event", "notification")
        data = envelope.get("data", {})

        # ── Per-user messages ──
        if channel.startswith(USER_CHANNEL_PREFIX):
            try:
                user_id = int(channel.removeprefix(USER_CHANNEL_PREFIX))
            except ValueError:
                logger.warning("pubsub_invalid_user_id", channel=channel)
                return 0
            if event in INVALIDATING_EVENTS:
                progress_cache.invalidate(user_id)
            sent = await self.manager.send_to_user_direct(user_id, event, data)
            if sent:
                logger.debug("user_event_sent", user_id=user_id, event_name=event, recipients=sent)
            return sent

        # ── Shared rooms ──
        if channel.startswith(ROOM_CHANNEL_PREFIX):
            room = channel.removeprefix(ROOM_CHANNEL_PREFIX)
            sent = await self.manager.broadcast_to_room(room, event, data)
            if sent:
                logger.debug("pubsub_broadcast", room=room, event_name=event, recipients=sent)
            return sent
        return 0

    async def start(self) -> None:
        """Listen until stop() is called or the task is cancelled."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(*PATTERNS)
        logger.info("pubsub_bridge_started", patterns=list(PATTERNS))

        try:
            while self._running:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None:
                    continue
                await self.handle_message(message)
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.punsubscribe()
            await pubsub.aclose()
            logger.info("pubsub_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
