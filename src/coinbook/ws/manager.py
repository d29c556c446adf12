"""WebSocket connection manager.

Tracks active connections and their room memberships. Every connection is in
its own ``user:{id}`` room from the start; shared ``room:{name}`` streams need
an admin role. Outgoing messages go through a per-connection queue drained
by a sender task, so one slow client never stalls fanout to the others. A
client whose queue grows past the byte limit is dropped with a reconnect hint.
"""

import asyncio
import contextlib
import json
import time
from collections import defaultdict
from dataclasses import dataclass, field

import structlog
from fastapi import WebSocket

from coinbook.config import get_settings
from coinbook.events import SHARED_ROOMS

logger = structlog.get_logger()

OVERFLOW_CLOSE_CODE = 4008
OVERFLOW_REASON = "send buffer overflow, reconnect"


def user_room(user_id: int) -> str:
    return f"user:{user_id}"


def shared_room(name: str) -> str:
    return f"room:{name}"


def normalize_room(room: str) -> str:
    """Accept both ``queue-monitor`` and ``room:queue-monitor``."""
    if room.startswith(("room:", "user:")):
        return room
    return shared_room(room)


@dataclass
class ClientConnection:
    """Represents a single WebSocket client."""

    websocket: WebSocket
    user_id: int
    role: str = "regular"
    rooms: set[str] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    messages_sent: int = 0
    buffered_bytes: int = 0
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    sender: asyncio.Task | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class ConnectionManager:
    """Manages all active WebSocket connections.

    Safe for asyncio via the single-threaded event loop.
    """

    def __init__(self, send_buffer_bytes: int | None = None) -> None:
        self._send_buffer_bytes = send_buffer_bytes
        self._connections: dict[str, ClientConnection] = {}  # conn_id -> client
        self._rooms: dict[str, set[str]] = defaultdict(set)  # room -> {conn_ids}
        self._user_connections: dict[int, set[str]] = defaultdict(set)  # user_id -> {conn_ids}

    @property
    def send_buffer_bytes(self) -> int:
        if self._send_buffer_bytes is not None:
            return self._send_buffer_bytes
        return get_settings().ws_send_buffer_bytes

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def get(self, conn_id: str) -> ClientConnection | None:
        return self._connections.get(conn_id)

    async def connect(self, websocket: WebSocket, conn_id: str, user_id: int, role: str = "regular") -> ClientConnection:
        """Accept a connection and join it to its user room."""
        await websocket.accept()
        client = ClientConnection(websocket=websocket, user_id=user_id, role=role)
        self._connections[conn_id] = client
        self._user_connections[user_id].add(conn_id)
        room = user_room(user_id)
        client.rooms.add(room)
        self._rooms[room].add(conn_id)
        client.sender = asyncio.create_task(self._sender(conn_id, client))
        logger.info("ws_connected", conn_id=conn_id, user_id=user_id, role=role)
        return client

    async def disconnect(self, conn_id: str) -> None:
        """Remove a connection and its memberships."""
        client = self._connections.pop(conn_id, None)
        if client is None:
            return

        for room in client.rooms:
            self._leave(room, conn_id)

        self._user_connections[client.user_id].discard(conn_id)
        if not self._user_connections[client.user_id]:
            del self._user_connections[client.user_id]

        if client.sender is not None and client.sender is not asyncio.current_task():
            client.sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await client.sender

        logger.info("ws_disconnected", conn_id=conn_id, user_id=client.user_id, sent=client.messages_sent)

    async def subscribe(self, conn_id: str, room: str) -> tuple[bool, str | None]:
        """Join a room. Returns (ok, reason for refusal)."""
        client = self._connections.get(conn_id)
        if client is None:
            return False, "not connected"

        room = normalize_room(room)
        if room.startswith("user:"):
            if room != user_room(client.user_id):
                return False, "cannot join another user's room"
        else:
            name = room.removeprefix("room:")
            if name not in SHARED_ROOMS:
                return False, f"unknown room '{name}'"
            if not client.is_admin:
                return False, "admin role required"

        client.rooms.add(room)
        self._rooms[room].add(conn_id)
        logger.debug("ws_subscribed", conn_id=conn_id, room=room)
        return True, None

    async def unsubscribe(self, conn_id: str, room: str) -> bool:
        client = self._connections.get(conn_id)
        if client is None:
            return False
        room = normalize_room(room)
        # The user room is implicit and stays joined
        if room == user_room(client.user_id):
            return False
        if room not in client.rooms:
            return False
        client.rooms.discard(room)
        self._leave(room, conn_id)
        return True

    def _leave(self, room: str, conn_id: str) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(conn_id)
        if not members:
            del self._rooms[room]

    async def send(self, conn_id: str, message: dict) -> bool:
        """Queue a message for one connection. False if it was dropped."""
        client = self._connections.get(conn_id)
        if client is None:
            return False
        payload = json.dumps(message, default=str)
        size = len(payload.encode())
        if client.buffered_bytes + size > self.send_buffer_bytes:
            await self._drop_overflowing(conn_id, client)
            return False
        client.buffered_bytes += size
        client.outbox.put_nowait((payload, size))
        return True

    async def broadcast_to_room(self, room: str, event: str, data: dict) -> int:
        """Queue an event for every member of a room. Returns the number queued."""
        room = normalize_room(room)
        message = {"room": room, "event": event, "data": data}
        sent = 0
        for conn_id in list(self._rooms.get(room, set())):
            if await self.send(conn_id, message):
                sent += 1
        return sent

    async def send_to_user_direct(self, user_id: int, event: str, data: dict) -> int:
        """Queue an event for every connection of one user."""
        return await self.broadcast_to_room(user_room(user_id), event, data)

    async def drain(self) -> None:
        """Wait until every live connection has handed its queued messages to the socket."""
        while any(c.buffered_bytes for c in self._connections.values()):
            await asyncio.sleep(0.001)

    async def _sender(self, conn_id: str, client: ClientConnection) -> None:
        while True:
            payload, size = await client.outbox.get()
            try:
                await client.websocket.send_text(payload)
                client.messages_sent += 1
            except Exception as exc:
                logger.info("ws_send_failed", conn_id=conn_id, error=str(exc))
                await self.disconnect(conn_id)
                return
            finally:
                client.buffered_bytes -= size

    async def _drop_overflowing(self, conn_id: str, client: ClientConnection) -> None:
        logger.warning(
            "ws_send_buffer_overflow",
            conn_id=conn_id, user_id=client.user_id, buffered=client.buffered_bytes,
        )
        await self.disconnect(conn_id)
        # The peer may already be gone; the connection is dropped either way
        with contextlib.suppress(Exception):
            await client.websocket.close(code=OVERFLOW_CLOSE_CODE, reason=OVERFLOW_REASON)

    def get_stats(self) -> dict:
        """Get connection statistics."""
        return {
            "total_connections": len(self._connections),
            "unique_users": len(self._user_connections),
            "rooms": {
                room: len(conns) for room, conns in self._rooms.items() if conns and room.startswith("room:")
            },
        }


# Global singleton
manager = ConnectionManager()
