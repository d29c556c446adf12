"""Unit tests for the WebSocket ConnectionManager."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from coinbook.ws.manager import OVERFLOW_CLOSE_CODE, ConnectionManager, normalize_room


@pytest.fixture
def mgr() -> ConnectionManager:
    return ConnectionManager(send_buffer_bytes=4096)


def _make_ws(*, fail_send: bool = False) -> MagicMock:
    ws = AsyncMock()
    ws.accept = AsyncMock()
    ws.close = AsyncMock()
    if fail_send:
        ws.send_text = AsyncMock(side_effect=RuntimeError("connection closed"))
    else:
        ws.send_text = AsyncMock()
    return ws


def _sent(ws: MagicMock) -> list[dict]:
    return [json.loads(c.args[0]) for c in ws.send_text.await_args_list]


class TestConnect:
    @pytest.mark.asyncio
    async def test_joins_own_user_room(self, mgr: ConnectionManager) -> None:
        ws = _make_ws()
        client = await mgr.connect(ws, "conn-1", user_id=42)
        ws.accept.assert_awaited_once()
        assert client.rooms == {"user:42"}
        assert mgr.get_stats() == {"total_connections": 1, "unique_users": 1, "rooms": {}}
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=42, role="admin")
        await mgr.subscribe("conn-1", "queue-monitor")
        await mgr.disconnect("conn-1")
        assert mgr.connection_count == 0
        assert mgr.get_stats()["rooms"] == {}

    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_noop(self, mgr: ConnectionManager) -> None:
        await mgr.disconnect("nope")
        assert mgr.connection_count == 0


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_admin_joins_shared_room(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1, role="admin")
        assert await mgr.subscribe("conn-1", "bulk-import") == (True, None)
        assert mgr.get_stats()["rooms"] == {"room:bulk-import": 1}
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_regular_user_refused_shared_room(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1)
        ok, reason = await mgr.subscribe("conn-1", "room:queue-monitor")
        assert ok is False
        assert reason == "admin role required"
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_other_users_room_refused(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1, role="admin")
        ok, reason = await mgr.subscribe("conn-1", "user:2")
        assert ok is False
        assert "another user" in reason
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_unknown_room(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1, role="admin")
        ok, reason = await mgr.subscribe("conn-1", "mining")
        assert ok is False
        assert "unknown room" in reason
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_user_room_cannot_be_left(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1)
        assert await mgr.unsubscribe("conn-1", "user:1") is False
        assert mgr.get("conn-1").rooms == {"user:1"}
        await mgr.disconnect("conn-1")

    @pytest.mark.asyncio
    async def test_leaving_rooms_drops_empty_entries(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(), "conn-1", user_id=1, role="admin")
        assert await mgr.unsubscribe("conn-1", "room:bulk-import") is False
        assert "room:bulk-import" not in mgr._rooms

        ok, _ = await mgr.subscribe("conn-1", "bulk-import")
        assert ok is True
        assert await mgr.unsubscribe("conn-1", "room:bulk-import") is True
        assert "room:bulk-import" not in mgr._rooms
        await mgr.disconnect("conn-1")

    def test_normalize_room(self) -> None:
        assert normalize_room("bulk-import") == "room:bulk-import"
        assert normalize_room("room:bulk-import") == "room:bulk-import"
        assert normalize_room("user:5") == "user:5"


class TestFanout:
    @pytest.mark.asyncio
    async def test_user_events_reach_every_connection_in_order(self, mgr: ConnectionManager) -> None:
        ws1, ws2, other = _make_ws(), _make_ws(), _make_ws()
        await mgr.connect(ws1, "a", user_id=7)
        await mgr.connect(ws2, "b", user_id=7)
        await mgr.connect(other, "c", user_id=8)

        for n in range(3):
            assert await mgr.send_to_user_direct(7, "rank.mutated", {"n": n}) == 2
        await mgr.drain()

        assert [m["data"]["n"] for m in _sent(ws1)] == [0, 1, 2]
        assert [m["data"]["n"] for m in _sent(ws2)] == [0, 1, 2]
        assert _sent(ws1)[0]["room"] == "user:7"
        other.send_text.assert_not_awaited()
        for conn_id in ("a", "b", "c"):
            await mgr.disconnect(conn_id)

    @pytest.mark.asyncio
    async def test_room_broadcast_only_to_members(self, mgr: ConnectionManager) -> None:
        admin_ws, user_ws = _make_ws(), _make_ws()
        await mgr.connect(admin_ws, "admin", user_id=1, role="admin")
        await mgr.connect(user_ws, "user", user_id=2)
        await mgr.subscribe("admin", "queue-monitor")

        sent = await mgr.broadcast_to_room("queue-monitor", "queue.stats", {"waiting": 3})
        await mgr.drain()

        assert sent == 1
        assert _sent(admin_ws) == [{"room": "room:queue-monitor", "event": "queue.stats", "data": {"waiting": 3}}]
        user_ws.send_text.assert_not_awaited()
        await mgr.disconnect("admin")
        await mgr.disconnect("user")

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self, mgr: ConnectionManager) -> None:
        await mgr.connect(_make_ws(fail_send=True), "conn-1", user_id=3)
        await mgr.send_to_user_direct(3, "rank.mutated", {})
        await mgr.drain()
        await asyncio.sleep(0)
        assert mgr.connection_count == 0


class TestOverflow:
    @pytest.mark.asyncio
    async def test_slow_client_dropped_with_reconnect_code(self) -> None:
        mgr = ConnectionManager(send_buffer_bytes=200)
        gate = asyncio.Event()
        slow = _make_ws()

        async def blocked_send(_payload: str) -> None:
            await gate.wait()

        slow.send_text = AsyncMock(side_effect=blocked_send)
        fast = _make_ws()
        await mgr.connect(slow, "slow", user_id=1, role="admin")
        await mgr.connect(fast, "fast", user_id=2, role="admin")
        await mgr.subscribe("slow", "product-webhooks")
        await mgr.subscribe("fast", "product-webhooks")

        payload = {"title": "x" * 60}
        for _ in range(4):
            await mgr.broadcast_to_room("product-webhooks", "product.updated", payload)
            while mgr.get("fast").buffered_bytes:
                await asyncio.sleep(0)

        slow.close.assert_awaited_once()
        assert slow.close.await_args.kwargs["code"] == OVERFLOW_CLOSE_CODE
        assert mgr.get("slow") is None
        await mgr.drain()
        assert len(_sent(fast)) == 4
        gate.set()
        await mgr.disconnect("fast")
