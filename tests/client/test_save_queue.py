"""Client durable save queue against a stubbed server."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from coinbook.client.save_queue import MSG_FAILED, MSG_RETRYING, DurableSaveQueue
from coinbook.client.store import FAILED_TERMINAL, IN_FLIGHT, PENDING, SaveOpStore

pytestmark = pytest.mark.asyncio


class StubServer:
    """Answers with a scripted list of status codes, then 200; records every request."""

    def __init__(self, statuses: list[int] | None = None) -> None:
        self.statuses = list(statuses or [])
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"ok": status < 400})

    @property
    def keys(self) -> list[str]:
        return [r.headers["Idempotency-Key"] for r in self.requests]

    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]


class GatedServer(StubServer):
    """Holds the first request open until ``release`` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.requests) == 1:
            self.started.set()
            await self.release.wait()
        return httpx.Response(200, json={"ok": True})


@pytest_asyncio.fixture
async def store() -> SaveOpStore:
    s = await SaveOpStore.open(":memory:")
    yield s
    await s.close()


@pytest.fixture
def make_queue(store: SaveOpStore) -> Callable[..., tuple[DurableSaveQueue, StubServer, AsyncMock]]:
    def _make(statuses: list[int] | None = None, **kwargs) -> tuple[DurableSaveQueue, StubServer, AsyncMock]:
        server = StubServer(statuses)
        client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://coinbook.test")
        sleep = AsyncMock()
        queue = DurableSaveQueue(client, store, sleep=sleep, **kwargs)
        return queue, server, sleep

    return _make


class TestDelivery:
    async def test_op_is_durable_before_send(self, make_queue, store):
        queue, server, _ = make_queue()

        op = await queue.save_rankings([(1, 10), (2, 11)], idempotency_key="k-1")

        assert op.state == PENDING
        assert await store.by_key("k-1") is not None
        await queue.wait_for_idle()
        assert await store.ops() == []
        assert server.keys == ["k-1"]
        assert server.requests[0].method == "PUT"
        assert server.requests[0].url.path == "/api/v1/rankings"

    async def test_fifo_order(self, make_queue):
        queue, server, _ = make_queue()

        await queue.record_activity("login", idempotency_key="a-1")
        await queue.save_rankings([(1, 10)], idempotency_key="r-1")
        await queue.record_activity("view", idempotency_key="a-2", product_id=10)
        await queue.wait_for_idle()

        assert server.keys == ["a-1", "r-1", "a-2"]
        assert server.bodies()[2] == {"kind": "view", "idempotency_key": "a-2", "product_id": 10}

    async def test_conflict_counts_as_applied(self, make_queue, store):
        queue, server, _ = make_queue([409])

        await queue.save_rankings([(1, 10)], idempotency_key="dup")
        await queue.wait_for_idle()

        assert len(server.requests) == 1
        assert await store.ops() == []

    async def test_unknown_kind(self, make_queue):
        queue, _, _ = make_queue()
        with pytest.raises(ValueError, match="unknown op kind"):
            await queue.enqueue("purchase", {})


class TestRetries:
    async def test_same_key_until_acknowledged(self, make_queue, store):
        statuses: list[str] = []
        queue, server, sleep = make_queue([503, 502], on_status=lambda op, msg: statuses.append(msg))

        await queue.save_rankings([(1, 10)], idempotency_key="retry-me")
        await queue.wait_for_idle()

        assert server.keys == ["retry-me"] * 3
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 2.0]
        assert statuses == [MSG_RETRYING, MSG_RETRYING]
        assert await store.ops() == []

    async def test_exhausted_retries_fail_terminally(self, make_queue, store):
        statuses: list[str] = []
        queue, server, _ = make_queue([500, 500, 500], on_status=lambda op, msg: statuses.append(msg))

        op = await queue.save_rankings([(1, 10)], idempotency_key="doomed")
        await queue.wait_for_idle()

        assert len(server.requests) == 3
        failed = await store.get(op.seq)
        assert failed.state == FAILED_TERMINAL
        assert failed.attempts == 3
        assert statuses[-1] == MSG_FAILED.format(attempts=3)
        assert (await queue.failed())[0].idempotency_key == "doomed"

    async def test_client_error_is_terminal_without_retry(self, make_queue, store):
        queue, server, sleep = make_queue([422])

        op = await queue.save_rankings([(1, 999)], idempotency_key="bad")
        await queue.wait_for_idle()

        assert len(server.requests) == 1
        sleep.assert_not_awaited()
        assert (await store.get(op.seq)).state == FAILED_TERMINAL
        assert "422" in (await store.get(op.seq)).last_error

    async def test_failure_does_not_block_later_ops(self, make_queue):
        queue, server, _ = make_queue([422])

        await queue.record_activity("review", idempotency_key="first")
        await queue.record_activity("login", idempotency_key="second")
        await queue.wait_for_idle()

        assert server.keys == ["first", "second"]

    async def test_manual_retry(self, make_queue, store):
        queue, server, _ = make_queue([500, 500, 500])

        await queue.save_rankings([(1, 10)], idempotency_key="again")
        await queue.wait_for_idle()
        assert await queue.retry_failed() == 1
        await queue.wait_for_idle()

        assert server.keys == ["again"] * 4
        assert await store.ops() == []

    async def test_network_errors_retry(self, store):
        calls = []

        def flaky(request: httpx.Request) -> httpx.Response:
            calls.append(request.headers["Idempotency-Key"])
            if len(calls) == 1:
                raise httpx.ConnectError("offline", request=request)
            return httpx.Response(200, json={})

        client = httpx.AsyncClient(transport=httpx.MockTransport(flaky), base_url="http://coinbook.test")
        queue = DurableSaveQueue(client, store, sleep=AsyncMock())

        await queue.record_activity("login", idempotency_key="net")
        await queue.wait_for_idle()

        assert calls == ["net", "net"]
        await client.aclose()


class TestCoalescing:
    async def test_only_newest_snapshot_sent(self, store):
        server = GatedServer()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://coinbook.test")
        queue = DurableSaveQueue(client, store, sleep=AsyncMock())

        await queue.record_activity("login", idempotency_key="a-0")
        await asyncio.wait_for(server.started.wait(), timeout=2)
        # Enqueue keeps returning while a send is in flight
        await queue.save_rankings([(1, 10)], idempotency_key="s-1")
        await queue.save_rankings([(1, 11), (2, 10)], idempotency_key="s-2")
        await queue.save_rankings([(1, 12), (2, 11), (3, 10)], idempotency_key="s-3")
        assert [op.idempotency_key for op in await store.ops(PENDING)] == ["s-1", "s-2", "s-3"]

        server.release.set()
        await asyncio.wait_for(queue.wait_for_idle(), timeout=2)

        assert server.keys == ["a-0", "s-3"]
        assert [e["product_id"] for e in server.bodies()[1]["rankings"]] == [12, 11, 10]
        await client.aclose()

    async def test_activity_never_coalesced(self, make_queue):
        queue, server, _ = make_queue()

        await queue.record_activity("view", idempotency_key="v-1", product_id=1)
        await queue.record_activity("view", idempotency_key="v-2", product_id=2)
        await queue.wait_for_idle()

        assert server.keys == ["v-1", "v-2"]


class TestStartupReplay:
    async def test_in_flight_ops_are_resent_with_their_key(self, make_queue, store):
        crashed = await store.add("rankings", {"rankings": [{"position": 1, "product_id": 10}]}, "mid-flight")
        await store.set_state(crashed.seq, IN_FLIGHT, attempts=1)
        queue, server, _ = make_queue()

        assert await queue.start() == 1
        await queue.wait_for_idle()

        assert server.keys == ["mid-flight"]
        assert await store.ops() == []

    async def test_nothing_to_replay(self, make_queue):
        queue, server, _ = make_queue()
        assert await queue.start() == 0
        await queue.wait_for_idle()
        assert server.requests == []

    async def test_re_adding_a_key_keeps_one_record(self, store):
        first = await store.add("activity", {"kind": "login"}, "same")
        second = await store.add("activity", {"kind": "login"}, "same")
        assert first.seq == second.seq
        assert len(await store.ops()) == 1

    async def test_ops_survive_reopening_the_file(self, tmp_path):
        path = str(tmp_path / "saves.db")
        before = await SaveOpStore.open(path)
        op = await before.add("activity", {"kind": "login", "idempotency_key": "on-disk"}, "on-disk")
        await before.set_state(op.seq, IN_FLIGHT, attempts=1)
        await before.close()

        after = await SaveOpStore.open(path)
        server = StubServer()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server), base_url="http://coinbook.test")
        queue = DurableSaveQueue(client, after, sleep=AsyncMock())

        assert await queue.start() == 1
        await queue.wait_for_idle()

        assert server.keys == ["on-disk"]
        assert await after.ops() == []
        await client.aclose()
        await after.close()
