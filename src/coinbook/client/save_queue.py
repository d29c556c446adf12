"""Client-side durable save queue for ranking and activity mutations.

Ops are written to the local store before ``enqueue`` returns and are sent
one at a time in client sequence order. Each op keeps its idempotency key
across retries, so the server applies it at most once however many times
it is delivered.

Ranking saves are full snapshots: when several are waiting, only the newest
is sent and the older ones are dropped.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx
import structlog

from coinbook.client.store import (
    FAILED_TERMINAL,
    IN_FLIGHT,
    RETRY_PENDING,
    SENDABLE_STATES,
    SaveOp,
    SaveOpStore,
)

logger = structlog.get_logger()

RANKINGS = "rankings"
ACTIVITY = "activity"

MSG_RETRYING = "Save failed, will retry"
MSG_FAILED = "Save failed after {attempts} attempts"

StatusListener = Callable[[SaveOp, str], None]


class _Retry(Exception):
    """Network error or 5xx: the same op should be sent again."""


class _Terminal(Exception):
    """The server rejected the op for good."""


class DurableSaveQueue:
    """Single-flight FIFO delivery with backoff, coalescing and startup replay."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SaveOpStore,
        *,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        backoff_factor: float = 2.0,
        on_status: StatusListener | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.store = store
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.on_status = on_status
        self._sleep = sleep
        self._task: asyncio.Task | None = None
        self._kicked = False

    # ── Public API ──

    async def start(self) -> int:
        """Resume after a reload: in-flight records become pending and draining restarts."""
        demoted = await self.store.demote_in_flight()
        waiting = len(await self.store.ops(*SENDABLE_STATES))
        if waiting:
            logger.info("save_queue_replay", waiting=waiting, demoted=demoted)
            self._kick()
        return waiting

    async def enqueue(self, kind: str, payload: dict[str, Any], idempotency_key: str | None = None) -> SaveOp:
        """Persist an op, then schedule delivery. Returns once the op is durable."""
        if kind not in (RANKINGS, ACTIVITY):
            msg = f"unknown op kind {kind!r}"
            raise ValueError(msg)
        op = await self.store.add(kind, payload, idempotency_key or str(uuid.uuid4()))
        self._kick()
        return op

    async def save_rankings(self, entries: Sequence[tuple[int, int]], idempotency_key: str | None = None) -> SaveOp:
        """Queue a full ranking snapshot of (position, product_id) pairs."""
        payload = {"rankings": [{"position": p, "product_id": pid} for p, pid in entries]}
        return await self.enqueue(RANKINGS, payload, idempotency_key)

    async def record_activity(self, kind: str, idempotency_key: str | None = None, **fields: Any) -> SaveOp:  # noqa: ANN401
        key = idempotency_key or str(uuid.uuid4())
        return await self.enqueue(ACTIVITY, {"kind": kind, "idempotency_key": key, **fields}, key)

    async def wait_for_idle(self) -> None:
        """Resolve once nothing is pending, retrying or in flight."""
        while True:
            task = self._task
            if task is not None and not task.done():
                await asyncio.shield(task)
                continue
            if not await self.store.ops(*SENDABLE_STATES, IN_FLIGHT):
                return
            self._kick()

    async def failed(self) -> list[SaveOp]:
        return await self.store.ops(FAILED_TERMINAL)

    async def retry_failed(self) -> int:
        """Manual retry of ops that exhausted their attempts."""
        count = await self.store.reset_failed()
        if count:
            self._kick()
        return count

    async def close(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    # ── Drain loop ──

    def _kick(self) -> None:
        self._kicked = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while True:
            self._kicked = False
            await self._coalesce()
            op = await self.store.next_sendable()
            if op is None:
                # An enqueue may have committed after the read above
                if self._kicked:
                    continue
                return
            await self._deliver(op)

    async def _coalesce(self) -> None:
        """Keep only the newest waiting ranking snapshot."""
        waiting = [op for op in await self.store.ops(*SENDABLE_STATES) if op.kind == RANKINGS]
        if len(waiting) > 1:
            superseded = [op.seq for op in waiting[:-1]]
            await self.store.remove(*superseded)
            logger.debug("save_queue_coalesced", dropped=superseded, kept=waiting[-1].seq)

    async def _deliver(self, op: SaveOp) -> None:
        attempts = op.attempts
        while True:
            attempts += 1
            await self.store.set_state(op.seq, IN_FLIGHT, attempts=attempts)
            try:
                await self._send(op)
            except _Terminal as exc:
                await self.store.set_state(op.seq, FAILED_TERMINAL, error=str(exc))
                logger.warning("save_rejected", seq=op.seq, key=op.idempotency_key, error=str(exc))
                self._notify(op, MSG_FAILED.format(attempts=attempts))
                return
            except _Retry as exc:
                if attempts >= self.max_attempts:
                    await self.store.set_state(op.seq, FAILED_TERMINAL, error=str(exc))
                    logger.warning("save_failed", seq=op.seq, key=op.idempotency_key, attempts=attempts)
                    self._notify(op, MSG_FAILED.format(attempts=attempts))
                    return
                await self.store.set_state(op.seq, RETRY_PENDING, error=str(exc))
                self._notify(op, MSG_RETRYING)
                delay = self.backoff_base * self.backoff_factor ** (attempts - 1)
                logger.info("save_retrying", seq=op.seq, attempt=attempts, delay=delay, error=str(exc))
                await self._sleep(delay)
                continue
            await self.store.remove(op.seq)
            logger.debug("save_acknowledged", seq=op.seq, key=op.idempotency_key)
            return

    async def _send(self, op: SaveOp) -> None:
        headers = {"Idempotency-Key": op.idempotency_key, "X-Client-Sequence": str(op.seq)}
        try:
            if op.kind == RANKINGS:
                response = await self.client.put("/api/v1/rankings", json=op.payload, headers=headers)
            else:
                response = await self.client.post("/api/v1/activity", json=op.payload, headers=headers)
        except httpx.TransportError as exc:
            raise _Retry(f"network error: {exc}") from exc

        if response.is_success or response.status_code == 409:
            # 409 means the key was already applied on the server
            return
        if response.status_code >= 500:
            raise _Retry(f"server error {response.status_code}")
        raise _Terminal(f"rejected with {response.status_code}: {response.text[:200]}")

    def _notify(self, op: SaveOp, message: str) -> None:
        if self.on_status is not None:
            self.on_status(op, message)
