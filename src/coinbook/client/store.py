"""Local durable store for the client save queue.

One SQLite table behind ``aiosqlite``, so disk I/O runs off the event loop.
Every mutation commits on its own, so an op is on disk before ``enqueue``
returns and a crash at any point leaves each record in a state the queue can
resume from.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any

import aiosqlite

PENDING = "pending"
IN_FLIGHT = "in_flight"
RETRY_PENDING = "retry_pending"
FAILED_TERMINAL = "failed_terminal"

# Completed ops are deleted rather than stored
OP_STATES = (PENDING, IN_FLIGHT, RETRY_PENDING, FAILED_TERMINAL)
SENDABLE_STATES = (PENDING, RETRY_PENDING)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS save_ops (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    kind TEXT NOT NULL,
    payload TEXT NOT NULL,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
)
"""


@dataclass
class SaveOp:
    seq: int
    idempotency_key: str
    kind: str
    payload: dict[str, Any]
    state: str
    attempts: int = 0
    last_error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> SaveOp:
        return cls(
            seq=row["seq"],
            idempotency_key=row["idempotency_key"],
            kind=row["kind"],
            payload=json.loads(row["payload"]),
            state=row["state"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


class SaveOpStore:
    """SQLite-backed op log. ``path=":memory:"`` gives a throwaway store for tests.

    Call ``connect()`` (or use ``SaveOpStore.open``) before anything else.
    """

    def __init__(self, path: str = "coinbook-saves.db") -> None:
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    @classmethod
    async def open(cls, path: str = "coinbook-saves.db") -> SaveOpStore:
        store = cls(path)
        await store.connect()
        return store

    async def connect(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA journal_mode=WAL;")
        await self.conn.execute("PRAGMA synchronous=NORMAL;")
        await self.conn.execute(_SCHEMA)
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _write(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        assert self.conn
        cursor = await self.conn.execute(sql, params)
        rowcount = cursor.rowcount
        await cursor.close()
        await self.conn.commit()
        return rowcount

    async def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> SaveOp | None:
        assert self.conn
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return SaveOp.from_row(row) if row else None

    async def add(self, kind: str, payload: dict[str, Any], idempotency_key: str) -> SaveOp:
        """Persist a new pending op. Re-adding a known key returns the stored op."""
        now = time.time()
        await self._write(
            "INSERT OR IGNORE INTO save_ops (idempotency_key, kind, payload, state, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (idempotency_key, kind, json.dumps(payload), PENDING, now, now),
        )
        op = await self.by_key(idempotency_key)
        if op is None:
            msg = f"op {idempotency_key} vanished after insert"
            raise RuntimeError(msg)
        return op

    async def get(self, seq: int) -> SaveOp | None:
        return await self._fetchone("SELECT * FROM save_ops WHERE seq = ?", (seq,))

    async def by_key(self, idempotency_key: str) -> SaveOp | None:
        return await self._fetchone("SELECT * FROM save_ops WHERE idempotency_key = ?", (idempotency_key,))

    async def ops(self, *states: str) -> list[SaveOp]:
        """Ops in client sequence order, optionally filtered by state."""
        assert self.conn
        if states:
            marks = ",".join("?" for _ in states)
            cursor = await self.conn.execute(f"SELECT * FROM save_ops WHERE state IN ({marks}) ORDER BY seq", states)  # noqa: S608
        else:
            cursor = await self.conn.execute("SELECT * FROM save_ops ORDER BY seq")
        rows = await cursor.fetchall()
        await cursor.close()
        return [SaveOp.from_row(r) for r in rows]

    async def next_sendable(self) -> SaveOp | None:
        marks = ",".join("?" for _ in SENDABLE_STATES)
        return await self._fetchone(
            f"SELECT * FROM save_ops WHERE state IN ({marks}) ORDER BY seq LIMIT 1",  # noqa: S608
            SENDABLE_STATES,
        )

    async def set_state(self, seq: int, state: str, *, attempts: int | None = None, error: str | None = None) -> None:
        if state not in OP_STATES:
            msg = f"unknown op state {state!r}"
            raise ValueError(msg)
        if attempts is None:
            await self._write(
                "UPDATE save_ops SET state = ?, last_error = ?, updated_at = ? WHERE seq = ?",
                (state, error, time.time(), seq),
            )
        else:
            await self._write(
                "UPDATE save_ops SET state = ?, attempts = ?, last_error = ?, updated_at = ? WHERE seq = ?",
                (state, attempts, error, time.time(), seq),
            )

    async def remove(self, *seqs: int) -> None:
        if not seqs:
            return
        marks = ",".join("?" for _ in seqs)
        await self._write(f"DELETE FROM save_ops WHERE seq IN ({marks})", seqs)  # noqa: S608

    async def demote_in_flight(self) -> int:
        """After a restart nothing is actually in flight; make those ops sendable again."""
        return await self._write(
            "UPDATE save_ops SET state = ?, updated_at = ? WHERE state = ?",
            (PENDING, time.time(), IN_FLIGHT),
        )

    async def reset_failed(self) -> int:
        return await self._write(
            "UPDATE save_ops SET state = ?, attempts = 0, last_error = NULL, updated_at = ? WHERE state = ?",
            (PENDING, time.time(), FAILED_TERMINAL),
        )
