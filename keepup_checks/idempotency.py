from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol


LOGGER = logging.getLogger("keepup-checks")

Clock = Callable[[], float]


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    value: str
    expires_at_ts: float

    def is_expired(self, now_ts: float) -> bool:
        return float(now_ts) >= float(self.expires_at_ts)


class IdempotencyStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None: ...

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool: ...


class MemoryIdempotencyStore:
    """
    Single-process store. Expired records read as absent.
    """

    def __init__(self, *, clock: Clock = time.time) -> None:
        self._clock = clock
        self._records: dict[str, IdempotencyRecord] = {}

    def _live(self, key: str) -> IdempotencyRecord | None:
        rec = self._records.get(key)
        if rec is None:
            return None
        if rec.is_expired(self._clock()):
            self._records.pop(key, None)
            return None
        return rec

    async def get(self, key: str) -> str | None:
        rec = self._live(key)
        return rec.value if rec else None

    async def get_record(self, key: str) -> IdempotencyRecord | None:
        return self._live(key)

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        self._records[key] = IdempotencyRecord(
            key=key, value=value, expires_at_ts=self._clock() + float(ttl_seconds)
        )

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        if self._live(key) is not None:
            return False
        await self.put(key, value, ttl_seconds=ttl_seconds)
        return True


class SqliteIdempotencyStore:
    """
    File-backed store that processes on the same host can share.

    put_if_absent() is a single conditional upsert: it inserts, or overwrites a
    row whose TTL has run out, and reports whether it won.
    """

    def __init__(self, path: str, *, clock: Clock = time.time) -> None:
        p = str(path or "").strip()
        if not p:
            raise ValueError("Missing db path")
        self.path = p
        self._clock = clock
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000;")
        return conn

    def _ensure_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS idempotency_flags (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL,
                  expires_at_ts REAL NOT NULL
                );
                """
            )
        finally:
            conn.close()

    def _get_record_sync(self, key: str) -> IdempotencyRecord | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT key, value, expires_at_ts FROM idempotency_flags WHERE key=?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        rec = IdempotencyRecord(key=str(row["key"]), value=str(row["value"]), expires_at_ts=float(row["expires_at_ts"]))
        if rec.is_expired(self._clock()):
            return None
        return rec

    def _put_sync(self, key: str, value: str, ttl_seconds: int) -> None:
        expires = self._clock() + float(ttl_seconds)
        conn = self._connect()
        try:
            conn.execute(
                "INSERT OR REPLACE INTO idempotency_flags (key, value, expires_at_ts) VALUES (?, ?, ?)",
                (key, value, expires),
            )
        finally:
            conn.close()

    def _put_if_absent_sync(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = self._clock()
        conn = self._connect()
        try:
            cur = conn.execute(
                """
                INSERT INTO idempotency_flags (key, value, expires_at_ts) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, expires_at_ts=excluded.expires_at_ts
                WHERE idempotency_flags.expires_at_ts <= ?
                """,
                (key, value, now + float(ttl_seconds), now),
            )
            return cur.rowcount > 0
        finally:
            conn.close()

    async def get(self, key: str) -> str | None:
        rec = await asyncio.to_thread(self._get_record_sync, key)
        return rec.value if rec else None

    async def get_record(self, key: str) -> IdempotencyRecord | None:
        return await asyncio.to_thread(self._get_record_sync, key)

    async def put(self, key: str, value: str, *, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._put_sync, key, value, int(ttl_seconds))

    async def put_if_absent(self, key: str, value: str, *, ttl_seconds: int) -> bool:
        return await asyncio.to_thread(self._put_if_absent_sync, key, value, int(ttl_seconds))


def open_store(path: str | None) -> IdempotencyStore:
    p = str(path or "").strip()
    if not p:
        return MemoryIdempotencyStore()
    return SqliteIdempotencyStore(p)


class IdempotencyGuard:
    """
    Check-then-act over a shared flag: should_trigger() before acting,
    mark_done() only after the action succeeded. Not atomic; two callers can
    both pass the check before either writes.
    """

    def __init__(self, store: IdempotencyStore, *, key: str, done_value: str, ttl_seconds: int) -> None:
        self.store = store
        self.key = key
        self.done_value = done_value
        self.ttl_seconds = int(ttl_seconds)

    async def is_done(self) -> bool:
        value = await self.store.get(self.key)
        return value == self.done_value

    async def should_trigger(self) -> bool:
        return not await self.is_done()

    async def mark_done(self) -> None:
        await self.store.put(self.key, self.done_value, ttl_seconds=self.ttl_seconds)

    async def claim(self) -> bool:
        """
        Write the flag only if no live record exists. Returns False if another
        writer got there first.
        """
        return await self.store.put_if_absent(self.key, self.done_value, ttl_seconds=self.ttl_seconds)
