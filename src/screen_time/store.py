"""Async key-value persistence.

``SqliteStore`` is the concrete store, a single ``kv_store`` table in
SQLite accessed through aiosqlite. ``RecordStore`` sits on top of any
store and handles JSON records for the engine components: tolerant
loads (missing or malformed payloads come back as None) and
fire-and-forget saves. Saves race freely and the last write wins; the
in-memory state is authoritative and is reconciled from timestamps on
the next load.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

import aiosqlite

logger = logging.getLogger(__name__)


TIMER_KEY = "screen_time_timer_data"
DAILY_SCORE_KEY = "screen_time_daily_score"
SCORE_HISTORY_KEY = "screen_time_score_history"

ALL_KEYS = (TIMER_KEY, DAILY_SCORE_KEY, SCORE_HISTORY_KEY)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove_many(self, keys: Iterable[str]) -> None: ...


class SqliteStore:
    """Key-value store backed by one SQLite table."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def init(self) -> None:
        """Create the database file and table if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            # WAL so readers never block the server's writes
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await db.commit()

    async def get(self, key: str) -> Optional[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
            row = await cursor.fetchone()
        return row[0] if row else None

    async def set(self, key: str, value: str) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
            """, (key, value, datetime.now().isoformat()))
            await db.commit()

    async def remove_many(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        placeholders = ", ".join("?" for _ in keys)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(f"DELETE FROM kv_store WHERE key IN ({placeholders})", keys)
            await db.commit()


class RecordStore:
    """JSON records over a ``KeyValueStore`` with write-behind saves."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._pending: set[asyncio.Task] = set()

    async def load(self, key: str) -> Optional[dict]:
        """Read and decode a record. Failures are logged and return None."""
        try:
            raw = await self.store.get(key)
        except Exception as e:
            logger.warning("Storage read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Malformed payload for %s, using defaults: %s", key, e)
            return None
        if not isinstance(data, dict):
            logger.warning("Malformed payload for %s, expected an object", key)
            return None
        return data

    def save_nowait(self, key: str, record: dict) -> None:
        """Queue a write without waiting for it. Never raises."""
        try:
            payload = json.dumps(record)
            loop = asyncio.get_running_loop()
        except (TypeError, ValueError, RuntimeError) as e:
            logger.warning("Dropped write for %s: %s", key, e)
            return
        task = loop.create_task(self.store.set(key, payload))
        self._pending.add(task)
        task.add_done_callback(lambda t: self._write_done(key, t))

    def _write_done(self, key: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Storage write failed for %s: %s", key, exc)

    async def remove(self, keys: Iterable[str]) -> None:
        await self.flush()
        try:
            await self.store.remove_many(keys)
        except Exception as e:
            logger.warning("Storage remove failed: %s", e)

    async def flush(self) -> None:
        """Wait for every queued write to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)
