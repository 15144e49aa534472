"""Durable storage for stop events and operator settings.

The session talks to storage only through the ``EventStore`` interface.
``SqliteEventStore`` is the implementation used by the CLI and dashboard; it
keeps two tables:

- ``events``: auto-increment ``id`` plus the stop event fields, indexed by
  ``start_epoch`` for range queries.
- ``settings``: key/value pairs, values stored as JSON text.

Each append is a single INSERT, so no cross-record transactions are needed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional, Union

from .models import StopEvent

logger = logging.getLogger(__name__)


DEFAULT_DB_FILENAME = "beltstop.db"


class StorageError(RuntimeError):
    """A persistence operation failed; the caller decides what to do."""


class EventStore(ABC):
    """Asynchronous storage interface required by the session controller."""

    @abstractmethod
    async def append_event(self, event: StopEvent) -> int:
        """Persist ``event`` and return its newly assigned identity key."""

    @abstractmethod
    async def query_events_in_range(
        self, from_epoch_seconds: int, to_epoch_seconds: int
    ) -> list[StopEvent]:
        """Events whose start lies in the inclusive range, oldest first."""

    @abstractmethod
    async def all_events(self) -> list[StopEvent]:
        """Every stored event, oldest first."""

    @abstractmethod
    async def get_setting(self, key: str, default: Any = None) -> Any:
        """Stored value for ``key`` or ``default`` when unset."""

    @abstractmethod
    async def put_setting(self, key: str, value: Any) -> None:
        """Store a JSON-serializable ``value`` under ``key``."""

    async def close(self) -> None:
        """Release underlying resources."""


_SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    start_epoch INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL,
    device_id TEXT NOT NULL,
    accum_stops INTEGER
);
CREATE INDEX IF NOT EXISTS idx_events_start_epoch ON events (start_epoch);
CREATE TABLE IF NOT EXISTS settings (
    k TEXT PRIMARY KEY,
    v TEXT NOT NULL
);
"""


class SqliteEventStore(EventStore):
    """SQLite-backed event store.

    Statements run in a worker thread via ``asyncio.to_thread`` so the event
    loop is not blocked by disk I/O; a lock serializes them because the same
    connection is shared across threads.

    Args:
        path: Database file, or ``":memory:"`` for a throwaway store.
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_DB_FILENAME) -> None:
        self._path = str(path)
        self._lock = threading.Lock()
        try:
            if self._path != ":memory:":
                Path(self._path).parent.mkdir(parents=True, exist_ok=True)
            # AUTOINCREMENT keeps ids from being reused after deletes
            self._conn: Optional[sqlite3.Connection] = sqlite3.connect(
                self._path, check_same_thread=False, isolation_level=None
            )
            self._conn.executescript(_SCHEMA)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open event store {self._path}: {e}") from e
        logger.info("Event store opened: %s", self._path)

    @property
    def path(self) -> str:
        return self._path

    def _run(self, sql: str, params: tuple = (), fetch: str = "none") -> Any:
        """Execute one statement under the lock.

        ``fetch`` selects the result: ``"all"`` rows, ``"one"`` row,
        ``"rowid"`` of an INSERT, or nothing.
        """
        with self._lock:
            if self._conn is None:
                raise StorageError("Event store is closed")
            try:
                cur = self._conn.execute(sql, params)
                if fetch == "all":
                    return cur.fetchall()
                if fetch == "one":
                    return cur.fetchone()
                if fetch == "rowid":
                    return cur.lastrowid
                return None
            except (sqlite3.Error, OverflowError, ValueError) as e:
                raise StorageError(f"{type(e).__name__}: {e}") from e

    def _fetch_events(self, sql: str, params: tuple = ()) -> list[StopEvent]:
        rows = self._run(sql, params, fetch="all")
        return [
            StopEvent(
                start_epoch_seconds=row[0],
                duration_ms=row[1],
                device_id=row[2],
                accum_stops=row[3],
            )
            for row in rows
        ]

    # Synchronous primitives (also used directly by export tooling)

    def append_event_sync(self, event: StopEvent) -> int:
        event_id = self._run(
            "INSERT INTO events (start_epoch, duration_ms, device_id, accum_stops) "
            "VALUES (?, ?, ?, ?)",
            (
                event.start_epoch_seconds,
                event.duration_ms,
                event.device_id,
                event.accum_stops,
            ),
            fetch="rowid",
        )
        logger.debug("Stored event id=%s: %s", event_id, event)
        return int(event_id) if event_id is not None else -1

    def query_events_in_range_sync(
        self, from_epoch_seconds: int, to_epoch_seconds: int
    ) -> list[StopEvent]:
        return self._fetch_events(
            "SELECT start_epoch, duration_ms, device_id, accum_stops FROM events "
            "WHERE start_epoch BETWEEN ? AND ? ORDER BY start_epoch, id",
            (from_epoch_seconds, to_epoch_seconds),
        )

    def all_events_sync(self) -> list[StopEvent]:
        return self._fetch_events(
            "SELECT start_epoch, duration_ms, device_id, accum_stops FROM events "
            "ORDER BY start_epoch, id"
        )

    def get_setting_sync(self, key: str, default: Any = None) -> Any:
        row = self._run("SELECT v FROM settings WHERE k = ?", (key,), fetch="one")
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("Corrupt setting %r ignored", key)
            return default

    def put_setting_sync(self, key: str, value: Any) -> None:
        self._run(
            "INSERT OR REPLACE INTO settings (k, v) VALUES (?, ?)",
            (key, json.dumps(value)),
        )
        logger.debug("Setting saved: %s=%r", key, value)

    # EventStore interface

    async def append_event(self, event: StopEvent) -> int:
        return await asyncio.to_thread(self.append_event_sync, event)

    async def query_events_in_range(
        self, from_epoch_seconds: int, to_epoch_seconds: int
    ) -> list[StopEvent]:
        return await asyncio.to_thread(
            self.query_events_in_range_sync, from_epoch_seconds, to_epoch_seconds
        )

    async def all_events(self) -> list[StopEvent]:
        return await asyncio.to_thread(self.all_events_sync)

    async def get_setting(self, key: str, default: Any = None) -> Any:
        return await asyncio.to_thread(self.get_setting_sync, key, default)

    async def put_setting(self, key: str, value: Any) -> None:
        await asyncio.to_thread(self.put_setting_sync, key, value)

    async def close(self) -> None:
        await asyncio.to_thread(self.close_sync)

    def close_sync(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
                logger.info("Event store closed: %s", self._path)
