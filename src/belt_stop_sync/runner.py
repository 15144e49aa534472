"""Script-friendly entry points: headless sync and CSV export.

Both wrap an async coroutine with ``asyncio.run`` and map the outcome to a
process exit code (0 success, 1 error, 130 interrupted).
"""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import date
from typing import Optional

from .export import (
    ALL_FILENAME,
    day_filename,
    export_all_csv,
    export_day_csv,
    export_month_csv,
    month_filename,
)
from .session import SessionController, SessionOptions, SyncStatus
from .store import EventStore, SqliteEventStore, StorageError
from .transport import DeviceSelector, Transport

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2


async def headless_session(
    transport: Transport,
    store: EventStore,
    selector: DeviceSelector,
    options: Optional[SessionOptions] = None,
    exit_after_sync: bool = False,
) -> bool:
    """Connect, answer the device and store its events without a UI.

    Runs until the link drops, or, with ``exit_after_sync``, until the first
    sync round trip finishes.

    Returns:
        True when ``exit_after_sync`` is set and the sync completed; False
        when the link dropped or the sync failed.
    """
    session = await SessionController.create(transport, store, options=options)
    loop_task = asyncio.create_task(session.run())
    try:
        await session.submit(lambda: session.connect(selector), "Connect")
        logger.info("Connected to %s, waiting for device", session.device_name)

        while session.is_connected:
            if exit_after_sync and session.sync_status in (
                SyncStatus.COMPLETE,
                SyncStatus.NOT_COMPLETE,
            ):
                break
            await asyncio.sleep(POLL_INTERVAL)

        if exit_after_sync and session.sync_status == SyncStatus.COMPLETE:
            logger.info(
                "Sync finished: %d events received, last index %d",
                session.telemetry.events_received,
                session.state.last_sync_acked_index,
            )
            return True
        logger.error("Session ended: %s", session.last_error or "connection lost")
        return False
    finally:
        await session.teardown()
        await loop_task


def run_headless(
    transport: Transport,
    db_path: str,
    selector: DeviceSelector,
    options: Optional[SessionOptions] = None,
    exit_after_sync: bool = False,
) -> int:
    """Blocking wrapper around ``headless_session`` returning an exit code."""
    try:
        store = SqliteEventStore(db_path)
    except StorageError as e:
        logger.error("❌ %s", e)
        return 1
    try:
        ok = asyncio.run(
            headless_session(
                transport,
                store,
                selector,
                options=options,
                exit_after_sync=exit_after_sync,
            )
        )
        return 0 if ok else 1
    except KeyboardInterrupt:
        return 130
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1
    finally:
        store.close_sync()


async def export_csv(
    store: EventStore,
    kind: str,
    day: Optional[date] = None,
    year_month: Optional[tuple[int, int]] = None,
) -> tuple[str, str]:
    """Render one export. Returns ``(default_filename, csv_text)``.

    Args:
        kind: ``"day"``, ``"month"`` or ``"all"``.
        day: Day to export; today when omitted.
        year_month: ``(year, month)`` to export; the current month when omitted.
    """
    if kind == "day":
        day = day or date.today()
        return day_filename(day), await export_day_csv(store, day)
    if kind == "month":
        if year_month is None:
            today = date.today()
            year_month = (today.year, today.month)
        year, month = year_month
        return month_filename(year, month), await export_month_csv(store, year, month)
    if kind == "all":
        return ALL_FILENAME, await export_all_csv(store)
    raise ValueError(f"Unknown export kind: {kind}")


def run_export(
    db_path: str,
    kind: str,
    day: Optional[date] = None,
    year_month: Optional[tuple[int, int]] = None,
    output: Optional[str] = None,
) -> int:
    """Write a CSV export to ``output`` (``-`` for stdout, default file name otherwise)."""
    try:
        store = SqliteEventStore(db_path)
    except StorageError as e:
        logger.error("❌ %s", e)
        return 1
    try:
        filename, text = asyncio.run(export_csv(store, kind, day, year_month))
    except ValueError as e:
        logger.error("❌ %s", e)
        return 1
    except Exception as e:
        logger.exception("Export failed: %s", e)
        return 1
    finally:
        store.close_sync()

    if output == "-":
        sys.stdout.write(text)
        return 0
    target = output or filename
    try:
        with open(target, "w", encoding="utf-8", newline="") as f:
            f.write(text)
    except OSError as e:
        logger.error("❌ Cannot write %s: %s", target, e)
        return 1
    logger.info("📄 Wrote %s", target)
    return 0
