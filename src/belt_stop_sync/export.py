"""CSV export of stored stop events.

Output columns::

    date,start_iso8601,duration_ms,duration_hms,device_id,accum_stops

``date`` is the calendar day of the stop in the export time zone,
``start_iso8601`` is the UTC start time, ``accum_stops`` is empty when the
device did not report a counter.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import date, datetime, time, timezone, tzinfo
from typing import Iterable, Optional

from .models import StopEvent
from .store import EventStore

logger = logging.getLogger(__name__)


CSV_HEADER = [
    "date",
    "start_iso8601",
    "duration_ms",
    "duration_hms",
    "device_id",
    "accum_stops",
]

SECONDS_PER_DAY = 86400

ALL_FILENAME = "beltstop-all.csv"


def format_duration_hms(duration_ms: int) -> str:
    """``4523`` -> ``"00:00:04.523"``; hours are not capped at 24."""
    duration_ms = max(0, duration_ms)
    seconds, millis = divmod(duration_ms, 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{millis:03d}"


def format_start_iso(epoch_seconds: int) -> str:
    return (
        datetime.fromtimestamp(epoch_seconds, timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )


def to_csv(events: Iterable[StopEvent], tz: Optional[tzinfo] = None) -> str:
    """Render events as CSV text (``\\n`` line endings, header included).

    Args:
        events: Events in the order they should appear.
        tz: Time zone for the ``date`` column; defaults to the host's.
    """
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    count = 0
    for ev in events:
        local_day = datetime.fromtimestamp(ev.start_epoch_seconds, tz).date()
        writer.writerow(
            [
                local_day.isoformat(),
                format_start_iso(ev.start_epoch_seconds),
                ev.duration_ms,
                format_duration_hms(ev.duration_ms),
                ev.device_id or "unknown",
                "" if ev.accum_stops is None else ev.accum_stops,
            ]
        )
        count += 1
    logger.debug("Rendered %d events as CSV", count)
    return out.getvalue()


def day_range(day: date, tz: Optional[tzinfo] = None) -> tuple[int, int]:
    """Inclusive epoch-second range ``[midnight, midnight + 86399]`` for ``day``."""
    start = int(datetime.combine(day, time.min, tzinfo=tz).timestamp())
    return start, start + SECONDS_PER_DAY - 1


def month_range(year: int, month: int, tz: Optional[tzinfo] = None) -> tuple[int, int]:
    """Inclusive epoch-second range covering a calendar month."""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1..12, got {month}")
    first = datetime(year, month, 1, tzinfo=tz)
    if month == 12:
        following = datetime(year + 1, 1, 1, tzinfo=tz)
    else:
        following = datetime(year, month + 1, 1, tzinfo=tz)
    return int(first.timestamp()), int(following.timestamp()) - 1


def day_filename(day: date) -> str:
    return f"beltstop-day-{day.isoformat()}.csv"


def month_filename(year: int, month: int) -> str:
    return f"beltstop-month-{year}-{month:02d}.csv"


async def export_day_csv(
    store: EventStore, day: date, tz: Optional[tzinfo] = None
) -> str:
    from_epoch, to_epoch = day_range(day, tz)
    events = await store.query_events_in_range(from_epoch, to_epoch)
    logger.info("Exporting %d events for %s", len(events), day.isoformat())
    return to_csv(events, tz)


async def export_month_csv(
    store: EventStore, year: int, month: int, tz: Optional[tzinfo] = None
) -> str:
    from_epoch, to_epoch = month_range(year, month, tz)
    events = await store.query_events_in_range(from_epoch, to_epoch)
    logger.info("Exporting %d events for %d-%02d", len(events), year, month)
    return to_csv(events, tz)


async def export_all_csv(store: EventStore, tz: Optional[tzinfo] = None) -> str:
    events = await store.all_events()
    logger.info("Exporting all %d events", len(events))
    return to_csv(events, tz)


def hourly_summary(
    events: Iterable[StopEvent], day: date, tz: Optional[tzinfo] = None
) -> tuple[list[int], list[float]]:
    """Stop count and downtime minutes per local hour of ``day``."""
    counts = [0] * 24
    downtime = [0.0] * 24
    for ev in events:
        start = datetime.fromtimestamp(ev.start_epoch_seconds, tz)
        if start.date() != day:
            continue
        counts[start.hour] += 1
        downtime[start.hour] += ev.duration_ms / 60000.0
    return counts, downtime

