"""Tests for CSV export and per-hour summaries."""

import csv
import io
from datetime import date, timezone

import pytest

from belt_stop_sync.export import (
    CSV_HEADER,
    day_filename,
    day_range,
    export_all_csv,
    export_day_csv,
    export_month_csv,
    format_duration_hms,
    hourly_summary,
    month_filename,
    month_range,
    to_csv,
)
from belt_stop_sync.models import StopEvent

UTC = timezone.utc

# 2023-11-14 22:13:20 UTC
EV = StopEvent(1_700_000_000, 4523, "BeltStop-01", 17)


class TestFormatting:
    @pytest.mark.parametrize(
        "ms, expected",
        [
            (0, "00:00:00.000"),
            (4523, "00:00:04.523"),
            (61_001, "00:01:01.001"),
            (3_600_000, "01:00:00.000"),
            (90_000_000, "25:00:00.000"),
        ],
    )
    def test_duration_hms(self, ms, expected):
        assert format_duration_hms(ms) == expected

    def test_csv_rows(self):
        text = to_csv([EV, StopEvent(1_700_000_100, 10, "", None)], tz=UTC)
        rows = list(csv.reader(io.StringIO(text)))
        assert rows[0] == CSV_HEADER
        assert rows[1] == [
            "2023-11-14",
            "2023-11-14T22:13:20Z",
            "4523",
            "00:00:04.523",
            "BeltStop-01",
            "17",
        ]
        assert rows[2][4:] == ["unknown", ""]

    def test_empty_export_has_header_only(self):
        assert to_csv([], tz=UTC) == ",".join(CSV_HEADER) + "\n"

    def test_filenames(self):
        assert day_filename(date(2024, 3, 5)) == "beltstop-day-2024-03-05.csv"
        assert month_filename(2024, 3) == "beltstop-month-2024-03.csv"


class TestRanges:
    def test_day_range_is_full_day(self):
        start, end = day_range(date(2023, 11, 14), UTC)
        assert start == 1_699_920_000
        assert end - start == 86399

    def test_month_range(self):
        start, end = month_range(2024, 2, UTC)
        assert end - start + 1 == 29 * 86400

    def test_december_rolls_over(self):
        start, end = month_range(2023, 12, UTC)
        assert end + 1 == day_range(date(2024, 1, 1), UTC)[0]

    def test_bad_month(self):
        with pytest.raises(ValueError):
            month_range(2024, 13, UTC)


class TestStoreExports:
    async def test_day_export_selects_only_that_day(self, store):
        await store.append_event(EV)
        await store.append_event(StopEvent(1_700_000_000 + 86400, 1, "BeltStop-01"))
        text = await export_day_csv(store, date(2023, 11, 14), UTC)
        assert text.count("\n") == 2
        assert "2023-11-14T22:13:20Z" in text

    async def test_month_and_all(self, store):
        await store.append_event(EV)
        await store.append_event(StopEvent(1_702_000_000, 1, "BeltStop-01"))
        month = await export_month_csv(store, 2023, 11, UTC)
        everything = await export_all_csv(store, UTC)
        assert month.count("\n") == 2
        assert everything.count("\n") == 3


class TestHourlySummary:
    def test_counts_and_minutes(self):
        events = [EV, StopEvent(1_700_000_060, 60_000, "BeltStop-01")]
        counts, minutes = hourly_summary(events, date(2023, 11, 14), UTC)
        assert counts[22] == 2
        assert sum(counts) == 2
        assert minutes[22] == pytest.approx(4523 / 60000 + 1.0)

    def test_other_days_are_skipped(self):
        counts, _ = hourly_summary([EV], date(2023, 11, 15), UTC)
        assert sum(counts) == 0
