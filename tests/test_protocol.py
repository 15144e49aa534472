"""Tests for inbound line decoding and outbound command encoding."""

import pytest

from belt_stop_sync.protocol import (
    Calibration,
    Hello,
    SetBreaks,
    SetCalibrationMode,
    SetSchedule,
    SetThresholds,
    SetTime,
    StopEventMessage,
    SyncAck,
    SyncDone,
    SyncRequest,
    encode_command,
    format_number,
    parse_line,
)


# --- Inbound ---


class TestParseStopEvent:
    def test_full_event(self):
        msg = parse_line("EV,1700000000,4523,17")
        assert msg == StopEventMessage(
            start_epoch_seconds=1700000000, duration_ms=4523, accum_stops=17
        )
        assert msg.degraded_fields == ()

    def test_event_without_counter(self):
        msg = parse_line("EV,1700000000,4523")
        assert isinstance(msg, StopEventMessage)
        assert msg.accum_stops is None

    def test_under_length_event_is_dropped(self):
        assert parse_line("EV,1700000000") is None
        assert parse_line("EV") is None

    def test_extra_fields_are_ignored(self):
        msg = parse_line("EV,1700000000,4523,17,extra,fields")
        assert msg == StopEventMessage(1700000000, 4523, 17)

    def test_malformed_duration_falls_back_to_zero(self):
        msg = parse_line("EV,1700000000,abc,17")
        assert msg.duration_ms == 0
        assert msg.degraded_fields == ("duration_ms",)


class TestParseHello:
    def test_fields(self):
        msg = parse_line("HELLO,BeltStop-01,FW,1.2.0,1,5,3900,17")
        assert isinstance(msg, Hello)
        assert msg.device_id == "BeltStop-01"
        assert msg.firmware_version == "1.2.0"
        assert msg.clock_synced is True
        assert msg.unsent_count == 5
        assert msg.battery_mv == 3900
        assert msg.accum_stops == 17

    def test_clock_not_synced(self):
        assert parse_line("HELLO,BeltStop-01,FW,1.2.0,0,0,3900,0").clock_synced is False

    def test_short_hello_is_dropped(self):
        assert parse_line("HELLO,BeltStop-01,FW,1.2.0,1,5,3900") is None


class TestParseCalibration:
    def test_value(self):
        assert parse_line("CAL,0.031250") == Calibration(0.03125)

    def test_not_a_number_reads_as_zero(self):
        msg = parse_line("CAL,notanumber")
        assert msg.vibration_g == 0.0
        assert msg.degraded_fields == ("vibration_g",)


class TestParseSync:
    def test_done(self):
        assert parse_line("SYNC,DONE,42") == SyncDone(42)

    def test_done_with_nothing_replayed(self):
        assert parse_line("SYNC,DONE,-1") == SyncDone(-1)

    def test_short_done_is_dropped(self):
        assert parse_line("SYNC,DONE") is None

    def test_other_sync_kinds_are_ignored(self):
        assert parse_line("SYNC,REQ") is None
        assert parse_line("SYNC,ACK,3") is None


class TestUnknownLines:
    @pytest.mark.parametrize("line", ["", "FOO,1,2", "ev,1700000000,4523", "garbage"])
    def test_unknown_kind_returns_none(self, line):
        assert parse_line(line) is None

    def test_whitespace_around_fields(self):
        assert parse_line(" EV , 1700000000 , 4523 ") == StopEventMessage(1700000000, 4523)


# --- Outbound ---


class TestEncodeCommands:
    def test_time(self):
        assert SetTime(1700000000, 60).encode() == "TIME,UTC,1700000000,60\n"

    def test_negative_offset(self):
        assert SetTime(1700000000, -300).encode() == "TIME,UTC,1700000000,-300\n"

    def test_schedule(self):
        assert SetSchedule(360, 1320, True).encode() == "CFG,SCHED,360,1320,1\n"
        assert SetSchedule(0, 0, False).encode() == "CFG,SCHED,0,0,0\n"

    def test_breaks(self):
        assert (
            SetBreaks(600, 615, 720, 750, False).encode()
            == "CFG,BREAKS,600,615,720,750,0\n"
        )

    def test_thresholds(self):
        assert (
            SetThresholds(0.05, 0.01, 5, 3).encode() == "CFG,THRESH,0.05,0.01,5,3\n"
        )

    def test_integral_float_has_no_fraction(self):
        assert SetThresholds(1.0, 0.5, 5, 3).encode() == "CFG,THRESH,1,0.5,5,3\n"

    def test_calibration_mode(self):
        assert SetCalibrationMode(True).encode() == "MODE,CALIB,ON\n"
        assert SetCalibrationMode(False).encode() == "MODE,CALIB,OFF\n"

    def test_sync(self):
        assert SyncRequest().encode() == "SYNC,REQ\n"
        assert SyncAck(42).encode() == "SYNC,ACK,42\n"

    def test_encode_command_is_ascii_bytes(self):
        assert encode_command(SyncAck(7)) == b"SYNC,ACK,7\n"


class TestFormatNumber:
    def test_bool(self):
        assert format_number(True) == "1"
        assert format_number(False) == "0"

    def test_small_float_has_no_exponent(self):
        assert format_number(0.00001) == "0.00001"

    def test_integer(self):
        assert format_number(1320) == "1320"
