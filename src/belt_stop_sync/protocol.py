"""ASCII line protocol spoken by the belt-stop sensor firmware.

Every message is one line of comma-separated ASCII fields terminated by
``\\n``; the first field names the message kind.

Device to client:

    HELLO,<deviceId>,FW,<version>,<clockSync>,<unsent>,<batteryMv>,<accumStops>
    CAL,<vibrationG>
    EV,<startEpochSeconds>,<durationMs>[,<accumStops>]
    SYNC,DONE,<lastIndex>

Client to device:

    TIME,UTC,<epochSeconds>,<tzOffsetMinutes>
    CFG,SCHED,<startMin>,<endMin>,<enabled>
    CFG,BREAKS,<b1StartMin>,<b1EndMin>,<b2StartMin>,<b2EndMin>,<enabled>
    CFG,THRESH,<thresholdG>,<hysteresisG>,<secondsDown>,<secondsUp>
    MODE,CALIB,ON|OFF
    SYNC,REQ
    SYNC,ACK,<index>

Parsing is lenient. Extra trailing fields are ignored and a
numeric field that fails to decode becomes zero instead of rejecting the
line; the names of such fields are recorded in ``degraded_fields``. Lines
that are too short for their kind, and lines of unknown kind, parse to
``None``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional, Union

logger = logging.getLogger(__name__)


LINE_TERMINATOR = "\n"
FIELD_SEPARATOR = ","


# --- Field decoding -----------------------------------------------------------


class _FieldReader:
    """Decode numeric fields with zero fallback, remembering which ones failed."""

    def __init__(self, parts: list[str]) -> None:
        self._parts = parts
        self.degraded: list[str] = []

    def text(self, index: int) -> str:
        return self._parts[index]

    def integer(self, index: int, name: str) -> int:
        return self._number(index, name, int, 0)

    def real(self, index: int, name: str) -> float:
        return self._number(index, name, float, 0.0)

    def _number(
        self,
        index: int,
        name: str,
        convert: Callable[[str], Union[int, float]],
        fallback: Union[int, float],
    ) -> Union[int, float]:
        raw = self._parts[index]
        try:
            return convert(raw)
        except ValueError:
            logger.debug("Malformed %s field %r, using %r", name, raw, fallback)
            self.degraded.append(name)
            return fallback


def format_number(value: Union[int, float]) -> str:
    """Render a number for the wire: plain decimal, no locale, no grouping.

    Integral floats are written without a fractional part (``1.0`` -> ``1``)
    which is what the firmware's parser expects.
    """
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        text = repr(value)
        if "e" in text:
            # No exponent notation on the wire
            text = f"{value:.12f}".rstrip("0").rstrip(".")
        return text
    return str(int(value))


def _join(*fields: Union[str, int, float]) -> str:
    rendered = [f if isinstance(f, str) else format_number(f) for f in fields]
    return FIELD_SEPARATOR.join(rendered) + LINE_TERMINATOR


# --- Inbound messages ---------------------------------------------------------


@dataclass(frozen=True)
class Hello:
    """Announcement the device sends once after each connection.

    Attributes:
        device_id: Identifier configured in the firmware (e.g. ``BeltStop-01``).
        firmware_version: Free-form version string following the ``FW`` marker.
        clock_synced: Whether the device clock has been set since boot.
        unsent_count: Number of stored events not yet acknowledged by a sync.
        battery_mv: Battery voltage in millivolts.
        accum_stops: Running stop counter for the current shift.
        degraded_fields: Names of numeric fields that failed to decode.
    """

    device_id: str
    firmware_version: str
    clock_synced: bool
    unsent_count: int
    battery_mv: int
    accum_stops: int
    degraded_fields: tuple[str, ...] = ()

    MIN_FIELDS = 8

    @staticmethod
    def from_fields(parts: list[str]) -> "Hello":
        reader = _FieldReader(parts)
        return Hello(
            device_id=reader.text(1),
            firmware_version=reader.text(3),
            clock_synced=reader.integer(4, "clock_synced") != 0,
            unsent_count=reader.integer(5, "unsent_count"),
            battery_mv=reader.integer(6, "battery_mv"),
            accum_stops=reader.integer(7, "accum_stops"),
            degraded_fields=tuple(reader.degraded),
        )


@dataclass(frozen=True)
class Calibration:
    """Vibration amplitude streamed while calibration mode is on."""

    vibration_g: float
    degraded_fields: tuple[str, ...] = ()

    MIN_FIELDS = 2

    @staticmethod
    def from_fields(parts: list[str]) -> "Calibration":
        reader = _FieldReader(parts)
        vibration_g = reader.real(1, "vibration_g")
        return Calibration(
            vibration_g=vibration_g, degraded_fields=tuple(reader.degraded)
        )


@dataclass(frozen=True)
class StopEventMessage:
    """One completed belt stop as reported on the wire.

    ``accum_stops`` is optional on the wire; older firmware sends only the
    start time and duration.
    """

    start_epoch_seconds: int
    duration_ms: int
    accum_stops: Optional[int] = None
    degraded_fields: tuple[str, ...] = ()

    MIN_FIELDS = 3

    @staticmethod
    def from_fields(parts: list[str]) -> "StopEventMessage":
        reader = _FieldReader(parts)
        start = reader.integer(1, "start_epoch_seconds")
        duration = reader.integer(2, "duration_ms")
        accum = reader.integer(3, "accum_stops") if len(parts) > 3 else None
        return StopEventMessage(
            start_epoch_seconds=start,
            duration_ms=duration,
            accum_stops=accum,
            degraded_fields=tuple(reader.degraded),
        )


@dataclass(frozen=True)
class SyncDone:
    """End of a backlog replay; ``last_index`` is echoed back in the ACK."""

    last_index: int
    degraded_fields: tuple[str, ...] = ()

    MIN_FIELDS = 3

    @staticmethod
    def from_fields(parts: list[str]) -> "SyncDone":
        reader = _FieldReader(parts)
        last_index = reader.integer(2, "last_index")
        return SyncDone(
            last_index=last_index, degraded_fields=tuple(reader.degraded)
        )


InboundMessage = Union[Hello, Calibration, StopEventMessage, SyncDone]


def parse_line(line: str) -> Optional[InboundMessage]:
    """Parse one protocol line received from the device.

    Args:
        line: A single line without its terminator. Whitespace around fields
            is ignored.

    Returns:
        The typed message, or None when the kind is unknown or the line has
        fewer fields than its kind requires. This function never raises for
        malformed input.
    """
    parts = [p.strip() for p in line.strip().split(FIELD_SEPARATOR)]
    kind = parts[0]

    msg_type: Optional[type] = None
    if kind == "HELLO":
        msg_type = Hello
    elif kind == "CAL":
        msg_type = Calibration
    elif kind == "EV":
        msg_type = StopEventMessage
    elif kind == "SYNC" and len(parts) > 1 and parts[1] == "DONE":
        msg_type = SyncDone

    if msg_type is None:
        logger.debug("Ignoring line of unknown kind: %r", line)
        return None
    if len(parts) < msg_type.MIN_FIELDS:
        logger.debug(
            "Dropping short %s line (%d < %d fields): %r",
            kind,
            len(parts),
            msg_type.MIN_FIELDS,
            line,
        )
        return None

    msg: InboundMessage = msg_type.from_fields(parts)
    if msg.degraded_fields:
        logger.debug("Line %r decoded with fallbacks for %s", line, msg.degraded_fields)
    return msg


# --- Outbound commands --------------------------------------------------------


@dataclass(frozen=True)
class SetTime:
    """Push the host clock (UTC epoch seconds) and local offset east of UTC."""

    epoch_seconds: int
    tz_offset_minutes: int

    def encode(self) -> str:
        return _join("TIME", "UTC", self.epoch_seconds, self.tz_offset_minutes)


@dataclass(frozen=True)
class SetSchedule:
    """Daily detection window in minutes since local midnight."""

    start_min: int
    end_min: int
    enabled: bool

    def encode(self) -> str:
        return _join("CFG", "SCHED", self.start_min, self.end_min, self.enabled)


@dataclass(frozen=True)
class SetBreaks:
    """Two break windows during which stops are not counted."""

    b1_start_min: int
    b1_end_min: int
    b2_start_min: int
    b2_end_min: int
    enabled: bool

    def encode(self) -> str:
        return _join(
            "CFG",
            "BREAKS",
            self.b1_start_min,
            self.b1_end_min,
            self.b2_start_min,
            self.b2_end_min,
            self.enabled,
        )


@dataclass(frozen=True)
class SetThresholds:
    """Stop detection thresholds.

    Attributes:
        threshold_g: Vibration amplitude below which the belt counts as stopped.
        hysteresis_g: Band above the threshold required to count as running again.
        seconds_down: Seconds below threshold before a stop starts.
        seconds_up: Seconds above threshold + hysteresis before a stop ends.
    """

    threshold_g: float
    hysteresis_g: float
    seconds_down: int
    seconds_up: int

    def encode(self) -> str:
        return _join(
            "CFG",
            "THRESH",
            self.threshold_g,
            self.hysteresis_g,
            self.seconds_down,
            self.seconds_up,
        )


@dataclass(frozen=True)
class SetCalibrationMode:
    on: bool

    def encode(self) -> str:
        return _join("MODE", "CALIB", "ON" if self.on else "OFF")


@dataclass(frozen=True)
class SyncRequest:
    def encode(self) -> str:
        return _join("SYNC", "REQ")


@dataclass(frozen=True)
class SyncAck:
    index: int

    def encode(self) -> str:
        return _join("SYNC", "ACK", self.index)


OutboundCommand = Union[
    SetTime,
    SetSchedule,
    SetBreaks,
    SetThresholds,
    SetCalibrationMode,
    SyncRequest,
    SyncAck,
]


def encode_command(command: OutboundCommand) -> bytes:
    """Serialize an outbound command to the ASCII bytes written to the device."""
    return command.encode().encode("ascii")
