"""Domain records shared by the session, the store and the exporters."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class StopEvent:
    """A completed belt stop, as persisted by the event store.

    Created from an ``EV`` line and never mutated afterwards. The store
    assigns the identity key; it is not part of the record.

    Attributes:
        start_epoch_seconds: Stop start in UTC epoch seconds (device clock).
        duration_ms: Length of the stop in milliseconds.
        device_id: Device that reported the stop.
        accum_stops: The device's shift counter after this stop, when sent.
    """

    start_epoch_seconds: int
    duration_ms: int
    device_id: str
    accum_stops: Optional[int] = None


class ConnectionPhase(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class SessionState:
    connection_phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    last_sync_acked_index: int = -1  # -1: nothing acknowledged yet


def minutes_to_hhmm(minutes: int) -> str:
    """``375`` -> ``"06:15"``."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def hhmm_to_minutes(value: str) -> int:
    """``"06:15"`` -> ``375``. Missing or non-numeric parts count as zero."""
    hours, _, mins = (value or "").partition(":")
    try:
        h = int(hours)
    except ValueError:
        h = 0
    try:
        m = int(mins)
    except ValueError:
        m = 0
    return h * 60 + m


@dataclass(frozen=True)
class ScheduleWindow:
    """Minute-of-day window during which stop detection is active."""

    start_min: int = 6 * 60
    end_min: int = 22 * 60
    enabled: bool = True


@dataclass(frozen=True)
class BreakWindows:
    """Two minute-of-day windows during which stops are ignored."""

    b1_start_min: int = 10 * 60
    b1_end_min: int = 10 * 60 + 15
    b2_start_min: int = 12 * 60
    b2_end_min: int = 12 * 60 + 30
    enabled: bool = False


@dataclass(frozen=True)
class Thresholds:
    threshold_g: float = 0.05
    hysteresis_g: float = 0.01
    seconds_down: int = 5
    seconds_up: int = 3


def local_tz_offset_minutes(when: Optional[datetime] = None) -> int:
    """Offset of the host's local time zone, in minutes east of UTC."""
    moment = (when or datetime.now()).astimezone()
    offset = moment.utcoffset()
    return int(offset.total_seconds() // 60) if offset is not None else 0


@dataclass
class ConfigSnapshot:
    """Configuration last sent to (or to be sent to) the device.

    ``tz_offset_minutes`` of None means "use the host's current offset".
    """

    schedule: ScheduleWindow = field(default_factory=ScheduleWindow)
    breaks: BreakWindows = field(default_factory=BreakWindows)
    thresholds: Thresholds = field(default_factory=Thresholds)
    tz_offset_minutes: Optional[int] = None

    def effective_tz_offset(self) -> int:
        if self.tz_offset_minutes is not None:
            return self.tz_offset_minutes
        return local_tz_offset_minutes()

