"""Session controller: connection lifecycle, handshake and sync with one device.

The controller is the only owner of connection state. Everything that can
change that state arrives as an item on one ``asyncio.Queue``:

- raw chunks from the transport's notification callback, and
- commands submitted by the user interface.

``run()`` drains the queue strictly in order, so inbound lines and user
commands never interleave. Tests and simple scripts may also await the
public coroutines directly from the loop that owns the session.

Protocol flow (the device, not the client, opens the conversation):

1. After connect the controller listens and sends nothing.
2. ``HELLO`` triggers the configuration push, in this order: ``TIME``,
   ``CFG,SCHED``, ``CFG,BREAKS`` and ``CFG,THRESH``. The device must apply
   the time before it can interpret minute-of-day windows.
3. ``EV`` lines are stored as stop events.
4. ``SYNC,REQ`` makes the device replay its backlog as ``EV`` lines, ending
   with ``SYNC,DONE,<n>``; the controller answers ``SYNC,ACK,<n>`` once.

There is no timeout on the sync round trip and no retry of
failed writes. A lost ACK is recovered by the device replaying on the next
``SYNC,REQ``.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from .framing import LineFramer
from .models import (
    BreakWindows,
    ConfigSnapshot,
    ConnectionPhase,
    ScheduleWindow,
    SessionState,
    StopEvent,
    Thresholds,
)
from .protocol import (
    Calibration,
    Hello,
    InboundMessage,
    OutboundCommand,
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
    parse_line,
)
from .store import EventStore, StorageError
from .transport import DeviceSelector, NotConnectedError, Transport, TransportError

logger = logging.getLogger(__name__)


SETTING_SCHEDULE = "schedule"
SETTING_BREAKS = "breaks"
SETTING_THRESHOLDS = "thresholds"
SETTING_TZ_OFFSET = "tz_offset_minutes"

UNKNOWN_DEVICE = "unknown"


class SyncStatus(enum.Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETE = "complete"
    NOT_COMPLETE = "not complete"


@dataclass(frozen=True)
class SessionOptions:
    """Behaviour switches for the post-HELLO handshake.

    Attributes:
        push_thresholds_on_hello: Include ``CFG,THRESH`` in the handshake.
        sync_on_hello: Send ``SYNC,REQ`` right after the handshake so the
            device backlog is pulled on every connect.
        activity_log_size: Number of protocol lines kept for display.
    """

    push_thresholds_on_hello: bool = True
    sync_on_hello: bool = False
    activity_log_size: int = 200


@dataclass
class DeviceTelemetry:
    """Latest values reported by the device, for display."""

    device_id: Optional[str] = None
    firmware_version: Optional[str] = None
    clock_synced: Optional[bool] = None
    unsent_count: Optional[int] = None
    battery_mv: Optional[int] = None
    vibration_g: Optional[float] = None
    shift_total: Optional[int] = None
    last_stop: Optional[StopEvent] = None
    events_received: int = 0


@dataclass(frozen=True)
class ActivityEntry:
    timestamp: datetime
    text: str


@dataclass
class _Command:
    """A queued user action; ``future`` resolves with its outcome."""

    action: Callable[[], Awaitable[Any]]
    name: str
    future: Optional["asyncio.Future[Any]"] = field(default=None)


_STOP = object()


class SessionController:
    """Drive one device connection through handshake, live events and sync.

    A controller is created with ``create()`` (which also restores persisted
    settings) and released with ``teardown()``. Several controllers can live
    side by side; none of their state is global.

    Args:
        transport: Byte-stream transport to the device.
        store: Persistent storage for events and settings.
        options: Handshake behaviour switches.
        clock: Source of UTC epoch seconds for ``TIME`` pushes.
    """

    def __init__(
        self,
        transport: Transport,
        store: EventStore,
        options: Optional[SessionOptions] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._transport = transport
        self._store = store
        self._options = options or SessionOptions()
        self._clock = clock

        self.state = SessionState()
        self.config = ConfigSnapshot()
        self.telemetry = DeviceTelemetry()
        self.sync_status = SyncStatus.IDLE
        self.last_error: Optional[str] = None
        self.calibration_on = False

        self._framer = LineFramer()
        self._handle: Any = None
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue()
        self._activity: deque[ActivityEntry] = deque(
            maxlen=self._options.activity_log_size
        )

    @classmethod
    async def create(
        cls,
        transport: Transport,
        store: EventStore,
        options: Optional[SessionOptions] = None,
        clock: Callable[[], float] = time.time,
    ) -> "SessionController":
        """Build a controller and restore the operator's saved configuration."""
        session = cls(transport, store, options=options, clock=clock)
        await session.load_settings()
        return session

    async def teardown(self) -> None:
        """Disconnect if needed and stop the ``run()`` loop."""
        if self._handle is not None:
            try:
                await self.disconnect()
            except TransportError as e:
                logger.warning("Disconnect during teardown failed: %s", e)
        self._queue.put_nowait(_STOP)

    # --- Properties ---------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state.connection_phase is ConnectionPhase.CONNECTED

    @property
    def device_name(self) -> Optional[str]:
        if self._handle is None:
            return None
        return self._transport.handle_name(self._handle)

    def recent_activity(self, count: Optional[int] = None) -> list[ActivityEntry]:
        entries = list(self._activity)
        return entries if count is None else entries[-count:]

    def _note(self, text: str) -> None:
        self._activity.append(ActivityEntry(datetime.now(), text))

    # --- Settings -----------------------------------------------------------

    async def load_settings(self) -> None:
        """Restore schedule, breaks, thresholds and timezone offset from storage.

        Unreadable or partial records fall back to defaults field by field.
        """
        try:
            schedule = await self._store.get_setting(SETTING_SCHEDULE)
            breaks = await self._store.get_setting(SETTING_BREAKS)
            thresholds = await self._store.get_setting(SETTING_THRESHOLDS)
            tz_offset = await self._store.get_setting(SETTING_TZ_OFFSET)
        except StorageError as e:
            logger.error("Could not load settings, using defaults: %s", e)
            return

        self.config = ConfigSnapshot(
            schedule=_restore(ScheduleWindow, schedule),
            breaks=_restore(BreakWindows, breaks),
            thresholds=_restore(Thresholds, thresholds),
            tz_offset_minutes=tz_offset if isinstance(tz_offset, int) else None,
        )
        logger.debug("Settings loaded: %s", self.config)

    async def _persist(self, key: str, value: Any) -> None:
        try:
            await self._store.put_setting(key, value)
        except StorageError as e:
            logger.error("Failed to save setting %s: %s", key, e)

    # --- Connection lifecycle ----------------------------------------------

    async def connect(self, selector: DeviceSelector) -> None:
        """Connect and subscribe to notifications.

        Raises:
            TransportError: Any failure during discovery, connection or
                notification setup. The session is left DISCONNECTED and the
                attempt is not retried.
        """
        if self.state.connection_phase is not ConnectionPhase.DISCONNECTED:
            logger.info(
                "Connect ignored: session is %s", self.state.connection_phase.value
            )
            return

        self.state.connection_phase = ConnectionPhase.CONNECTING
        self.last_error = None
        self._framer.reset()
        handle: Any = None
        try:
            handle = await self._transport.connect(
                selector, on_disconnect=self._on_transport_disconnect
            )
            self._handle = handle
            # Connected before subscribing so a HELLO sent as soon as
            # notifications are enabled can be answered
            self.state.connection_phase = ConnectionPhase.CONNECTED
            await self._transport.on_data(handle, self.feed)
        except Exception as e:
            self._handle = None
            self.state.connection_phase = ConnectionPhase.DISCONNECTED
            self.last_error = f"Connect error: {e}"
            self._note(self.last_error)
            logger.error("Connect failed: %s", e)
            if handle is not None:
                try:
                    await self._transport.disconnect(handle)
                except TransportError as cleanup_error:
                    logger.debug("Cleanup disconnect failed: %s", cleanup_error)
            if isinstance(e, TransportError):
                raise
            raise TransportError(f"{type(e).__name__}: {e}") from e

        if self.is_connected:
            self._note(f"Connected to {self.device_name or 'device'}.")
            logger.info("Session connected: %s", self.device_name)

    async def disconnect(self) -> None:
        """User-initiated disconnect. No automatic reconnect follows."""
        handle = self._handle
        if handle is None:
            return
        self._mark_disconnected()
        await self._transport.disconnect(handle)

    def _on_transport_disconnect(self, handle: Any) -> None:
        if handle is self._handle:
            self._mark_disconnected()

    def _mark_disconnected(self) -> None:
        if self.state.connection_phase is ConnectionPhase.DISCONNECTED:
            return
        self._handle = None
        self.state.connection_phase = ConnectionPhase.DISCONNECTED
        self.calibration_on = False
        if self.sync_status == SyncStatus.SYNCING:
            self.sync_status = SyncStatus.NOT_COMPLETE
        self._note("Disconnected.")
        logger.info("Session disconnected")

    # --- Message passing ----------------------------------------------------

    def feed(self, chunk: bytes) -> None:
        """Transport data callback: queue ``chunk`` for in-order processing."""
        self._queue.put_nowait(bytes(chunk))

    def submit(
        self, action: Callable[[], Awaitable[Any]], name: str = "command"
    ) -> "asyncio.Future[Any]":
        """Queue a user action behind any pending inbound data.

        Must be called from the loop running ``run()``; use
        ``loop.call_soon_threadsafe`` from other threads.

        Returns:
            Future resolved with the action's result or exception.
        """
        future: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Command(action=action, name=name, future=future))
        return future

    def post(self, action: Callable[[], Awaitable[Any]], name: str = "command") -> None:
        """Queue a user action without a result future.

        Failures are logged and recorded in the activity log only. Safe to
        pass to ``loop.call_soon_threadsafe``.
        """
        self._queue.put_nowait(_Command(action=action, name=name))

    async def run(self) -> None:
        """Process queued chunks and commands until ``teardown()``."""
        logger.debug("Session loop started")
        while True:
            item = await self._queue.get()
            if item is _STOP:
                break
            if isinstance(item, _Command):
                await self._run_command(item)
            else:
                await self.handle_chunk(item)
        logger.debug("Session loop finished")

    async def _run_command(self, command: _Command) -> None:
        try:
            result = await command.action()
        except Exception as e:
            logger.error("%s failed: %s", command.name, e)
            self._note(f"{command.name} failed: {e}")
            if command.future is not None and not command.future.done():
                command.future.set_exception(e)
            return
        if command.future is not None and not command.future.done():
            command.future.set_result(result)

    # --- Inbound ------------------------------------------------------------

    async def handle_chunk(self, chunk: Union[bytes, bytearray]) -> None:
        """Frame ``chunk`` and dispatch every completed line.

        A line whose handling fails is logged and skipped; the lines after it
        are still processed.
        """
        for line in self._framer.feed(chunk):
            try:
                await self.handle_line(line)
            except Exception as e:
                logger.exception("Unhandled error for line %r: %s", line, e)
                self._note(f"Error: {e}")

    async def handle_line(self, line: str) -> None:
        logger.debug("<- %s", line)
        self._note(f"← {line}")
        msg = parse_line(line)
        if msg is not None:
            await self.handle_message(msg)

    async def handle_message(self, msg: InboundMessage) -> None:
        """Apply one parsed message. Errors are logged, never raised."""
        try:
            if isinstance(msg, Hello):
                await self._on_hello(msg)
            elif isinstance(msg, StopEventMessage):
                await self._on_stop_event(msg)
            elif isinstance(msg, SyncDone):
                await self._on_sync_done(msg)
            elif isinstance(msg, Calibration):
                self.telemetry.vibration_g = msg.vibration_g
        except (TransportError, StorageError) as e:
            logger.error("Handling %s failed: %s", type(msg).__name__, e)
            self._note(f"Error: {e}")

    async def _on_hello(self, msg: Hello) -> None:
        self.telemetry.device_id = msg.device_id
        self.telemetry.firmware_version = msg.firmware_version
        self.telemetry.clock_synced = msg.clock_synced
        self.telemetry.unsent_count = msg.unsent_count
        self.telemetry.battery_mv = msg.battery_mv
        self.telemetry.shift_total = msg.accum_stops
        logger.info(
            "HELLO from %s fw=%s battery=%dmV unsent=%d shift_total=%d",
            msg.device_id,
            msg.firmware_version,
            msg.battery_mv,
            msg.unsent_count,
            msg.accum_stops,
        )

        # Time first: windows are minutes-of-day in device local time
        await self.send_time_only()
        await self._send(self._schedule_command())
        await self._send(self._breaks_command())
        if self._options.push_thresholds_on_hello:
            await self._send(self._thresholds_command())
        if self._options.sync_on_hello:
            await self.request_sync()

    def _event_device_id(self) -> str:
        return self.telemetry.device_id or self.device_name or UNKNOWN_DEVICE

    async def _on_stop_event(self, msg: StopEventMessage) -> None:
        event = StopEvent(
            start_epoch_seconds=msg.start_epoch_seconds,
            duration_ms=msg.duration_ms,
            device_id=self._event_device_id(),
            accum_stops=msg.accum_stops,
        )
        event_id = await self._store.append_event(event)
        self.telemetry.last_stop = event
        self.telemetry.events_received += 1
        if msg.accum_stops is not None:
            self.telemetry.shift_total = msg.accum_stops
        elif self.telemetry.shift_total is not None:
            self.telemetry.shift_total += 1
        logger.info(
            "Stop event stored id=%s start=%d duration=%dms",
            event_id,
            event.start_epoch_seconds,
            event.duration_ms,
        )

    async def _on_sync_done(self, msg: SyncDone) -> None:
        self.state.last_sync_acked_index = msg.last_index
        try:
            await self._send(SyncAck(msg.last_index))
        except TransportError:
            self.sync_status = SyncStatus.NOT_COMPLETE
            raise
        self.sync_status = SyncStatus.COMPLETE
        self._note("Sync complete.")
        logger.info("Sync complete, acknowledged index %d", msg.last_index)

    # --- Outbound -----------------------------------------------------------

    async def _send(self, command: OutboundCommand) -> None:
        if not self.is_connected or self._handle is None:
            raise NotConnectedError("Not connected to a device")
        line = command.encode()
        logger.debug("-> %s", line.rstrip())
        self._note(f"→ {line.rstrip()}")
        await self._transport.send(self._handle, encode_command(command))

    def _schedule_command(self) -> SetSchedule:
        s = self.config.schedule
        return SetSchedule(s.start_min, s.end_min, s.enabled)

    def _breaks_command(self) -> SetBreaks:
        b = self.config.breaks
        return SetBreaks(
            b.b1_start_min, b.b1_end_min, b.b2_start_min, b.b2_end_min, b.enabled
        )

    def _thresholds_command(self) -> SetThresholds:
        t = self.config.thresholds
        return SetThresholds(t.threshold_g, t.hysteresis_g, t.seconds_down, t.seconds_up)

    async def send_time_only(self) -> None:
        """Push the host clock and the configured timezone offset."""
        await self._send(
            SetTime(int(self._clock()), self.config.effective_tz_offset())
        )

    async def set_tz_offset(self, minutes: Optional[int]) -> None:
        """Change the offset sent with ``TIME``; None follows the host clock."""
        self.config = replace(self.config, tz_offset_minutes=minutes)
        await self._persist(SETTING_TZ_OFFSET, minutes)

    async def send_schedule(self, schedule: Optional[ScheduleWindow] = None) -> None:
        """Send the detection window, updating and saving it when given."""
        if not self.is_connected:
            raise NotConnectedError("Not connected to a device")
        if schedule is not None:
            self.config = replace(self.config, schedule=schedule)
            await self._persist(SETTING_SCHEDULE, asdict(schedule))
        await self._send(self._schedule_command())

    async def send_breaks(self, breaks: Optional[BreakWindows] = None) -> None:
        """Send the break windows, updating and saving them when given."""
        if not self.is_connected:
            raise NotConnectedError("Not connected to a device")
        if breaks is not None:
            self.config = replace(self.config, breaks=breaks)
            await self._persist(SETTING_BREAKS, asdict(breaks))
        await self._send(self._breaks_command())

    async def send_thresholds(self, thresholds: Optional[Thresholds] = None) -> None:
        """Send detection thresholds, updating and saving them when given."""
        if not self.is_connected:
            raise NotConnectedError("Not connected to a device")
        if thresholds is not None:
            self.config = replace(self.config, thresholds=thresholds)
            await self._persist(SETTING_THRESHOLDS, asdict(thresholds))
        await self._send(self._thresholds_command())

    async def set_calibration_mode(self, on: bool) -> None:
        await self._send(SetCalibrationMode(on))
        self.calibration_on = on
        if not on:
            self.telemetry.vibration_g = None

    async def request_sync(self) -> None:
        """Ask the device to replay its backlog.

        Completion is asynchronous: the ``SYNC,DONE`` line arrives later.
        """
        self.sync_status = SyncStatus.SYNCING
        try:
            await self._send(SyncRequest())
        except TransportError:
            self.sync_status = SyncStatus.NOT_COMPLETE
            raise


def _restore(record_type: type, value: Any) -> Any:
    """Rebuild a config record from a settings dict, ignoring unknown keys."""
    if not isinstance(value, dict):
        return record_type()
    known = {k: v for k, v in value.items() if k in record_type.__dataclass_fields__}
    try:
        return record_type(**known)
    except TypeError:
        logger.warning("Ignoring malformed %s setting: %r", record_type.__name__, value)
        return record_type()
