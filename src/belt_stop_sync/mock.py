"""Simulated belt-stop device for development and demos without hardware.

``MockTransport`` behaves like the firmware on the other end of the NUS
link:

- sends ``HELLO`` shortly after notifications are enabled,
- applies ``TIME`` and ``CFG`` commands,
- on ``SYNC,REQ`` replays its backlog of stop events as ``EV`` lines
  followed by ``SYNC,DONE,<lastIndex>``, and forgets everything up to the
  index echoed back in ``SYNC,ACK``,
- streams ``CAL`` lines while calibration mode is on,
- optionally reports live stops at a fixed interval.

Outgoing lines are cut into MTU-sized chunks, so the client's line framer
sees the same fragmentation it would see over the air.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Optional

from .framing import LineFramer
from .transport import (
    DataCallback,
    DeviceSelector,
    DisconnectCallback,
    NotConnectedError,
    Transport,
)

logger = logging.getLogger(__name__)


FIRMWARE_VERSION = "1.2.0-sim"


@dataclass
class _BacklogEvent:
    index: int
    start_epoch: int
    duration_ms: int


@dataclass
class MockDevice:
    """Connection handle and device-side state of the simulated sensor."""

    name: str
    on_disconnect: Optional[DisconnectCallback] = None
    callback: Optional[DataCallback] = None
    connected: bool = True
    clock_offset: float = 0.0
    clock_synced: bool = False
    tz_offset_minutes: int = 0
    config: dict[str, list[str]] = field(default_factory=dict)
    backlog: list[_BacklogEvent] = field(default_factory=list)
    accum_stops: int = 0
    battery_mv: int = 3950
    received: list[str] = field(default_factory=list)
    framer: LineFramer = field(default_factory=LineFramer)
    tasks: list["asyncio.Task[None]"] = field(default_factory=list)
    calibration_task: Optional["asyncio.Task[None]"] = None


class MockTransport(Transport):
    """In-process stand-in for ``BleTransport``.

    Args:
        device_name: Advertised name and ``HELLO`` device id.
        backlog_size: Number of unsynced stop events the device starts with.
        hello_delay: Seconds between enabling notifications and ``HELLO``.
        live_event_interval: Seconds between simulated live stops, or None
            to disable them.
        calibration_interval: Seconds between ``CAL`` lines.
        mtu: Maximum bytes per notification chunk.
        seed: Random seed for reproducible event data.
    """

    def __init__(
        self,
        device_name: str = "BeltStop-SIM",
        backlog_size: int = 12,
        hello_delay: float = 0.5,
        live_event_interval: Optional[float] = 45.0,
        calibration_interval: float = 0.2,
        mtu: int = 20,
        seed: Optional[int] = None,
    ) -> None:
        self._device_name = device_name
        self._backlog_size = backlog_size
        self._hello_delay = hello_delay
        self._live_event_interval = live_event_interval
        self._calibration_interval = calibration_interval
        self._mtu = max(1, mtu)
        self._random = random.Random(seed)
        self._device: Optional[MockDevice] = None

    @property
    def device(self) -> Optional[MockDevice]:
        """Device state of the current (or last) connection."""
        return self._device

    async def connect(
        self,
        selector: DeviceSelector,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> MockDevice:
        logger.info("🔧 Mock device connecting: %s", self._device_name)
        device = MockDevice(name=self._device_name, on_disconnect=on_disconnect)
        start = int(time.time()) - self._backlog_size * 900
        for i in range(self._backlog_size):
            start += self._random.randint(300, 900)
            device.backlog.append(
                _BacklogEvent(i, start, self._random.randint(5_000, 180_000))
            )
        device.accum_stops = self._backlog_size
        self._device = device
        return device

    async def disconnect(self, handle: MockDevice) -> None:
        self._drop(handle)

    def simulate_link_loss(self) -> None:
        """Drop the current connection as if the device went out of range."""
        if self._device is not None:
            self._drop(self._device)

    def _drop(self, device: MockDevice) -> None:
        if not device.connected:
            return
        device.connected = False
        for task in device.tasks:
            task.cancel()
        if device.calibration_task is not None:
            device.calibration_task.cancel()
        logger.info("🔌 Mock device disconnected: %s", device.name)
        if device.on_disconnect is not None:
            device.on_disconnect(device)

    async def on_data(self, handle: MockDevice, callback: DataCallback) -> None:
        handle.callback = callback
        handle.tasks.append(asyncio.create_task(self._say_hello(handle)))
        if self._live_event_interval is not None:
            handle.tasks.append(asyncio.create_task(self._live_events(handle)))

    async def send(self, handle: MockDevice, data: bytes) -> None:
        if not handle.connected:
            raise NotConnectedError("Mock device is not connected")
        for line in handle.framer.feed(data):
            handle.received.append(line)
            self._apply(handle, line)

    # --- Device behaviour ---------------------------------------------------

    def _emit(self, device: MockDevice, line: str) -> None:
        if not device.connected or device.callback is None:
            return
        data = (line + "\n").encode("ascii")
        for offset in range(0, len(data), self._mtu):
            device.callback(data[offset : offset + self._mtu])

    def _device_time(self, device: MockDevice) -> int:
        return int(time.time() + device.clock_offset)

    async def _say_hello(self, device: MockDevice) -> None:
        await asyncio.sleep(self._hello_delay)
        self._emit(
            device,
            f"HELLO,{device.name},FW,{FIRMWARE_VERSION},{int(device.clock_synced)},"
            f"{len(device.backlog)},{device.battery_mv},{device.accum_stops}",
        )

    async def _live_events(self, device: MockDevice) -> None:
        assert self._live_event_interval is not None
        while device.connected:
            await asyncio.sleep(self._live_event_interval)
            duration = self._random.randint(3_000, 60_000)
            start = self._device_time(device) - duration // 1000
            device.accum_stops += 1
            self._emit(device, f"EV,{start},{duration},{device.accum_stops}")

    async def _calibration_stream(self, device: MockDevice) -> None:
        started = time.time()
        while device.connected:
            elapsed = time.time() - started
            g = abs(0.08 * math.sin(2 * math.pi * 0.5 * elapsed)) + self._random.gauss(
                0.02, 0.005
            )
            self._emit(device, f"CAL,{g:.6f}")
            await asyncio.sleep(self._calibration_interval)

    def _apply(self, device: MockDevice, line: str) -> None:
        parts = line.split(",")
        logger.debug("Mock device received: %s", line)
        if parts[0] == "TIME" and len(parts) >= 4:
            try:
                device.clock_offset = int(parts[2]) - time.time()
                device.tz_offset_minutes = int(parts[3])
                device.clock_synced = True
            except ValueError:
                logger.warning("Mock device rejected TIME: %s", line)
        elif parts[0] == "CFG" and len(parts) >= 2:
            device.config[parts[1]] = parts[2:]
        elif parts[0] == "MODE" and parts[1:2] == ["CALIB"] and len(parts) >= 3:
            if parts[2] == "ON" and device.calibration_task is None:
                device.calibration_task = asyncio.create_task(
                    self._calibration_stream(device)
                )
            elif parts[2] == "OFF" and device.calibration_task is not None:
                device.calibration_task.cancel()
                device.calibration_task = None
        elif parts[:2] == ["SYNC", "REQ"]:
            self._replay(device)
        elif parts[:2] == ["SYNC", "ACK"] and len(parts) >= 3:
            try:
                acked = int(parts[2])
            except ValueError:
                return
            device.backlog = [ev for ev in device.backlog if ev.index > acked]
            logger.debug(
                "Mock backlog after ACK %d: %d events", acked, len(device.backlog)
            )

    def _replay(self, device: MockDevice) -> None:
        accum = device.accum_stops - len(device.backlog)
        for ev in device.backlog:
            accum += 1
            self._emit(device, f"EV,{ev.start_epoch},{ev.duration_ms},{accum}")
        last_index = device.backlog[-1].index if device.backlog else -1
        self._emit(device, f"SYNC,DONE,{last_index}")
