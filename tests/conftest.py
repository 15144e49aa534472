"""Shared test fixtures for the belt-stop-sync test suite."""

from typing import Any, Optional

import pytest

from belt_stop_sync.session import SessionController, SessionOptions
from belt_stop_sync.store import SqliteEventStore
from belt_stop_sync.transport import DeviceSelector, Transport, TransportError

FIXED_NOW = 1_700_000_000


class FakeHandle:
    def __init__(self, name: str) -> None:
        self.name = name


class FakeTransport(Transport):
    """Transport double that records every line written to the device."""

    def __init__(self, name: str = "BeltStop-TEST") -> None:
        self.name = name
        self.sent: list[str] = []
        self.fail_connect: Optional[Exception] = None
        self.fail_on_data = False
        self.fail_send = False
        self.handle: Optional[FakeHandle] = None
        self.callback: Any = None
        self.on_disconnect: Any = None
        self.disconnect_calls = 0

    async def connect(self, selector, on_disconnect=None):
        if self.fail_connect is not None:
            raise self.fail_connect
        self.handle = FakeHandle(self.name)
        self.on_disconnect = on_disconnect
        return self.handle

    async def disconnect(self, handle):
        self.disconnect_calls += 1

    async def send(self, handle, data):
        if self.fail_send:
            raise TransportError("write failed")
        self.sent.append(data.decode("ascii"))

    async def on_data(self, handle, callback):
        if self.fail_on_data:
            raise TransportError("notifications could not be enabled")
        self.callback = callback

    def push(self, text: str) -> None:
        """Deliver bytes as if notified by the device."""
        self.callback(text.encode("utf-8"))

    def drop_link(self) -> None:
        """Simulate the device going out of range."""
        self.on_disconnect(self.handle)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    """Throwaway in-memory SQLite store."""
    s = SqliteEventStore(":memory:")
    yield s
    s.close_sync()


@pytest.fixture
def selector():
    return DeviceSelector(address="AA:BB:CC:DD:EE:FF")


@pytest.fixture
async def session(transport, store):
    """Disconnected session with a fixed clock and a fixed +60 min offset."""
    s = await SessionController.create(
        transport, store, options=SessionOptions(), clock=lambda: FIXED_NOW
    )
    await s.set_tz_offset(60)
    return s


@pytest.fixture
async def connected(session, selector):
    await session.connect(selector)
    return session
