"""Tests for BLE device discovery and the bleak-backed NUS transport."""

import asyncio
from types import SimpleNamespace

import pytest
from bleak.exc import BleakError

from belt_stop_sync import transport as transport_module
from belt_stop_sync.transport import (
    NUS_RX_CHAR,
    NUS_SERVICE,
    NUS_TX_CHAR,
    BleTransport,
    DeviceSelector,
    NotConnectedError,
    TransportError,
    _match_device,
    find_device,
)

OTHER_SERVICE = "0000180f-0000-1000-8000-00805f9b34fb"


def _device(address, name=None, uuids=(), local_name=None):
    dev = SimpleNamespace(address=address, name=name)
    adv = SimpleNamespace(local_name=local_name, rssi=-60, service_uuids=list(uuids))
    return dev, adv


class FakeCharacteristic:
    def __init__(self, uuid, properties, max_write_without_response_size=20):
        self.uuid = uuid
        self.properties = properties
        self.max_write_without_response_size = max_write_without_response_size


class FakeService:
    def __init__(self, chars):
        self._chars = {c.uuid: c for c in chars}

    def get_characteristic(self, uuid):
        return self._chars.get(uuid)


class FakeServices:
    def __init__(self, services):
        self._services = services

    def get_service(self, uuid):
        return self._services.get(uuid)


class FakeBleakClient:
    """Stand-in for ``BleakClient``; behaviour is set on the class per test."""

    services_map: dict = {}
    connect_error = None
    write_error = None
    instances: list = []

    def __init__(self, target, disconnected_callback=None):
        self.target = target
        self.disconnected_callback = disconnected_callback
        self.is_connected = False
        self.services = FakeServices(self.services_map)
        self.writes = []
        self.notify_callback = None
        self.disconnect_calls = 0
        self.name = "BeltStop-07"
        FakeBleakClient.instances.append(self)

    async def connect(self):
        if self.connect_error is not None:
            raise self.connect_error
        self.is_connected = True

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False

    async def write_gatt_char(self, char, data, response):
        if self.write_error is not None:
            raise self.write_error
        self.writes.append((bytes(data), response))

    async def start_notify(self, char, callback):
        self.notify_callback = callback

    async def stop_notify(self, char):
        self.notify_callback = None


def _nus_service(rx_properties, mtu=20):
    return FakeService(
        [
            FakeCharacteristic(NUS_RX_CHAR, rx_properties, mtu),
            FakeCharacteristic(NUS_TX_CHAR, ["notify"]),
        ]
    )


@pytest.fixture
def fake_client(monkeypatch):
    monkeypatch.setattr(FakeBleakClient, "services_map", {})
    monkeypatch.setattr(FakeBleakClient, "connect_error", None)
    monkeypatch.setattr(FakeBleakClient, "write_error", None)
    monkeypatch.setattr(FakeBleakClient, "instances", [])
    monkeypatch.setattr(transport_module, "BleakClient", FakeBleakClient)
    return FakeBleakClient


def _scan_result(monkeypatch, devices):
    async def discover(timeout, return_adv):
        return {dev.address: (dev, adv) for dev, adv in devices}

    monkeypatch.setattr(transport_module.BleakScanner, "discover", discover)


SELECTOR = DeviceSelector(address="AA:BB:CC:DD:EE:FF")


# --- Discovery ---


class TestMatchDevice:
    def test_name_prefix(self):
        dev, adv = _device("A", name="BeltStop-01")
        assert _match_device(dev, adv, "BeltStop-", NUS_SERVICE) == "name"

    def test_local_name_used_when_device_name_missing(self):
        dev, adv = _device("A", local_name="BeltStop-02")
        assert _match_device(dev, adv, "BeltStop-", NUS_SERVICE) == "name"

    def test_service_uuid_case_insensitive(self):
        dev, adv = _device("A", name="Other", uuids=[NUS_SERVICE.upper()])
        assert _match_device(dev, adv, "BeltStop-", NUS_SERVICE) == "service"

    def test_no_match(self):
        dev, adv = _device("A", name="Speaker", uuids=[OTHER_SERVICE])
        assert _match_device(dev, adv, "BeltStop-", NUS_SERVICE) is None


class TestFindDevice:
    async def test_name_match_preferred_over_service_match(self, monkeypatch):
        _scan_result(
            monkeypatch,
            [
                _device("NUS", name="Generic-UART", uuids=[NUS_SERVICE]),
                _device("BELT", name="BeltStop-01"),
            ],
        )
        dev = await find_device(DeviceSelector())
        assert dev.address == "BELT"

    async def test_service_match_as_fallback(self, monkeypatch):
        _scan_result(
            monkeypatch,
            [
                _device("X", name="Speaker", uuids=[OTHER_SERVICE]),
                _device("NUS", name="Generic-UART", uuids=[NUS_SERVICE]),
            ],
        )
        dev = await find_device(DeviceSelector())
        assert dev.address == "NUS"

    async def test_nothing_found(self, monkeypatch):
        _scan_result(monkeypatch, [_device("X", name="Speaker")])
        assert await find_device(DeviceSelector()) is None

    async def test_scanner_failure_becomes_transport_error(self, monkeypatch):
        async def discover(timeout, return_adv):
            raise BleakError("adapter off")

        monkeypatch.setattr(transport_module.BleakScanner, "discover", discover)
        with pytest.raises(TransportError):
            await find_device(DeviceSelector())


# --- Connection ---


class TestConnect:
    async def test_connect_by_address(self, fake_client):
        fake_client.services_map = {NUS_SERVICE: _nus_service(["write"])}
        handle = await BleTransport().connect(SELECTOR)
        assert handle.address == "AA:BB:CC:DD:EE:FF"
        assert handle.name == "BeltStop-07"
        assert handle.rx_char.uuid == NUS_RX_CHAR
        assert handle.tx_char.uuid == NUS_TX_CHAR

    async def test_scan_when_no_address(self, fake_client, monkeypatch):
        fake_client.services_map = {NUS_SERVICE: _nus_service(["write"])}
        _scan_result(monkeypatch, [_device("BELT", name="BeltStop-01")])
        handle = await BleTransport().connect(DeviceSelector())
        assert handle.address == "BELT"
        assert handle.name == "BeltStop-01"

    async def test_no_device_found(self, fake_client, monkeypatch):
        _scan_result(monkeypatch, [])
        with pytest.raises(TransportError, match="not found"):
            await BleTransport().connect(DeviceSelector())
        assert fake_client.instances == []

    async def test_missing_service_disconnects(self, fake_client):
        fake_client.services_map = {}
        with pytest.raises(TransportError, match="NUS service"):
            await BleTransport().connect(SELECTOR)
        assert fake_client.instances[0].disconnect_calls == 1

    async def test_missing_characteristic_disconnects(self, fake_client):
        fake_client.services_map = {
            NUS_SERVICE: FakeService([FakeCharacteristic(NUS_RX_CHAR, ["write"])])
        }
        with pytest.raises(TransportError, match="characteristics"):
            await BleTransport().connect(SELECTOR)
        assert fake_client.instances[0].disconnect_calls == 1

    @pytest.mark.parametrize(
        "error",
        [BleakError("refused"), OSError("io"), asyncio.TimeoutError()],
    )
    async def test_connect_errors_are_wrapped_and_cleaned_up(self, fake_client, error):
        fake_client.connect_error = error
        with pytest.raises(TransportError):
            await BleTransport().connect(SELECTOR)
        assert fake_client.instances[0].disconnect_calls == 1

    async def test_link_loss_reports_handle(self, fake_client):
        fake_client.services_map = {NUS_SERVICE: _nus_service(["write"])}
        lost = []
        handle = await BleTransport().connect(SELECTOR, on_disconnect=lost.append)
        handle.client.disconnected_callback(handle.client)
        assert lost == [handle]


# --- Data ---


class TestSend:
    async def _connect(self, fake_client, properties, mtu=20):
        fake_client.services_map = {NUS_SERVICE: _nus_service(properties, mtu)}
        return await BleTransport().connect(SELECTOR)

    async def test_write_with_response_sends_whole_line(self, fake_client):
        handle = await self._connect(fake_client, ["write", "write-without-response"])
        data = b"CFG,BREAKS,600,615,720,750,0\n"
        await BleTransport().send(handle, data)
        assert handle.client.writes == [(data, True)]

    async def test_write_without_response_is_chunked(self, fake_client):
        handle = await self._connect(fake_client, ["write-without-response"], mtu=8)
        data = b"CFG,THRESH,0.05,0.01,5,3\n"
        await BleTransport().send(handle, data)
        chunks = [chunk for chunk, _ in handle.client.writes]
        assert all(len(chunk) <= 8 for chunk in chunks)
        assert b"".join(chunks) == data
        assert all(response is False for _, response in handle.client.writes)

    async def test_write_error_is_wrapped(self, fake_client):
        handle = await self._connect(fake_client, ["write"])
        fake_client.write_error = BleakError("gatt error")
        with pytest.raises(TransportError, match="Write failed"):
            await BleTransport().send(handle, b"SYNC,REQ\n")

    async def test_send_after_disconnect(self, fake_client):
        handle = await self._connect(fake_client, ["write"])
        await BleTransport().disconnect(handle)
        with pytest.raises(NotConnectedError):
            await BleTransport().send(handle, b"SYNC,REQ\n")


class TestNotifications:
    async def test_notifications_are_delivered_as_bytes(self, fake_client):
        fake_client.services_map = {NUS_SERVICE: _nus_service(["write"])}
        transport = BleTransport()
        handle = await transport.connect(SELECTOR)
        received = []
        await transport.on_data(handle, received.append)
        handle.client.notify_callback(None, bytearray(b"EV,1,2\n"))
        assert received == [b"EV,1,2\n"]
        assert isinstance(received[0], bytes)
