"""Byte-stream transports between the session and a belt-stop device.

The session needs exactly four things from a transport: connect to a device,
disconnect from it, write bytes to it, and be told about bytes it sends. The
``Transport`` interface captures that surface; ``BleTransport`` implements it
on top of the Nordic UART Service (NUS) using bleak:

- NUS RX characteristic (``6e400002-...``): client writes commands here.
- NUS TX characteristic (``6e400003-...``): device notifies lines here.

Device discovery follows the same approach as other NUS sensors: an explicit
address wins; otherwise a scan picks the first device whose advertised name
starts with ``BeltStop-`` or which advertises the NUS service UUID.

Requirements:
- bleak: Cross-platform BLE library for device communication
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

logger = logging.getLogger(__name__)


# Nordic UART Service (NUS) UUID constants
NUS_SERVICE = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NUS_RX_CHAR = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"  # Write (client to device)
NUS_TX_CHAR = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"  # Notify (device to client)

DEVICE_NAME_PREFIX = "BeltStop-"

DataCallback = Callable[[bytes], None]
DisconnectCallback = Callable[[Any], None]


class TransportError(RuntimeError):
    """Connecting to, discovering, or writing to the device failed."""


class NotConnectedError(TransportError):
    """A command was issued while no device is connected."""


@dataclass(frozen=True)
class DeviceSelector:
    """How to pick the device to connect to.

    Attributes:
        address: Explicit BLE address (MAC, or CoreBluetooth UUID on macOS).
            When set, no scan is performed.
        name_prefix: Advertised name prefix used when scanning.
        service_uuid: Advertised service UUID accepted as a fallback match.
        scan_timeout: Seconds to scan before giving up.
    """

    address: Optional[str] = None
    name_prefix: str = DEVICE_NAME_PREFIX
    service_uuid: str = NUS_SERVICE
    scan_timeout: float = 10.0


class Transport(ABC):
    """Bidirectional byte stream to a single device."""

    @abstractmethod
    async def connect(
        self,
        selector: DeviceSelector,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> Any:
        """Open a connection and return an opaque handle.

        ``on_disconnect(handle)`` is called when the link goes away, whether
        the user asked for it or the link was lost.

        Raises:
            TransportError: Discovery or connection failed.
        """

    @abstractmethod
    async def disconnect(self, handle: Any) -> None:
        """Close the connection behind ``handle``. Safe to call twice."""

    @abstractmethod
    async def send(self, handle: Any, data: bytes) -> None:
        """Write ``data`` to the device.

        Raises:
            TransportError: The write failed.
        """

    @abstractmethod
    async def on_data(self, handle: Any, callback: DataCallback) -> None:
        """Start delivering inbound chunks to ``callback``.

        Raises:
            TransportError: The subscription could not be enabled.
        """

    def handle_name(self, handle: Any) -> Optional[str]:
        """Human-readable device name for ``handle``, if known."""
        return getattr(handle, "name", None)


# --- BLE implementation -------------------------------------------------------


@dataclass
class BleHandle:
    client: BleakClient
    address: str
    name: Optional[str]
    rx_char: Optional[BleakGATTCharacteristic] = None
    tx_char: Optional[BleakGATTCharacteristic] = None


async def _scan_ble_devices(
    timeout: float,
) -> dict[str, tuple[BLEDevice, AdvertisementData]]:
    """Scan for BLE devices and retrieve advertisement data.

    Raises:
        TransportError: If BLE scanning cannot be initialized.
    """
    try:
        # Bleak 0.22+ doesn't include metadata in BLEDevice objects.
        # Request advertisement data explicitly with return_adv=True.
        devices_adv = await BleakScanner.discover(timeout=timeout, return_adv=True)
        logger.debug("Scan completed: %d devices found", len(devices_adv))
        return devices_adv
    except BleakError as e:
        raise TransportError(
            "BLE scanner initialization failed. Please verify:\n"
            "- Bluetooth is enabled\n"
            "- Location Services are enabled (required for BLE scanning on Windows)\n"
            "- The process has Bluetooth permission\n"
            "- The Bluetooth adapter/drivers are properly installed\n"
        ) from e


def _match_device(
    dev: BLEDevice, adv: AdvertisementData, name_prefix: str, service_uuid: str
) -> Optional[str]:
    """Check if a discovered device matches the search criteria.

    Returns:
        ``"name"`` for a name prefix match, ``"service"`` for a device that
        only advertises the service UUID, or None.
    """
    name = dev.name or getattr(adv, "local_name", None)
    logger.debug(
        "Device discovered: addr=%s name=%s rssi=%s uuids=%s",
        getattr(dev, "address", "?"),
        name,
        getattr(adv, "rssi", None),
        getattr(adv, "service_uuids", None),
    )

    if name and name.startswith(name_prefix):
        return "name"

    uuids: Iterable[str] = adv.service_uuids or []
    if any(u.lower() == service_uuid.lower() for u in uuids):
        return "service"

    return None


async def find_device(selector: DeviceSelector) -> Optional[BLEDevice]:
    """Return the scanned device best matching ``selector``, or None.

    A name prefix match wins over a device that only advertises the NUS
    service, so a belt-stop sensor is preferred over other NUS peripherals.
    """
    logger.info(
        "BLE device discovery started: prefix='%s' service='%s' timeout=%.1fs",
        selector.name_prefix,
        selector.service_uuid,
        selector.scan_timeout,
    )

    devices_adv = await _scan_ble_devices(selector.scan_timeout)

    fallback: Optional[BLEDevice] = None
    for dev, adv in devices_adv.values():
        match = _match_device(dev, adv, selector.name_prefix, selector.service_uuid)
        if match == "name":
            logger.info("Device selected by name match: %s (%s)", dev.name, dev.address)
            return dev
        if match == "service" and fallback is None:
            fallback = dev
    if fallback is not None:
        logger.info(
            "Device selected by service UUID match: %s (%s)",
            fallback.name,
            fallback.address,
        )
    return fallback


class BleTransport(Transport):
    """NUS transport backed by ``bleak.BleakClient``.

    Writes use write-with-response when the RX characteristic supports it and
    are otherwise split to the negotiated write-without-response size.
    """

    async def connect(
        self,
        selector: DeviceSelector,
        on_disconnect: Optional[DisconnectCallback] = None,
    ) -> BleHandle:
        target: Any
        name: Optional[str] = None
        if selector.address is not None:
            target = selector.address
            address = selector.address
        else:
            dev = await find_device(selector)
            if dev is None:
                raise TransportError(
                    "Target device not found. Please check the device is powered "
                    "on, advertising, and in range."
                )
            target = dev
            address = dev.address
            name = dev.name

        handle: Optional[BleHandle] = None

        def on_link_lost(_: BleakClient) -> None:
            logger.warning("BLE connection lost (callback): %s", address)
            if on_disconnect is not None and handle is not None:
                on_disconnect(handle)

        client = BleakClient(target, disconnected_callback=on_link_lost)
        handle = BleHandle(client=client, address=address, name=name)

        logger.info("BLE connection starting: %s", address)
        try:
            await client.connect()
            if not client.is_connected:
                raise TransportError("BLE connection failed.")

            service = client.services.get_service(NUS_SERVICE)
            if service is None:
                raise TransportError(f"NUS service {NUS_SERVICE} not found on device")
            handle.rx_char = service.get_characteristic(NUS_RX_CHAR)
            handle.tx_char = service.get_characteristic(NUS_TX_CHAR)
            if handle.rx_char is None or handle.tx_char is None:
                raise TransportError("NUS RX/TX characteristics not found on device")
        except TransportError:
            await self._safe_disconnect(client)
            raise
        except (BleakError, OSError, TimeoutError, asyncio.TimeoutError) as e:
            await self._safe_disconnect(client)
            raise TransportError(f"{type(e).__name__}: {e}") from e

        if handle.name is None:
            handle.name = getattr(client, "name", None)
        logger.info("BLE connection established: %s (name=%s)", address, handle.name)
        return handle

    async def _safe_disconnect(self, client: BleakClient) -> None:
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.debug("Ignoring error during cleanup disconnect: %s", e)

    async def disconnect(self, handle: BleHandle) -> None:
        logger.info("BLE disconnect requested: %s", handle.address)
        if handle.client.is_connected and handle.tx_char is not None:
            try:
                await handle.client.stop_notify(handle.tx_char)
            except (BleakError, OSError) as e:
                logger.debug("stop_notify failed during disconnect: %s", e)
        try:
            await handle.client.disconnect()
        except (BleakError, OSError) as e:
            raise TransportError(f"Disconnect failed: {e}") from e

    async def send(self, handle: BleHandle, data: bytes) -> None:
        char = handle.rx_char
        if char is None or not handle.client.is_connected:
            raise NotConnectedError("BLE device is not connected")

        try:
            if "write" in char.properties:
                await handle.client.write_gatt_char(char, data, response=True)
            else:
                size = max(1, char.max_write_without_response_size)
                for offset in range(0, len(data), size):
                    await handle.client.write_gatt_char(
                        char, data[offset : offset + size], response=False
                    )
        except (BleakError, OSError) as e:
            raise TransportError(f"Write failed: {type(e).__name__}: {e}") from e

    async def on_data(self, handle: BleHandle, callback: DataCallback) -> None:
        if handle.tx_char is None:
            raise NotConnectedError("BLE device is not connected")
        logger.info("Starting notification subscription: char=%s", NUS_TX_CHAR)
        try:
            await handle.client.start_notify(
                handle.tx_char, lambda _, data: callback(bytes(data))
            )
        except (BleakError, OSError) as e:
            raise TransportError(
                f"Enabling notifications failed: {type(e).__name__}: {e}"
            ) from e
