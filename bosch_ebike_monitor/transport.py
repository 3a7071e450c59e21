"""
BLE transport.

The session talks to the radio only through the ``Transport`` protocol.
Each command is a coroutine; its outcome is reported back through the
``TransportListener`` callbacks. A command that raises is treated by the
session as the failure outcome for that step.

``BleakTransport`` is the implementation on top of ``bleak``.
"""

from __future__ import annotations

import logging
from typing import Protocol

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

from .errors import TransportError
from .models import PeripheralRef
from .protocol import TelemetryFrame

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 20.0


class TransportListener(Protocol):
    def on_sighting(self, ref: PeripheralRef) -> None: ...

    def on_connection_change(self, connected: bool) -> None: ...

    def on_services_resolved(
        self, success: bool, services: dict[str, set[str]] | None = None
    ) -> None: ...

    def on_subscribed(self, success: bool) -> None: ...

    def on_notification(self, frame: TelemetryFrame) -> None: ...


class Transport(Protocol):
    def set_listener(self, listener: TransportListener | None) -> None: ...

    async def start_discovery(self) -> None: ...

    async def stop_discovery(self) -> None: ...

    async def connect(self, address: str) -> None: ...

    async def disconnect(self) -> None: ...

    async def discover_services(self) -> None: ...

    async def subscribe(self, service_uuid: str, characteristic_uuid: str) -> None: ...


class BleakTransport:
    """
    ``Transport`` backed by ``bleak``.

    Holds at most one scanner and one client. ``disconnect()`` drops the
    client before tearing it down, so the resulting disconnect callback
    from bleak is not reported as an unexpected link loss.
    """

    def __init__(self, *, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> None:
        self._listener: TransportListener | None = None
        self._connect_timeout = connect_timeout
        self._scanner: BleakScanner | None = None
        self._client: BleakClient | None = None
        self._notify_char: BleakGATTCharacteristic | None = None

    def set_listener(self, listener: TransportListener | None) -> None:
        self._listener = listener

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    # -- discovery --------------------------------------------------------

    async def start_discovery(self) -> None:
        if self._scanner is not None:
            return
        scanner = BleakScanner(detection_callback=self._on_detection)
        try:
            await scanner.start()
        except Exception as exc:
            raise TransportError(f"Failed to start scan: {exc}") from exc
        self._scanner = scanner
        logger.debug("BLE scan started")

    async def stop_discovery(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except Exception as exc:
            logger.error("Error stopping scan: %s", exc)
            return
        logger.debug("BLE scan stopped")

    def _on_detection(self, device: BLEDevice, adv: AdvertisementData) -> None:
        if self._listener is None:
            return
        ref = PeripheralRef(
            address=device.address,
            name=device.name or adv.local_name,
            rssi=adv.rssi,
        )
        self._listener.on_sighting(ref)

    # -- connection -------------------------------------------------------

    async def connect(self, address: str) -> None:
        if self._client is not None:
            raise TransportError("A connection is already held")
        logger.info("Connecting to %s ...", address)
        client = BleakClient(
            address,
            disconnected_callback=self._on_disconnect,
            timeout=self._connect_timeout,
        )
        self._client = client
        try:
            await client.connect()
        except Exception as exc:
            if self._client is client:
                self._client = None
            raise TransportError(f"Failed to connect to {address}: {exc}") from exc

        if self._client is not client:
            # disconnect() ran while we were connecting
            await self._close(client)
            return
        logger.info("Connected to GATT server at %s", address)
        if self._listener is not None:
            self._listener.on_connection_change(True)

    async def discover_services(self) -> None:
        client = self._require_client()
        try:
            # bleak resolves the GATT table while connecting
            services = client.services
            table = {
                service.uuid.lower(): {c.uuid.lower() for c in service.characteristics}
                for service in services
            }
        except Exception as exc:
            raise TransportError(f"Service discovery failed: {exc}") from exc
        logger.debug("Resolved %d service(s)", len(table))
        if self._listener is not None:
            self._listener.on_services_resolved(True, table)

    async def subscribe(self, service_uuid: str, characteristic_uuid: str) -> None:
        client = self._require_client()
        service = client.services.get_service(service_uuid)
        char = service.get_characteristic(characteristic_uuid) if service else None
        if char is None:
            raise TransportError(
                f"Characteristic {characteristic_uuid} not found in {service_uuid}"
            )
        try:
            await client.start_notify(char, self._on_notify)
        except Exception as exc:
            raise TransportError(f"Failed to enable notifications: {exc}") from exc
        self._notify_char = char
        logger.info("Notifications enabled for %s", characteristic_uuid)
        if self._listener is not None:
            self._listener.on_subscribed(True)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        await self._close(client)
        logger.info("Disconnected from %s", client.address)

    async def _close(self, client: BleakClient) -> None:
        char, self._notify_char = self._notify_char, None
        if char is not None and client.is_connected:
            try:
                await client.stop_notify(char)
            except Exception as exc:
                logger.debug("stop_notify raised %s: %s", type(exc).__name__, exc)
        try:
            await client.disconnect()
        except Exception as exc:
            logger.warning("Error while disconnecting: %s", exc)

    # -- callbacks --------------------------------------------------------

    def _on_notify(self, _char: BleakGATTCharacteristic, data: bytearray) -> None:
        if self._listener is not None:
            self._listener.on_notification(TelemetryFrame(bytes(data)))

    def _on_disconnect(self, client: BleakClient) -> None:
        if client is not self._client:
            return
        logger.warning("Disconnected from GATT server")
        self._client = None
        self._notify_char = None
        if self._listener is not None:
            self._listener.on_connection_change(False)

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise TransportError("Not connected")
        return self._client
