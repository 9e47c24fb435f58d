"""BLE transport used by the mesh session.

``BleTransport`` is the narrow surface the session needs: scan, connect, bind
the Plejd characteristics, read/write/subscribe, and power the adapter.
``BleakTransport`` implements it with bleak for GATT and dbus-next for the
BlueZ adapter object (power and stale connection cleanup), which bleak does
not expose.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError
from dbus_next import BusType, Variant
from dbus_next.aio import MessageBus
from dbus_next.errors import DBusError

from plejd_controller.const import (
    AUTH_UUID,
    BLUEZ_ADAPTER_INTERFACE,
    BLUEZ_DEVICE_INTERFACE,
    BLUEZ_SERVICE_NAME,
    DATA_UUID,
    DBUS_OM_INTERFACE,
    DBUS_PROP_INTERFACE,
    LAST_DATA_UUID,
    PING_UUID,
    PLEJD_SERVICE_UUID,
)
from plejd_controller.exceptions import AdapterNotFoundError, CharacteristicsError, PlejdConnectionError
from plejd_controller.logging_abstraction import PlejdLogger, get_logger

logger = get_logger(__name__)

type NotificationCallback = Callable[[bytes], None]


@dataclass(frozen=True, slots=True)
class Candidate:
    """A node advertising the Plejd mesh service."""

    address: str
    rssi: int
    name: str | None = None
    device: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class MeshCharacteristics:
    data: str = DATA_UUID
    last_data: str = LAST_DATA_UUID
    auth: str = AUTH_UUID
    ping: str = PING_UUID


@dataclass(slots=True)
class BleLink:
    """An open GATT connection to one candidate."""

    candidate: Candidate
    handle: Any = None


class BleTransport(Protocol):
    async def prepare(self) -> None:
        """Locate and power on the adapter; raises ``AdapterNotFoundError``."""
        ...

    async def scan(self, service_uuid: str, timeout: float) -> list[Candidate]: ...

    async def connect(self, candidate: Candidate) -> BleLink: ...

    async def disconnect(self, link: BleLink) -> None: ...

    async def resolve_characteristics(self, link: BleLink, service_uuid: str) -> MeshCharacteristics: ...

    async def write(self, link: BleLink, char_uuid: str, data: bytes) -> None: ...

    async def read(self, link: BleLink, char_uuid: str) -> bytes: ...

    async def subscribe(self, link: BleLink, char_uuid: str, callback: NotificationCallback) -> None: ...

    async def set_adapter_power(self, powered: bool) -> None: ...


class BleakTransport:
    """bleak + BlueZ implementation of ``BleTransport``."""

    lp: str = "BleakTransport:"
    logger: PlejdLogger = logger
    connect_timeout: float = 20.0

    def __init__(self, adapter: str | None = None, logger: PlejdLogger | None = None) -> None:
        self.adapter: str | None = adapter
        self.adapter_path: str | None = None
        if logger is not None:
            self.logger = logger
        self._bus: MessageBus | None = None

    async def _get_bus(self) -> MessageBus:
        if self._bus is None or not self._bus.connected:
            self._bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        return self._bus

    def close(self) -> None:
        if self._bus is not None and self._bus.connected:
            self._bus.disconnect()
        self._bus = None

    async def _managed_objects(self) -> dict[str, dict[str, dict[str, Variant]]]:
        bus = await self._get_bus()
        introspection = await bus.introspect(BLUEZ_SERVICE_NAME, "/")
        manager = bus.get_proxy_object(BLUEZ_SERVICE_NAME, "/", introspection).get_interface(DBUS_OM_INTERFACE)
        return await manager.call_get_managed_objects()  # type: ignore[attr-defined]

    async def _find_adapter_path(self) -> str:
        lp = f"{self.lp}find_adapter:"
        try:
            objects = await self._managed_objects()
        except (DBusError, OSError) as e:
            raise AdapterNotFoundError(f"unable to query BlueZ: {e}") from e
        for path, interfaces in objects.items():
            if BLUEZ_ADAPTER_INTERFACE not in interfaces:
                continue
            if self.adapter is None or path.endswith(f"/{self.adapter}"):
                self.logger.debug("%s Using adapter %s", lp, path)
                return path
        raise AdapterNotFoundError()

    async def _adapter_properties(self) -> Any:
        bus = await self._get_bus()
        if self.adapter_path is None:
            self.adapter_path = await self._find_adapter_path()
        introspection = await bus.introspect(BLUEZ_SERVICE_NAME, self.adapter_path)
        proxy = bus.get_proxy_object(BLUEZ_SERVICE_NAME, self.adapter_path, introspection)
        return proxy.get_interface(DBUS_PROP_INTERFACE)

    async def prepare(self) -> None:
        lp = f"{self.lp}prepare:"
        self.adapter_path = await self._find_adapter_path()
        await self.set_adapter_power(True)
        await self._remove_stale_plejd_devices()
        self.logger.info("%s Bluetooth adapter ready", lp, extra={"adapter": self.adapter_path})

    async def _remove_stale_plejd_devices(self) -> None:
        """Drop cached Plejd nodes from BlueZ so a fresh scan sees current RSSI values."""
        lp = f"{self.lp}cleanup:"
        bus = await self._get_bus()
        objects = await self._managed_objects()
        adapter_introspection = await bus.introspect(BLUEZ_SERVICE_NAME, self.adapter_path or "")
        adapter = bus.get_proxy_object(
            BLUEZ_SERVICE_NAME,
            self.adapter_path or "",
            adapter_introspection,
        ).get_interface(BLUEZ_ADAPTER_INTERFACE)
        for path, interfaces in objects.items():
            device_props = interfaces.get(BLUEZ_DEVICE_INTERFACE)
            if not device_props or not path.startswith(f"{self.adapter_path}/"):
                continue
            uuids = device_props.get("UUIDs")
            if uuids is None or PLEJD_SERVICE_UUID not in uuids.value:
                continue
            try:
                await adapter.call_remove_device(path)  # type: ignore[attr-defined]
            except DBusError as e:
                self.logger.warning("%s Failed to remove %s: %s", lp, path, e)
            else:
                self.logger.debug("%s Removed cached device %s", lp, path)

    async def set_adapter_power(self, powered: bool) -> None:
        lp = f"{self.lp}power:"
        props = await self._adapter_properties()
        await props.call_set(BLUEZ_ADAPTER_INTERFACE, "Powered", Variant("b", powered))
        self.logger.info("%s Adapter powered %s", lp, "on" if powered else "off")

    async def scan(self, service_uuid: str, timeout: float) -> list[Candidate]:
        lp = f"{self.lp}scan:"
        self.logger.debug("%s Scanning %.1fs for %s", lp, timeout, service_uuid)
        found = await BleakScanner.discover(timeout=timeout, return_adv=True, service_uuids=[service_uuid])
        candidates = [
            Candidate(address=device.address, rssi=adv.rssi, name=device.name, device=device)
            for device, adv in found.values()
        ]
        self.logger.info("%s Found %d Plejd node(s)", lp, len(candidates))
        return candidates

    async def connect(self, candidate: Candidate) -> BleLink:
        client = BleakClient(candidate.device or candidate.address, timeout=self.connect_timeout)
        try:
            await client.connect()
        except (BleakError, TimeoutError, OSError) as e:
            raise PlejdConnectionError(f"connect to {candidate.address} failed: {e}", state="connecting") from e
        return BleLink(candidate=candidate, handle=client)

    async def disconnect(self, link: BleLink) -> None:
        client: BleakClient = link.handle
        with contextlib.suppress(BleakError, TimeoutError, OSError):
            await client.disconnect()

    async def resolve_characteristics(self, link: BleLink, service_uuid: str) -> MeshCharacteristics:
        client: BleakClient = link.handle
        service = client.services.get_service(service_uuid)
        wanted = MeshCharacteristics()
        uuids = (wanted.data, wanted.last_data, wanted.auth, wanted.ping)
        if service is None:
            raise CharacteristicsError(list(uuids))
        missing = [uuid for uuid in uuids if service.get_characteristic(uuid) is None]
        if missing:
            raise CharacteristicsError(missing)
        return wanted

    async def write(self, link: BleLink, char_uuid: str, data: bytes) -> None:
        client: BleakClient = link.handle
        await client.write_gatt_char(char_uuid, data, response=True)

    async def read(self, link: BleLink, char_uuid: str) -> bytes:
        client: BleakClient = link.handle
        return bytes(await client.read_gatt_char(char_uuid))

    async def subscribe(self, link: BleLink, char_uuid: str, callback: NotificationCallback) -> None:
        client: BleakClient = link.handle

        def _on_notify(_sender: object, data: bytearray) -> None:
            callback(bytes(data))

        await client.start_notify(char_uuid, _on_notify)
