#!/usr/bin/env python3
"""
BlueZ Backend - D-Bus implementation of the host Bluetooth interface

Talks to BlueZ on the system bus. It handles:

- Device selection: devices BlueZ already knows are matched first, if they
  are in range (RSSI present) or connected. Otherwise an LE discovery runs
  until a device matching the filters shows up
- GATT connection management (Connect, ServicesResolved, Disconnect)
- Primary service and characteristic lookup in the managed object tree
- Characteristic writes and notification enabling

Every dbus_next error is re-raised as a GattError or DeviceNotFoundError,
so callers never see D-Bus types. Writes also wrap the OSError/EOFError
dbus_next raises when the bus socket closes under it.

Connection state:

BlueZ reports link loss through a PropertiesChanged signal on the device
("Connected" -> False). The GATT server tracks that signal so `connected`
can be read synchronously by the drone's update loop.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from dbus_next import Variant
from dbus_next.aio import MessageBus
from dbus_next.constants import BusType
from dbus_next.errors import DBusError

from .bluetooth import (
    Bluetooth,
    BluetoothDevice,
    DeviceFilter,
    DeviceNotFoundError,
    GattCharacteristic,
    GattError,
    GattServer,
    GattService,
    matches_any,
)

logger = logging.getLogger(__name__)

# DBus constants
BLUEZ_SERVICE_NAME = "org.bluez"
ADAPTER_INTERFACE = "org.bluez.Adapter1"
DEVICE_INTERFACE = "org.bluez.Device1"
GATT_SERVICE_INTERFACE = "org.bluez.GattService1"
GATT_CHARACTERISTIC_INTERFACE = "org.bluez.GattCharacteristic1"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"
OBJECT_MANAGER_INTERFACE = "org.freedesktop.DBus.ObjectManager"

# Timing Constants (seconds)
BLE_SERVICES_CHECK_INTERVAL = 0.25  # Service resolution polling interval
BLE_SCAN_POLL_INTERVAL = 0.5       # Cached device re-check during discovery
BLE_DISCONNECT_TIMEOUT = 3.0
BLE_WRITE_TIMEOUT = 1.0


def _prop(props: dict[str, Variant], key: str, default: Any = None) -> Any:
    """Unwrap a Variant from a BlueZ property dict"""
    value = props.get(key)
    return value.value if value is not None else default


def _is_present(device_props: dict[str, Variant]) -> bool:
    """Cached BlueZ devices only carry RSSI while advertising in range"""
    return "RSSI" in device_props or bool(_prop(device_props, "Connected", False))


async def _get_interface(bus: MessageBus, path: str, interface: str) -> Any:
    introspection = await bus.introspect(BLUEZ_SERVICE_NAME, path)
    proxy = bus.get_proxy_object(BLUEZ_SERVICE_NAME, path, introspection)
    return proxy.get_interface(interface)


async def _managed_objects(bus: MessageBus) -> dict[str, dict[str, dict[str, Variant]]]:
    try:
        obj_mgr = await _get_interface(bus, "/", OBJECT_MANAGER_INTERFACE)
        return await obj_mgr.call_get_managed_objects()
    except DBusError as e:
        raise GattError(f"Could not read BlueZ object tree: {e}") from e


class BlueZGattCharacteristic(GattCharacteristic):
    def __init__(self, path: str, uuid: str, char_iface: Any) -> None:
        self.path = path
        self._uuid = uuid
        self._char_iface = char_iface

    @property
    def uuid(self) -> str:
        return self._uuid

    async def write_value(self, data: bytes) -> None:
        try:
            await asyncio.wait_for(
                self._char_iface.call_write_value(bytes(data), {}),
                timeout=BLE_WRITE_TIMEOUT,
            )
        except asyncio.TimeoutError:
            raise GattError(f"Timeout writing {self._uuid}") from None
        except DBusError as e:
            raise GattError(f"Write to {self._uuid} failed: {e}") from e
        except (OSError, EOFError) as e:
            raise GattError(f"Write to {self._uuid} failed, bus gone: {e}") from e

    async def start_notifications(self) -> None:
        try:
            await self._char_iface.call_start_notify()
        except DBusError as e:
            raise GattError(f"StartNotify on {self._uuid} failed: {e}") from e
        except (OSError, EOFError) as e:
            raise GattError(f"StartNotify on {self._uuid} failed, bus gone: {e}") from e


class BlueZGattService(GattService):
    def __init__(self, bus: MessageBus, path: str, uuid: str) -> None:
        self.bus = bus
        self.path = path
        self._uuid = uuid

    @property
    def uuid(self) -> str:
        return self._uuid

    async def get_characteristics(self) -> list[GattCharacteristic]:
        objects = await _managed_objects(self.bus)

        found = []
        for path, interfaces in objects.items():
            props = interfaces.get(GATT_CHARACTERISTIC_INTERFACE)
            if props is None or _prop(props, "Service") != self.path:
                continue
            found.append((path, _prop(props, "UUID", "").lower()))

        try:
            ifaces = await asyncio.gather(*(
                _get_interface(self.bus, path, GATT_CHARACTERISTIC_INTERFACE)
                for path, _ in found
            ))
        except DBusError as e:
            raise GattError(f"Characteristic discovery on {self._uuid} failed: {e}") from e

        logger.debug("Service %s: %d characteristic(s)", self._uuid, len(found))
        return [
            BlueZGattCharacteristic(path, uuid, iface)
            for (path, uuid), iface in zip(found, ifaces)
        ]


class BlueZGattServer(GattServer):
    def __init__(self, bus: MessageBus, device_path: str, connect_timeout: float) -> None:
        self.bus = bus
        self.path = device_path
        self.connect_timeout = connect_timeout
        self.dev_iface = None
        self.props_iface = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def _ensure_interfaces(self) -> None:
        if self.dev_iface is not None:
            return
        introspection = await self.bus.introspect(BLUEZ_SERVICE_NAME, self.path)
        device_obj = self.bus.get_proxy_object(BLUEZ_SERVICE_NAME, self.path, introspection)
        self.dev_iface = device_obj.get_interface(DEVICE_INTERFACE)
        self.props_iface = device_obj.get_interface(PROPERTIES_INTERFACE)
        self.props_iface.on_properties_changed(self._on_props_changed)

    def _on_props_changed(
        self, iface: str, changed: dict[str, Variant], invalidated: list[str]
    ) -> None:
        if iface != DEVICE_INTERFACE or "Connected" not in changed:
            return
        self._connected = bool(changed["Connected"].value)
        if not self._connected:
            logger.info("🔌 %s reports disconnected", self.path)

    async def connect(self) -> "BlueZGattServer":
        try:
            await self._ensure_interfaces()
            connected = (await self.props_iface.call_get(DEVICE_INTERFACE, "Connected")).value
            if not connected:
                await asyncio.wait_for(
                    self.dev_iface.call_connect(), timeout=self.connect_timeout
                )
        except asyncio.TimeoutError:
            raise GattError(f"Connection timeout after {self.connect_timeout}s") from None
        except DBusError as e:
            raise GattError(f"Connect failed: {e}") from e

        logger.info("✅ connected to %s, waiting for service discovery", self.path)

        if not await self._wait_for_services_resolved(self.connect_timeout):
            raise GattError(f"Services not resolved within {self.connect_timeout}s")

        self._connected = True
        return self

    async def _wait_for_services_resolved(self, timeout: float) -> bool:
        """Wait for BLE services to be discovered and resolved"""
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while (loop.time() - start_time) < timeout:
            try:
                services_resolved = (
                    await self.props_iface.call_get(DEVICE_INTERFACE, "ServicesResolved")
                ).value
                if services_resolved:
                    logger.debug(
                        "Services resolved after %.1fs", loop.time() - start_time
                    )
                    return True
            except DBusError as e:
                logger.debug("Error checking ServicesResolved: %s", e)

            await asyncio.sleep(BLE_SERVICES_CHECK_INTERVAL)

        return False

    async def disconnect(self) -> None:
        self._connected = False
        if self.dev_iface is None:
            return
        try:
            await asyncio.wait_for(
                self.dev_iface.call_disconnect(), timeout=BLE_DISCONNECT_TIMEOUT
            )
        except asyncio.TimeoutError:
            raise GattError("Disconnect timeout") from None
        except DBusError as e:
            raise GattError(f"Disconnect failed: {e}") from e
        finally:
            self.props_iface.off_properties_changed(self._on_props_changed)
            self.dev_iface = None
            self.props_iface = None

    async def get_primary_service(self, uuid: str) -> BlueZGattService:
        objects = await _managed_objects(self.bus)

        for path, interfaces in objects.items():
            props = interfaces.get(GATT_SERVICE_INTERFACE)
            if props is None or _prop(props, "Device") != self.path:
                continue
            if not _prop(props, "Primary", True):
                continue
            if _prop(props, "UUID", "").lower() == uuid.lower():
                return BlueZGattService(self.bus, path, uuid)

        raise GattError(f"No primary service {uuid} on {self.path}")


class BlueZDevice(BluetoothDevice):
    def __init__(
        self, bus: MessageBus, path: str, name: str | None, address: str | None,
        connect_timeout: float,
    ) -> None:
        self.path = path
        self.address = address
        self._name = name
        self._gatt = BlueZGattServer(bus, path, connect_timeout)

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def gatt(self) -> BlueZGattServer:
        return self._gatt

    def __repr__(self) -> str:
        return f"BlueZDevice({self._name!r}, {self.address})"


class BlueZBluetooth(Bluetooth):
    """
    Host Bluetooth interface backed by BlueZ.

    Args:
        adapter: HCI adapter name, e.g. "hci0"
        scan_timeout: Seconds to wait for a matching device during discovery
        connect_timeout: Seconds for Connect and for service resolution
        bus: Existing system bus connection (one is opened lazily otherwise)
    """

    def __init__(
        self,
        adapter: str = "hci0",
        scan_timeout: float = 10.0,
        connect_timeout: float = 10.0,
        bus: MessageBus | None = None,
    ) -> None:
        self.adapter = adapter
        self.adapter_path = f"/org/bluez/{adapter}"
        self.scan_timeout = scan_timeout
        self.connect_timeout = connect_timeout
        self.bus = bus

    async def _get_bus(self) -> MessageBus:
        if self.bus is None:
            self.bus = await MessageBus(bus_type=BusType.SYSTEM).connect()
        return self.bus

    def _match_device(
        self, path: str, interfaces: dict[str, dict[str, Variant]],
        filters: Sequence[DeviceFilter],
    ) -> BlueZDevice | None:
        props = interfaces.get(DEVICE_INTERFACE)
        if props is None or not path.startswith(self.adapter_path + "/"):
            return None

        name = _prop(props, "Name")
        if not matches_any(filters, name, _prop(props, "UUIDs", [])):
            return None

        return BlueZDevice(
            self.bus, path, name, _prop(props, "Address"), self.connect_timeout
        )

    async def _find_present(
        self, bus: MessageBus, filters: Sequence[DeviceFilter]
    ) -> BlueZDevice | None:
        """Matching device from the BlueZ cache that is in range or connected"""
        objects = await _managed_objects(bus)

        for path, interfaces in objects.items():
            device = self._match_device(path, interfaces, filters)
            if device is None:
                continue
            if not _is_present(interfaces[DEVICE_INTERFACE]):
                logger.debug("Skipping cached device %s, not in range", device)
                continue
            return device
        return None

    async def request_device(self, filters: Sequence[DeviceFilter]) -> BlueZDevice:
        bus = await self._get_bus()

        try:
            device = await self._find_present(bus, filters)
        except GattError as e:
            raise DeviceNotFoundError(str(e)) from e

        if device is not None:
            logger.info("💾 Found known device %s", device)
            return device

        return await self._discover(bus, filters)

    async def _discover(self, bus: MessageBus, filters: Sequence[DeviceFilter]) -> BlueZDevice:
        found: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_interfaces_added(path: str, interfaces: dict[str, dict[str, Variant]]) -> None:
            if found.done():
                return
            device = self._match_device(path, interfaces, filters)
            if device is not None:
                found.set_result(device)

        try:
            obj_mgr = await _get_interface(bus, "/", OBJECT_MANAGER_INTERFACE)
            adapter = await _get_interface(bus, self.adapter_path, ADAPTER_INTERFACE)
        except DBusError as e:
            raise DeviceNotFoundError(f"Adapter {self.adapter} unavailable: {e}") from e

        obj_mgr.on_interfaces_added(on_interfaces_added)
        try:
            await adapter.call_set_discovery_filter({"Transport": Variant("s", "le")})
            await adapter.call_start_discovery()
            logger.info("🔍 Scanning for drone on %s (timeout %.0fs)", self.adapter, self.scan_timeout)

            # known devices get no InterfacesAdded, only an RSSI update
            loop = asyncio.get_running_loop()
            deadline = loop.time() + self.scan_timeout
            while not found.done():
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise DeviceNotFoundError(f"No drone found within {self.scan_timeout}s")
                device = await self._find_present(bus, filters)
                if device is not None:
                    found.set_result(device)
                    break
                try:
                    await asyncio.wait_for(
                        asyncio.shield(found), min(BLE_SCAN_POLL_INTERVAL, remaining)
                    )
                except asyncio.TimeoutError:
                    pass

            device = found.result()
            logger.info("✅ Discovered %s", device)
            return device

        except (GattError, DBusError) as e:
            raise DeviceNotFoundError(f"Discovery failed: {e}") from e

        finally:
            obj_mgr.off_interfaces_added(on_interfaces_added)
            try:
                await adapter.call_stop_discovery()
            except DBusError as e:
                logger.debug("StopDiscovery: %s", e)
