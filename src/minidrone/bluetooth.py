"""
Host Bluetooth Abstraction Layer

The drone session only talks to the host Bluetooth stack through the
interfaces defined here, so the backend can be swapped transparently:

- BlueZ over D-Bus (default, see ble_bluez.py)
- in-memory doubles in the test suite

The shape follows the Web Bluetooth object model: a Bluetooth object hands
out a selected device, the device owns a GATT server, the server hands out
primary services, services enumerate their characteristics.

Usage:
    bluetooth = get_default_bluetooth()
    device = await bluetooth.request_device([DeviceFilter(name_prefix="RS")])
    server = await device.gatt.connect()
    service = await server.get_primary_service(uuid)
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .config_loader import BluetoothConfig

logger = logging.getLogger(__name__)


class BluetoothError(Exception):
    """Base class for host Bluetooth failures"""


class DeviceNotFoundError(BluetoothError):
    """No device matched the filters, or the selection was cancelled"""


class GattError(BluetoothError):
    """GATT connect, discovery, write or notification failure"""


@dataclass(frozen=True)
class DeviceFilter:
    """
    One device selection filter.

    A filter matches when the name starts with `name_prefix` (if set) and
    the device advertises every UUID in `services`. A device is offered
    when any of the requested filters matches.
    """
    name_prefix: str | None = None
    services: tuple[str, ...] = ()

    def matches(self, name: str | None, service_uuids: Iterable[str]) -> bool:
        if self.name_prefix is not None:
            if not name or not name.startswith(self.name_prefix):
                return False
        if self.services:
            advertised = {uuid.lower() for uuid in service_uuids}
            if not all(uuid.lower() in advertised for uuid in self.services):
                return False
        return self.name_prefix is not None or bool(self.services)


def matches_any(
    filters: Sequence[DeviceFilter], name: str | None, service_uuids: Iterable[str]
) -> bool:
    uuids = list(service_uuids)
    return any(f.matches(name, uuids) for f in filters)


class GattCharacteristic(ABC):
    """A single characteristic of a discovered service"""

    @property
    @abstractmethod
    def uuid(self) -> str:
        pass

    @abstractmethod
    async def write_value(self, data: bytes) -> None:
        """
        Write `data` as the full characteristic value.

        Raises:
            GattError: if the write could not be delivered
        """
        pass

    @abstractmethod
    async def start_notifications(self) -> None:
        """
        Enable notifications on this characteristic.

        Raises:
            GattError: if the characteristic does not support notifications
        """
        pass


class GattService(ABC):
    """A primary GATT service"""

    @property
    @abstractmethod
    def uuid(self) -> str:
        pass

    @abstractmethod
    async def get_characteristics(self) -> list[GattCharacteristic]:
        pass


class GattServer(ABC):
    """GATT connection of one device"""

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Transport connected flag, authoritative for the session"""
        pass

    @abstractmethod
    async def connect(self) -> "GattServer":
        """
        Establish the GATT connection.

        Returns:
            The connected server (self)

        Raises:
            GattError: if the connection could not be established
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def get_primary_service(self, uuid: str) -> GattService:
        """
        Look up a primary service by UUID.

        Raises:
            GattError: if the device has no such service
        """
        pass


class BluetoothDevice(ABC):
    """A selected peripheral"""

    @property
    @abstractmethod
    def name(self) -> str | None:
        pass

    @property
    @abstractmethod
    def gatt(self) -> GattServer:
        pass


class Bluetooth(ABC):
    """Entry point of a host Bluetooth stack"""

    @abstractmethod
    async def request_device(self, filters: Sequence[DeviceFilter]) -> BluetoothDevice:
        """
        Select one device matching any of the filters.

        Raises:
            DeviceNotFoundError: if no matching device was found
        """
        pass


def get_default_bluetooth(config: "BluetoothConfig | None" = None) -> Bluetooth:
    """
    Build the default host Bluetooth interface (BlueZ over D-Bus).

    Args:
        config: Adapter and timeout settings, defaults if omitted

    Returns:
        Bluetooth instance bound to the configured adapter
    """
    from .ble_bluez import BlueZBluetooth
    from .config_loader import BluetoothConfig

    config = config or BluetoothConfig()
    logger.debug("Using BlueZ adapter %s", config.adapter)
    return BlueZBluetooth(
        adapter=config.adapter,
        scan_timeout=config.scan_timeout,
        connect_timeout=config.connect_timeout,
    )
