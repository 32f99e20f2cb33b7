"""
Shared pytest fixtures.

Provides an in-memory Bluetooth stack shaped like the real drone: six
primary services, the fa0a/fa0b/fa0c command characteristics and the
notification characteristics. Every write is logged on the GATT server so
tests can inspect frames per characteristic and in global order.
"""

import asyncio
from collections.abc import Sequence

import pytest
import pytest_asyncio

from minidrone.ble_protocol import get_uuid, segment_of
from minidrone.bluetooth import (
    Bluetooth,
    BluetoothDevice,
    DeviceFilter,
    DeviceNotFoundError,
    GattCharacteristic,
    GattError,
    GattServer,
    GattService,
)
from minidrone.drone import MiniDrone

# service segment -> characteristic segments, as exposed by the drone
DRONE_LAYOUT = {
    "fa00": ["fa0a", "fa0b", "fa0c", "fa1e"],
    "fb00": ["fb0e", "fb0f", "fb1b", "fb1c"],
    "fc00": ["fc01"],
    "fd21": ["fd22", "fd23", "fd24"],
    "fd51": ["fd52", "fd53", "fd54"],
    "fe00": ["fe01", "fe02"],
}


def pytest_configure(config):
    """Register custom pytest markers for test categorization."""
    config.addinivalue_line("markers", "unit: fast test without timing dependencies")
    config.addinivalue_line(
        "markers", "integration: full session against the in-memory Bluetooth stack"
    )


class FakeCharacteristic(GattCharacteristic):
    def __init__(self, server: "FakeGattServer", segment: str, notify_supported: bool = True):
        self.server = server
        self._uuid = get_uuid(segment)
        self.notify_supported = notify_supported
        self.notifying = False

    @property
    def uuid(self) -> str:
        return self._uuid

    async def write_value(self, data: bytes) -> None:
        if not self.server.connected:
            raise GattError("not connected")
        if self.server.fail_writes:
            raise GattError("write rejected")
        self.server.log.append((segment_of(self._uuid), bytes(data)))
        await asyncio.sleep(0)

    async def start_notifications(self) -> None:
        await asyncio.sleep(0)
        if not self.notify_supported:
            raise GattError("notifications not supported")
        self.notifying = True


class FakeService(GattService):
    def __init__(self, segment: str, characteristics: list[FakeCharacteristic]):
        self._uuid = get_uuid(segment)
        self.characteristics = characteristics

    @property
    def uuid(self) -> str:
        return self._uuid

    async def get_characteristics(self) -> list[GattCharacteristic]:
        await asyncio.sleep(0)
        return list(self.characteristics)


class FakeGattServer(GattServer):
    def __init__(self, layout: dict[str, list[str]], unsupported_notifications=()):
        self._connected = False
        self.fail_connect = False
        self.fail_writes = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.log: list[tuple[str, bytes]] = []
        self.characteristics: dict[str, FakeCharacteristic] = {}
        self.services: dict[str, FakeService] = {}

        for service_segment, char_segments in layout.items():
            chars = []
            for segment in char_segments:
                char = FakeCharacteristic(
                    self, segment, notify_supported=segment not in unsupported_notifications
                )
                self.characteristics[segment] = char
                chars.append(char)
            service = FakeService(service_segment, chars)
            self.services[service.uuid] = service

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> "FakeGattServer":
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.fail_connect:
            raise GattError("connect failed")
        self._connected = True
        return self

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._connected = False

    def drop(self) -> None:
        """Simulate link loss reported by the transport"""
        self._connected = False

    async def get_primary_service(self, uuid: str) -> GattService:
        await asyncio.sleep(0)
        try:
            return self.services[uuid]
        except KeyError:
            raise GattError(f"no service {uuid}") from None

    def writes_to(self, segment: str) -> list[bytes]:
        return [data for seg, data in self.log if seg == segment]


class FakeDevice(BluetoothDevice):
    def __init__(self, name: str, server: FakeGattServer):
        self._name = name
        self._gatt = server

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def gatt(self) -> FakeGattServer:
        return self._gatt


class FakeBluetooth(Bluetooth):
    def __init__(self, device: FakeDevice | None):
        self.device = device
        self.requests: list[Sequence[DeviceFilter]] = []

    async def request_device(self, filters: Sequence[DeviceFilter]) -> BluetoothDevice:
        self.requests.append(filters)
        await asyncio.sleep(0)
        if self.device is None:
            raise DeviceNotFoundError("selection cancelled")
        return self.device


def make_bluetooth(layout=None, unsupported_notifications=(), name="RS_B123") -> FakeBluetooth:
    server = FakeGattServer(layout or DRONE_LAYOUT, unsupported_notifications)
    return FakeBluetooth(FakeDevice(name, server))


@pytest.fixture
def fake_bluetooth() -> FakeBluetooth:
    return make_bluetooth()


@pytest.fixture
def fake_server(fake_bluetooth) -> FakeGattServer:
    return fake_bluetooth.device.gatt


@pytest.fixture
def drone(fake_bluetooth) -> MiniDrone:
    """Unconnected drone with short timings"""
    return MiniDrone(fake_bluetooth, update_interval=0.01, settle_delay=0)


@pytest_asyncio.fixture
async def connected_drone(drone):
    """Drone with a running update loop, torn down after the test"""
    await drone.connect()
    yield drone
    await drone.disconnect()
    await drone.wait_closed()
