from importlib.metadata import PackageNotFoundError, version

from .ble_protocol import FlipDirection, Velocity, get_uuid
from .bluetooth import (
    Bluetooth,
    BluetoothError,
    DeviceFilter,
    DeviceNotFoundError,
    GattError,
    get_default_bluetooth,
)
from .drone import CommandResult, MiniDrone, SessionState, SessionStateError, WriteStatus


def _get_version() -> str:
    """Get version from package metadata, falling back for source checkouts."""
    try:
        return version("minidrone")
    except PackageNotFoundError:
        return "0.0.0"


__version__ = _get_version()

__all__ = [
    "Bluetooth",
    "BluetoothError",
    "CommandResult",
    "DeviceFilter",
    "DeviceNotFoundError",
    "FlipDirection",
    "GattError",
    "MiniDrone",
    "SessionState",
    "SessionStateError",
    "Velocity",
    "WriteStatus",
    "get_default_bluetooth",
    "get_uuid",
]
