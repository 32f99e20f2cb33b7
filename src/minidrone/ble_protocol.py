"""
Mini Drone BLE Protocol - UUIDs, velocity state and command payloads

All GATT services and characteristics of the drone share one 128-bit UUID
template; only the 4 hex digits at offset 4 differ ("segment"). The session
keys its characteristic registry by that segment.

Wire format:

Every command is written as the complete value of a characteristic, no
fragmentation. The first two bytes are [length-class, sequence counter]:

- fa0a movement/keepalive: [2, n, 2, 0, 2, 0, moving, x, y, w, z, 0 * 8]
- fa0b take off:           [4, n, 2, 0, 1, 0]
- fa0b land:               [4, n, 2, 0, 3, 0]
- fa0b flip:               [4, n, 2, 4, 0, 0, direction, 0, 0, 0]
- fa0c emergency land:     [2, n, 2, 0, 4, 0]

Note the axis order x, y, w, z in the movement frame. This is the order
the firmware expects, do not reorder.

All bytes are unsigned: counters wrap at 256 and negative axis values are
sent as their two's complement byte.
"""

import math
from collections.abc import Mapping
from dataclasses import dataclass
from enum import IntEnum

UUID_TEMPLATE = "9a66{}-0800-9191-11e4-012d1540cb8e"

# GATT layout
SERVICE_SEGMENTS = ("fa00", "fb00", "fc00", "fd21", "fd51", "fe00")
NOTIFICATION_SEGMENTS = (
    "fb0f", "fb0e", "fb1b", "fb1c",
    "fd22", "fd23", "fd24", "fd52", "fd53", "fd54",
)

# Device selection
DEVICE_NAME_PREFIXES = ("Mars", "RS", "Travis")
ADVERTISED_SERVICE_SEGMENTS = ("fa00", "fb00", "fd21", "fd51")

# Command destinations
MOVEMENT_CHAR = "fa0a"
MANEUVER_CHAR = "fa0b"
EMERGENCY_CHAR = "fa0c"

AXES = ("x", "y", "z", "w")

MOVEMENT_PADDING = 8


class FlipDirection(IntEnum):
    """Direction code carried in the flip payload."""
    BACK = 0
    FRONT = 1
    RIGHT = 2
    LEFT = 3


def get_uuid(segment: str) -> str:
    """Expand a 4 hex digit segment into the full service/characteristic UUID"""
    return UUID_TEMPLATE.format(segment)


def segment_of(uuid: str) -> str:
    """Extract the unique segment from a full UUID"""
    return uuid[4:8]


def to_byte(value: float) -> int:
    """Reduce a value to one unsigned byte (truncates toward zero, wraps at 256)

    NaN and infinities are sent as 0.
    """
    if not math.isfinite(value):
        return 0
    return int(value) & 0xFF


@dataclass
class Velocity:
    """
    Desired motion of the drone.

    x, y, z are the translational axes, w is the rotational velocity.
    Values are signed drive intensities passed to the firmware unchanged
    (the firmware clamps them).
    """
    x: float = 0
    y: float = 0
    z: float = 0
    w: float = 0

    @property
    def is_moving(self) -> bool:
        return any(getattr(self, axis) != 0 for axis in AXES)

    def reset(self) -> None:
        for axis in AXES:
            setattr(self, axis, 0)

    def set_from(self, vector: Mapping[str, float]) -> None:
        """Zero all axes, then copy the axes present in `vector`.

        Keys other than x, y, z and w are ignored.
        """
        self.reset()
        for axis in AXES:
            value = vector.get(axis)
            if value is not None:
                setattr(self, axis, value)

    def as_dict(self) -> dict[str, float]:
        return {axis: getattr(self, axis) for axis in AXES}


def _frame(values: list[float]) -> bytes:
    return bytes(to_byte(v) for v in values)


def encode_movement(counter: int, velocity: Velocity) -> bytes:
    moving = 1 if velocity.is_moving else 0
    return _frame(
        [2, counter, 2, 0, 2, 0, moving,
         velocity.x, velocity.y, velocity.w, velocity.z]
        + [0] * MOVEMENT_PADDING
    )


def encode_take_off(counter: int) -> bytes:
    return _frame([4, counter, 2, 0, 1, 0])


def encode_land(counter: int) -> bytes:
    return _frame([4, counter, 2, 0, 3, 0])


def encode_flip(counter: int, direction: FlipDirection) -> bytes:
    return _frame([4, counter, 2, 4, 0, 0, int(direction), 0, 0, 0])


def encode_emergency_land(counter: int) -> bytes:
    return _frame([2, counter, 2, 0, 4, 0])


def format_frame(payload: bytes) -> str:
    """Hex dump used for debug logging"""
    return " ".join(f"{b:02X}" for b in payload)
