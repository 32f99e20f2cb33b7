"""
Mini Drone Session - connection bring-up, commands and keepalive loop

A MiniDrone owns one BLE session with one drone:

- Bring-up: select the device, connect GATT, discover the six primary
  services concurrently, register every characteristic by its UUID segment,
  then enable notifications (best effort)
- Commands: take off, land, flips and emergency land are written
  immediately to their characteristic
- Velocity: hover()/drive() only change the desired velocity, the update
  loop picks it up on its next tick
- Update loop: every 50ms the current velocity is written to fa0a. The
  firmware lands the drone when this keepalive stops.

Session states:

    IDLE ──connect()──> CONNECTING ──bring-up + settle──> READY
      │                     │                               │
      └──────disconnect()───┴────────disconnect()───────────┴──> DISCONNECTED

A session is single use. After DISCONNECTED a new MiniDrone is needed.

Write failures:

A failed write tears the session down and is otherwise absorbed: the
command returns a CommandResult with status RECOVERED instead of raising.
Callers that ignore the result cannot tell a sent command from a failed
one. The loop stops because the transport is gone.

Whenever the update loop ends, for whatever reason, the session is
disconnected: a READY session without keepalive would leave the drone
to the firmware fail-safe.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .ble_protocol import (
    ADVERTISED_SERVICE_SEGMENTS,
    DEVICE_NAME_PREFIXES,
    EMERGENCY_CHAR,
    MANEUVER_CHAR,
    MOVEMENT_CHAR,
    NOTIFICATION_SEGMENTS,
    SERVICE_SEGMENTS,
    FlipDirection,
    Velocity,
    encode_emergency_land,
    encode_flip,
    encode_land,
    encode_movement,
    encode_take_off,
    format_frame,
    get_uuid,
    segment_of,
)
from .bluetooth import (
    Bluetooth,
    BluetoothDevice,
    DeviceFilter,
    GattCharacteristic,
    GattServer,
    get_default_bluetooth,
)

logger = logging.getLogger(__name__)

# Timing Constants (seconds)
UPDATE_INTERVAL = 0.05  # Keepalive period required by the firmware
SETTLE_DELAY = 0.1      # Pause between bring-up and the first keepalive

DEVICE_FILTERS = tuple(
    [DeviceFilter(name_prefix=prefix) for prefix in DEVICE_NAME_PREFIXES]
    + [DeviceFilter(services=tuple(get_uuid(s) for s in ADVERTISED_SERVICE_SEGMENTS))]
)


class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.DISCONNECTED},
    SessionState.CONNECTING: {SessionState.READY, SessionState.DISCONNECTED},
    SessionState.READY: {SessionState.DISCONNECTED},
    SessionState.DISCONNECTED: set(),
}


class SessionStateError(RuntimeError):
    """Operation not allowed in the current session state"""


class WriteStatus(Enum):
    OK = "ok"
    RECOVERED = "recovered"  # write failed, session was torn down
    FATAL = "fatal"          # characteristic not registered, nothing written


@dataclass(frozen=True)
class CommandResult:
    status: WriteStatus
    characteristic: str
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status is WriteStatus.OK


class CharacteristicRegistry:
    """Discovered characteristics keyed by UUID segment"""

    def __init__(self) -> None:
        self._characteristics: dict[str, GattCharacteristic] = {}

    def register(self, characteristic: GattCharacteristic) -> str:
        segment = segment_of(characteristic.uuid)
        if segment in self._characteristics:
            logger.warning("Characteristic %s registered twice", segment)
        self._characteristics[segment] = characteristic
        return segment

    def get(self, segment: str) -> GattCharacteristic | None:
        return self._characteristics.get(segment)

    def __contains__(self, segment: object) -> bool:
        return segment in self._characteristics

    def __len__(self) -> int:
        return len(self._characteristics)

    def __iter__(self) -> Iterator[str]:
        return iter(self._characteristics)


class SequenceCounters:
    """Per-characteristic sequence numbers, never reset during a session"""

    def __init__(self) -> None:
        self._counters: dict[str, int] = {}

    def next(self, segment: str) -> int:
        value = self._counters.get(segment, 0) + 1
        self._counters[segment] = value
        return value

    def __getitem__(self, segment: str) -> int:
        return self._counters.get(segment, 0)


def _noop() -> None:
    pass


class MiniDrone:
    """
    One BLE session with a Mini Drone.

    Args:
        bluetooth: Host Bluetooth interface. Falls back to the default
            (BlueZ) when neither this nor connect()'s argument is given.
        update_interval: Pause between keepalive writes
        settle_delay: Pause between bring-up and the first keepalive

    Attributes:
        onconnected: Called without arguments once the drone is ready to fly
        ondisconnected: Called without arguments when the session ends or
            bring-up fails

    Both callbacks may be plain functions or coroutine functions.
    """

    def __init__(
        self,
        bluetooth: Bluetooth | None = None,
        *,
        update_interval: float = UPDATE_INTERVAL,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self.bluetooth = bluetooth
        self.update_interval = update_interval
        self.settle_delay = settle_delay

        self.onconnected: Callable[[], Any] = _noop
        self.ondisconnected: Callable[[], Any] = _noop

        self._state = SessionState.IDLE
        self._device: BluetoothDevice | None = None
        self._characteristics = CharacteristicRegistry()
        self._counters = SequenceCounters()
        self._velocity = Velocity()
        self._loop_task: asyncio.Task | None = None

    # ── state ─────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def device(self) -> BluetoothDevice | None:
        return self._device

    @property
    def characteristics(self) -> CharacteristicRegistry:
        return self._characteristics

    @property
    def counters(self) -> SequenceCounters:
        return self._counters

    @property
    def velocity(self) -> Velocity:
        """Copy of the current desired velocity"""
        return Velocity(**self._velocity.as_dict())

    @property
    def is_connected(self) -> bool:
        return (
            self._state is SessionState.READY
            and self._device is not None
            and self._device.gatt.connected
        )

    def _transition(self, new_state: SessionState) -> None:
        if new_state not in _TRANSITIONS[self._state]:
            raise SessionStateError(
                f"Cannot go from {self._state.value} to {new_state.value}"
            )
        logger.debug("Session %s -> %s", self._state.value, new_state.value)
        self._state = new_state

    async def _fire(self, callback: Callable[[], Any]) -> None:
        result = callback()
        if inspect.isawaitable(result):
            await result

    # ── bring-up ──────────────────────────────────────────────────────

    async def connect(self, bluetooth: Bluetooth | None = None) -> None:
        """
        Find the drone, bring up the GATT session and start the update loop.

        Returns once the drone is ready (onconnected has fired). The update
        loop keeps running in the background until the session ends, see
        wait_closed().

        Raises:
            SessionStateError: if this session was already used
            BluetoothError: if device selection or bring-up failed.
                ondisconnected fires before the error is raised. The device
                handle is kept so disconnect() can still clean up.
        """
        self._transition(SessionState.CONNECTING)

        bluetooth = bluetooth or self.bluetooth or get_default_bluetooth()
        try:
            await self._setup_device(bluetooth)
            await asyncio.sleep(self.settle_delay)
        except Exception as e:
            logger.error("Drone bring-up failed: %s", e)
            await self._fire(self.ondisconnected)
            raise

        if self._state is not SessionState.CONNECTING:
            logger.info("Disconnected during bring-up, update loop not started")
            # the handle may have been stored after disconnect() ran
            await self.disconnect()
            await self._fire(self.ondisconnected)
            return

        self._transition(SessionState.READY)
        logger.info("🚁 Drone ready (%d characteristics)", len(self._characteristics))
        await self._fire(self.onconnected)

        self._loop_task = asyncio.create_task(self._run_update_loop())

    async def _setup_device(self, bluetooth: Bluetooth) -> None:
        device = await bluetooth.request_device(DEVICE_FILTERS)
        # Keep the handle before connecting so disconnect() can clean up a
        # half-open GATT session.
        self._device = device
        logger.info("Connecting to %s", device.name)

        server = await device.gatt.connect()
        await self._setup_server(server)
        await self._setup_notifications()

    async def _setup_server(self, server: GattServer) -> None:
        await asyncio.gather(*(
            self._setup_service(server, segment) for segment in SERVICE_SEGMENTS
        ))

    async def _setup_service(self, server: GattServer, segment: str) -> None:
        service = await server.get_primary_service(get_uuid(segment))
        for characteristic in await service.get_characteristics():
            self._characteristics.register(characteristic)
        logger.debug("Service %s set up", segment)

    async def _setup_notifications(self) -> None:
        results = await asyncio.gather(*(
            self._start_notifications(segment) for segment in NOTIFICATION_SEGMENTS
        ))
        logger.info("📡 Notifications enabled on %d/%d characteristics",
                    sum(results), len(results))

    async def _start_notifications(self, segment: str) -> bool:
        # Not every firmware revision supports all of these
        characteristic = self._characteristics.get(segment)
        if characteristic is None:
            logger.debug("No characteristic %s, notifications skipped", segment)
            return False
        try:
            await characteristic.start_notifications()
        except Exception as e:
            logger.debug("Notifications on %s unavailable: %s", segment, e)
            return False
        return True

    # ── teardown ──────────────────────────────────────────────────────

    async def disconnect(self) -> None:
        """
        End the session. Safe to call any number of times.

        The transport is only asked to disconnect while it reports connected.
        The device handle is always cleared.
        """
        device, self._device = self._device, None
        if self._state is not SessionState.DISCONNECTED:
            self._transition(SessionState.DISCONNECTED)

        if device is None or not device.gatt.connected:
            return

        logger.info("🔌 Disconnecting from %s", device.name)
        try:
            await device.gatt.disconnect()
        except Exception as e:
            logger.warning("Disconnect failed: %s", e)

    async def wait_closed(self) -> None:
        """Wait until the update loop has stopped"""
        if self._loop_task is not None:
            await self._loop_task

    # ── writes ────────────────────────────────────────────────────────

    async def _write(self, segment: str, payload: bytes) -> CommandResult:
        characteristic = self._characteristics.get(segment)
        if characteristic is None:
            logger.error("Characteristic %s not available, %s not sent",
                         segment, format_frame(payload))
            return CommandResult(
                WriteStatus.FATAL, segment, KeyError(segment)
            )

        try:
            await characteristic.write_value(payload)
        except Exception as e:
            logger.warning("Write to %s failed, disconnecting: %s", segment, e)
            await self.disconnect()
            return CommandResult(WriteStatus.RECOVERED, segment, e)

        logger.debug("%s <- %s", segment, format_frame(payload))
        return CommandResult(WriteStatus.OK, segment)

    async def _send_movement(self) -> CommandResult:
        counter = self._counters.next(MOVEMENT_CHAR)
        return await self._write(MOVEMENT_CHAR, encode_movement(counter, self._velocity))

    async def _send_maneuver(self, encode: Callable[[int], bytes]) -> CommandResult:
        return await self._write(MANEUVER_CHAR, encode(self._counters.next(MANEUVER_CHAR)))

    async def _send_flip(self, direction: FlipDirection) -> CommandResult:
        counter = self._counters.next(MANEUVER_CHAR)
        return await self._write(MANEUVER_CHAR, encode_flip(counter, direction))

    # ── update loop ───────────────────────────────────────────────────

    async def _run_update_loop(self) -> None:
        try:
            await self._update_loop()
        except Exception as e:
            logger.exception("Update loop crashed: %s", e)
        finally:
            logger.info("🛬 Update loop stopped")
            # no keepalive without the loop, so the session must end with it
            await self.disconnect()
            await self._fire(self.ondisconnected)

    async def _update_loop(self) -> None:
        while self.is_connected:
            result = await self._send_movement()
            if result.status is WriteStatus.FATAL:
                break
            await asyncio.sleep(self.update_interval)

    # ── commands ──────────────────────────────────────────────────────

    async def take_off(self) -> CommandResult:
        return await self._send_maneuver(encode_take_off)

    async def land(self) -> CommandResult:
        return await self._send_maneuver(encode_land)

    async def back_flip(self) -> CommandResult:
        return await self._send_flip(FlipDirection.BACK)

    async def front_flip(self) -> CommandResult:
        return await self._send_flip(FlipDirection.FRONT)

    async def right_flip(self) -> CommandResult:
        return await self._send_flip(FlipDirection.RIGHT)

    async def left_flip(self) -> CommandResult:
        return await self._send_flip(FlipDirection.LEFT)

    async def emergency_land(self) -> CommandResult:
        counter = self._counters.next(EMERGENCY_CHAR)
        return await self._write(EMERGENCY_CHAR, encode_emergency_land(counter))

    def hover(self) -> None:
        """Stop moving. Sent with the next keepalive."""
        self._velocity.reset()

    def drive(self, vector: Mapping[str, float]) -> None:
        """
        Drive with the given velocities, w being the rotational one.

        Axes missing from `vector` are zero. Values are not range checked.
        Sent with the next keepalive.
        """
        self._velocity.set_from(vector)
