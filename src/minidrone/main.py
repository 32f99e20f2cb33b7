#!/usr/bin/env python3
"""
minidrone command line - fly a short scripted routine

Connects to the first drone found, takes off, runs a routine, lands and
disconnects. Ctrl+C sends an emergency land before disconnecting.

    minidrone hover --flight-time 5
    minidrone flip --adapter hci1 -v
"""
import argparse
import asyncio
import signal
import sys

from . import __version__
from .bluetooth import BluetoothError, get_default_bluetooth
from .config_loader import Config
from .drone import MiniDrone
from .logging_setup import get_logger, setup_logging

logger = get_logger(__name__)

TAKEOFF_WAIT = 2.0   # seconds for the drone to climb after take off
LANDING_WAIT = 2.0
FLIP_WAIT = 1.5

ROUTINES = ("hover", "flip", "spin")


def has_console() -> bool:
    """Timestamps are dropped on an interactive terminal"""
    return sys.stdout.isatty()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="minidrone", description=__doc__.splitlines()[1])
    parser.add_argument("routine", choices=ROUTINES, nargs="?", default="hover")
    parser.add_argument("--flight-time", type=float, default=3.0,
                        help="seconds spent in the routine (default: 3)")
    parser.add_argument("--config", help="path to config.json")
    parser.add_argument("--adapter", help="Bluetooth adapter, e.g. hci0")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


async def fly(drone: MiniDrone, routine: str, flight_time: float) -> None:
    await drone.take_off()
    await asyncio.sleep(TAKEOFF_WAIT)

    if routine == "flip":
        await drone.front_flip()
        await asyncio.sleep(FLIP_WAIT)
        await drone.back_flip()
        await asyncio.sleep(FLIP_WAIT)
    elif routine == "spin":
        drone.drive({"w": 50})
    await asyncio.sleep(flight_time)

    drone.hover()
    await drone.land()
    await asyncio.sleep(LANDING_WAIT)


async def main(args: argparse.Namespace, cfg: Config) -> int:
    drone = MiniDrone(get_default_bluetooth(cfg.bluetooth))
    drone.onconnected = lambda: logger.info("✅ Drone connected")
    drone.ondisconnected = lambda: logger.info("🔌 Drone disconnected")

    try:
        await drone.connect()
    except BluetoothError as e:
        logger.error("Could not connect: %s", e)
        await drone.disconnect()
        return 1

    loop = asyncio.get_running_loop()
    flight = asyncio.create_task(fly(drone, args.routine, args.flight_time))

    def handle_interrupt() -> None:
        logger.warning("Interrupted, emergency landing")
        flight.cancel()

    loop.add_signal_handler(signal.SIGINT, handle_interrupt)
    try:
        await flight
    except asyncio.CancelledError:
        await drone.emergency_land()
    finally:
        loop.remove_signal_handler(signal.SIGINT)
        await drone.disconnect()
        await drone.wait_closed()

    return 0


def cli(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    cfg = Config.load(args.config)
    if args.adapter:
        cfg.bluetooth.adapter = args.adapter

    setup_logging(
        verbose=args.verbose or cfg.logging.verbose,
        log_file=cfg.logging.log_file,
        simple_format=has_console(),
    )
    logger.debug("minidrone %s, adapter %s", __version__, cfg.bluetooth.adapter)

    try:
        return asyncio.run(main(args, cfg))
    except KeyboardInterrupt:
        logger.info("Manually stopped with Ctrl+C")
        return 130


if __name__ == "__main__":
    raise SystemExit(cli())
