#!/usr/bin/env python3
"""
Centralized configuration for minidrone.

Provides dataclass-based configuration with defaults.
Supports environment variable overrides for deployment flexibility.

Only the host side is configurable (adapter, scan/connect timeouts, logging).
The drone protocol itself (UUIDs, 50ms keepalive) is fixed by the firmware.
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .logging_setup import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "/etc/minidrone/config.json"
DEV_CONFIG_PATH = "/etc/minidrone/config.dev.json"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class BluetoothConfig:
    """Host Bluetooth (BlueZ) configuration."""

    adapter: str = "hci0"
    scan_timeout: float = 10.0     # seconds to look for a drone
    connect_timeout: float = 10.0  # GATT connect + service resolution


@dataclass
class LoggingConfig:
    """Logging configuration."""

    verbose: bool = False
    log_file: str | None = None


@dataclass
class Config:
    """Main minidrone configuration."""

    bluetooth: BluetoothConfig = field(default_factory=BluetoothConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Raw config for backward compatibility
    _raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "Config":
        """
        Load configuration from file.

        Args:
            path: Path to config file. If None, uses environment-based default.

        Returns:
            Config instance with loaded values. Missing file yields defaults
            (environment overrides still apply).
        """
        if path is None:
            path = cls._get_default_path()

        path = Path(path)

        if not path.exists():
            logger.debug("Config file not found: %s, using defaults", path)
            return cls._from_dict({})

        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        logger.info("Loaded config from %s", path)
        return cls._from_dict(data)

    @staticmethod
    def _get_default_path() -> Path:
        """Get default config path based on environment."""
        if os.getenv("MINIDRONE_ENV") == "dev":
            logger.debug("DEV environment detected")
            return Path(DEV_CONFIG_PATH)
        return Path(DEFAULT_CONFIG_PATH)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from dictionary (JSON data).

        Precedence: env var override → config file → default.
        """
        bluetooth = BluetoothConfig(
            adapter=os.getenv("MINIDRONE_ADAPTER", data.get("ADAPTER", "hci0")),
            scan_timeout=float(
                os.getenv("MINIDRONE_SCAN_TIMEOUT", data.get("SCAN_TIMEOUT", 10.0))
            ),
            connect_timeout=float(data.get("CONNECT_TIMEOUT", 10.0)),
        )

        verbose_env = os.getenv("MINIDRONE_VERBOSE")
        logging_config = LoggingConfig(
            verbose=(
                _env_bool(verbose_env) if verbose_env is not None
                else bool(data.get("VERBOSE", False))
            ),
            log_file=data.get("LOG_FILE"),
        )

        return cls(bluetooth=bluetooth, logging=logging_config, _raw=data)

    def to_dict(self) -> dict[str, Any]:
        """Export config to dictionary for saving."""
        return {
            "ADAPTER": self.bluetooth.adapter,
            "SCAN_TIMEOUT": self.bluetooth.scan_timeout,
            "CONNECT_TIMEOUT": self.bluetooth.connect_timeout,
            "VERBOSE": self.logging.verbose,
            "LOG_FILE": self.logging.log_file,
        }

    def save(self, path: str | Path) -> None:
        """Save config to file."""
        path = Path(path)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info("Saved config to %s", path)
