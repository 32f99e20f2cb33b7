#!/usr/bin/env python3
"""
Centralized logging configuration for minidrone.

Keeps emoji prefixes for visual scanning in logs. Warnings and errors that
already start with one of the session markers (🚁 take off, 🛬 loop stopped,
🔌 link lost, ...) are left alone, so a dropped link reads "🔌 ..." rather
than "⚠️ 🔌 ...".
"""
import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-22s | %(message)s"
LOG_FORMAT_SIMPLE = "%(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Markers the drone and BlueZ modules put in front of their own messages
MESSAGE_MARKERS = ("⚠️", "❌", "💥", "🚁", "🛬", "🔌", "📡", "🔍", "✅", "💾")


class EmojiFormatter(logging.Formatter):
    """Formatter that adds level-based emoji prefixes to warnings and errors."""

    LEVEL_EMOJIS = {
        logging.DEBUG: "",
        logging.INFO: "",
        logging.WARNING: "⚠️ ",
        logging.ERROR: "❌ ",
        logging.CRITICAL: "💥 ",
    }

    def format(self, record: logging.LogRecord) -> str:
        emoji = self.LEVEL_EMOJIS.get(record.levelno, "")
        if emoji and not record.getMessage().lstrip().startswith(MESSAGE_MARKERS):
            # copy, other handlers must see the original message
            record = logging.makeLogRecord(record.__dict__)
            record.msg = f"{emoji}{record.msg}"
        return super().format(record)


def setup_logging(
    verbose: bool = False,
    console_output: bool = True,
    log_file: str | None = None,
    simple_format: bool = False,
) -> None:
    """
    Configure logging for minidrone.

    Args:
        verbose: Enable DEBUG level logging (default: INFO)
        console_output: Output to stdout (default: True)
        log_file: Optional file path for log output
        simple_format: Use simplified format without timestamps
    """
    level = logging.DEBUG if verbose else logging.INFO
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    root_logger.handlers.clear()

    fmt = LOG_FORMAT_SIMPLE if simple_format else LOG_FORMAT

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(EmojiFormatter(fmt, datefmt=DATE_FORMAT))
        root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(file_handler)

    # dbus_next is chatty at DEBUG
    logging.getLogger("dbus_next").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from .logging_setup import get_logger
        logger = get_logger(__name__)
        logger.info("Connected to %s", name)
    """
    return logging.getLogger(name)
