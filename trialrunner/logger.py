"""Coloured logging configuration for the trial runner.

This module provides a pre-configured logger with coloured output formatting
shared by the runner, the scheduler and the worker processes.
"""

from __future__ import annotations

import logging
import re
from typing import ClassVar

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")


class LogMessageFilter(logging.Filter):
    """A logging filter to remove problematic control characters from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Filter log records, removing only problematic control characters.

        Worker output is echoed verbatim at debug level, so anything a benchmark
        prints ends up here.

        Returns:
            True if the log record should be processed, False otherwise.
        """
        if isinstance(record.msg, str):
            record.msg = _CONTROL_CHARS.sub("", record.msg)
        if record.exc_text:
            record.exc_text = _CONTROL_CHARS.sub("", record.exc_text)
        return True


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colour codes to different log levels."""

    # ANSI colour codes
    COLORS: ClassVar[dict[str, str]] = {
        "DEBUG": "\033[90m",  # Grey
        "INFO": "\033[92m",  # Green
        "WARNING": "\033[93m",  # Yellow
        "ERROR": "\033[91m",  # Red
        "CRITICAL": "\033[95m",  # Magenta
    }
    RESET: ClassVar[str] = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with appropriate colours.

        Returns:
            The formatted log record with appropriate colours.
        """
        colour = self.COLORS.get(record.levelname, "")
        formatted = super().format(record)
        if colour:
            formatted = f"{colour}{formatted}{self.RESET}"
        return formatted


LOG_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(message)s"

logger = logging.getLogger("trialrunner")
logger.setLevel(logging.DEBUG)

console_handler = logging.StreamHandler()
console_handler.setLevel(logging.INFO)
console_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
console_handler.addFilter(LogMessageFilter())

logger.addHandler(console_handler)

# Prevent duplicate logs from root logger
logger.propagate = False


def configure_logging(level: str | int) -> None:
    """Set the console verbosity of the shared logger.

    Args:
        level: A logging level name (``"DEBUG"``) or number.

    Raises:
        ValueError: If the level name is unknown.
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            msg = f"Unknown log level: {level}"
            raise ValueError(msg)
        level = resolved
    console_handler.setLevel(level)
