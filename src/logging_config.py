"""Logging configuration for the preview sandbox."""

from __future__ import annotations

import logging
import sys

DEFAULT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

ANSI_RESET = "\x1b[0m"
ANSI_COLORS = {
    logging.DEBUG: "\x1b[36m",
    logging.INFO: "\x1b[32m",
    logging.WARNING: "\x1b[33m",
    logging.ERROR: "\x1b[31m",
    logging.CRITICAL: "\x1b[35m",
}


class ColorFormatter(logging.Formatter):
    """Formatter that colours the level name when writing to a terminal."""

    def __init__(self, fmt: str = DEFAULT_FORMAT, use_color: bool = True) -> None:
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if not self.use_color:
            return message
        color = ANSI_COLORS.get(record.levelno)
        if not color:
            return message
        return f"{color}{message}{ANSI_RESET}"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Install a console handler on the ``src`` logger tree.

    Safe to call repeatedly (Streamlit re-runs the script on every
    interaction); the handler is only added once.

    Args:
        level: Log level name or number.

    Returns:
        The configured package logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("src")
    logger.setLevel(level)

    if not any(getattr(h, "_preview_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(ColorFormatter(use_color=sys.stderr.isatty()))
        handler._preview_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    return logger
