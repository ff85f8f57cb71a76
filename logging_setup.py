"""Logging configuration for workshop-sync."""

import logging
import sys
from pathlib import Path


LOGGER_NAME = "workshop_sync"


def setup_logging(
    verbosity: int = 0,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the logger for workshop-sync.

    Args:
        verbosity: -1 for quiet (WARNING+), 0 for normal (INFO), 1 for verbose (DEBUG)
        log_file: Optional path to write logs to file

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    if verbosity < 0:
        console_handler.setLevel(logging.WARNING)
    elif verbosity > 0:
        console_handler.setLevel(logging.DEBUG)
    else:
        console_handler.setLevel(logging.INFO)

    # No timestamps on the console unless verbose
    if verbosity > 0:
        console_fmt = logging.Formatter("%(levelname)s: %(message)s")
    else:
        console_fmt = logging.Formatter("%(message)s")
    console_handler.setFormatter(console_fmt)
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_fmt = logging.Formatter(
            "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_fmt)
        logger.addHandler(file_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the workshop_sync logger instance."""
    return logging.getLogger(LOGGER_NAME)


def format_bytes(count: int) -> str:
    """Render a byte count as a short human-readable size."""
    size = float(count)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"


def write_progress(message: str) -> None:
    """Write a progress update directly to the terminal.

    Bypasses logging so carriage returns can redraw the line in place.
    """
    sys.stdout.write(f"\r{message}")
    sys.stdout.flush()
