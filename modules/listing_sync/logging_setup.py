"""
Logging for the listing sync package.

The console handler shares stdout with the sync progress bar, which redraws
itself in place with '\\r'. While a SyncProgress is attached, each record
first ends the bar line so log output and the bar never share a line.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, TextIO

LOGGER_NAME = "modules.listing_sync"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConsoleHandler(logging.StreamHandler):
    """Stream handler that breaks an in-place progress line before each record."""

    def __init__(self, stream: Optional[TextIO] = None):
        super().__init__(stream or sys.stdout)
        self.progress = None

    def emit(self, record: logging.LogRecord):
        if self.progress is not None:
            self.progress.break_line()
        super().emit(record)


def console_handlers(stream: TextIO) -> list[ConsoleHandler]:
    """Package console handlers writing to `stream`."""
    return [
        handler for handler in logging.getLogger(LOGGER_NAME).handlers
        if isinstance(handler, ConsoleHandler) and handler.stream is stream
    ]


def _file_handler(log_file: str, max_size_mb: int, backup_count: int) -> RotatingFileHandler:
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return RotatingFileHandler(
        log_path,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count
    )


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    stream: Optional[TextIO] = None,
) -> logging.Logger:
    """
    Configure the `modules.listing_sync` logger.

    Args:
        level: Logging level name; unknown names fall back to INFO
        log_file: Rotating log file path, or None for console only
        max_size_mb: File size that triggers rotation
        backup_count: Rotated files kept
        stream: Console stream (stdout by default)

    Returns:
        The package logger. Calling again replaces its handlers.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: list[logging.Handler] = [ConsoleHandler(stream)]
    if log_file:
        handlers.append(_file_handler(log_file, max_size_mb, backup_count))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger
