"""
Logging infrastructure for ikelink.

Configures the ``ikelink`` logger hierarchy with a rotating log file and a
colored console stream. Records emitted on a session's handler thread are
tagged with that session so interleaved sessions stay readable.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Iterable, Optional

from .config import (
    LOG_FILE,
    LOG_MAX_BYTES,
    LOG_BACKUP_COUNT,
)

LOGGER_NAME = "ikelink"
SESSION_THREAD_PREFIX = "ike-session-"

_logger: Optional[logging.Logger] = None


class SessionTagFilter(logging.Filter):
    """Adds a ``session`` attribute naming the session thread, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = record.threadName or ""
        if name.startswith(SESSION_THREAD_PREFIX):
            record.session = "s" + name[len(SESSION_THREAD_PREFIX):]
        else:
            record.session = "-"
        return True


class ColorFormatter(logging.Formatter):
    """Colors the level name; the record itself is left untouched."""

    COLORS = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        colored = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, "")
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(colored)


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(
    log_to_file: bool = True,
    log_to_console: bool = True,
    log_level: str = "INFO",
    log_file: str = LOG_FILE,
) -> logging.Logger:
    """
    Configure the ikelink logger once.

    Args:
        log_to_file: Write everything down to DEBUG into a rotating file
        log_to_console: Write records at ``log_level`` and above to stderr
        log_level: Console level (DEBUG, INFO, WARNING, ERROR)
        log_file: Path of the rotating log file

    Returns:
        The configured ``ikelink`` logger. Later calls return it unchanged
        until reset_logging() is called.
    """
    global _logger

    if _logger is not None:
        return _logger

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.propagate = False
    tag = SessionTagFilter()

    if log_to_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(tag)
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(session)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        logger.addHandler(file_handler)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(_level(log_level))
        console_handler.addFilter(tag)
        console_handler.setFormatter(ColorFormatter("[%(levelname)s] %(session)s %(message)s"))
        logger.addHandler(console_handler)

    # The file handler wants DEBUG even when the console is quieter
    logger.setLevel(logging.DEBUG if log_to_file else _level(log_level))

    _logger = logger
    return _logger


def reset_logging() -> None:
    """Drop the configured handlers so setup_logging() can run again."""
    global _logger
    if _logger is not None:
        for handler in list(_logger.handlers):
            _logger.removeHandler(handler)
            handler.close()
    _logger = None


def format_block(title: str, lines: Iterable[str]) -> str:
    """Format a titled block: ``[TITLE]`` followed by indented lines."""
    return "\n".join([f"[{title}]", *["  " + ln for ln in lines]])


def log_block(title: str, lines: Iterable[str], level: int = logging.INFO) -> None:
    """Log a format_block() on the ikelink logger."""
    logging.getLogger(LOGGER_NAME).log(level, format_block(title, lines))
