"""Logging setup for patchbay.

All module loggers are children of the "patchbay" package logger, which owns
the single stdout handler. Levels are set once on the package logger, so
`--log-level` and PATCHBAY_LOG_LEVEL apply to every module at once.

Events are handled on worker threads, so each line carries the short thread
name next to the module:

    [I 14:23:45.123 tempo     tempo_2  ] Tap tempo completed on 'Synth' (epoch 4)
"""
import logging
import os
import sys
import threading
from typing import Optional

PACKAGE_LOGGER = "patchbay"
LOG_LEVEL_ENV = "PATCHBAY_LOG_LEVEL"
DEFAULT_LEVEL = "INFO"

_configure_lock = threading.Lock()


class PatchbayFormatter(logging.Formatter):
    """[{level[0]} {time} {module[:9]} {thread[:9]}] {message}"""

    def format(self, record):
        module_name = record.name.split('.')[-1][:9].ljust(9)
        thread_name = short_thread_name(record.threadName)[:9].ljust(9)
        timestamp = self.formatTime(record, "%H:%M:%S")

        line = (f"[{record.levelname[0]} {timestamp}.{record.msecs:03.0f} "
                f"{module_name} {thread_name}] {record.getMessage()}")

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def short_thread_name(name: Optional[str]) -> str:
    """Compact thread label for log lines.

    Examples:
        >>> short_thread_name("MainThread")
        'main'
        >>> short_thread_name("router_0")
        'router_0'
        >>> short_thread_name("Thread-3 (_midi_input_loop)")
        '_midi_input_loop'
    """
    if not name or name == "MainThread":
        return "main"
    if name.endswith(")") and "(" in name:
        return name[name.index("(") + 1:-1]
    return name


def parse_level(level: Optional[str]) -> int:
    """Level name -> logging constant; unknown names fall back to INFO."""
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV, DEFAULT_LEVEL)
    return getattr(logging, str(level).upper(), logging.INFO)


def set_level(level: Optional[str] = None) -> logging.Logger:
    """Install the package handler (once) and set the package-wide level.

    Args:
        level: DEBUG/INFO/WARNING/ERROR; defaults to PATCHBAY_LOG_LEVEL, then INFO

    Returns:
        The "patchbay" package logger
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)

    with _configure_lock:
        if not package_logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(PatchbayFormatter())
            package_logger.addHandler(handler)

    package_logger.setLevel(parse_level(level))
    return package_logger


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Get logger for a patchbay module.

    Args:
        name: Module name (usually __name__, e.g. "patchbay.tempo")
        level: Optional override for this module only

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Router ready")
    """
    package_logger = logging.getLogger(PACKAGE_LOGGER)
    if not package_logger.handlers:
        set_level()

    # Scripts run as __main__ still log through the package handler
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(parse_level(level))
    return logger
