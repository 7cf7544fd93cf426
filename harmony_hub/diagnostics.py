"""
Process-wide diagnostic verbosity for the harmony_hub package.

Defaults to OFF: nothing is logged until the application raises the level.
The setting only changes what reaches the ``harmony_hub`` logger, never how
the session behaves.
"""

import logging
import threading
from enum import IntEnum

PACKAGE_LOGGER = "harmony_hub"


class LogLevel(IntEnum):
    OFF = 0
    ERROR = 1
    INFO = 2
    VERBOSE = 3


_STDLIB_LEVELS = {
    LogLevel.OFF: logging.CRITICAL + 10,
    LogLevel.ERROR: logging.ERROR,
    LogLevel.INFO: logging.INFO,
    LogLevel.VERBOSE: logging.DEBUG,
}

_lock = threading.Lock()
_log_level = LogLevel.OFF


def set_log_level(level) -> None:
    """
    Change the verbosity of every hub session in this process.

    Args:
        level: a LogLevel member or its name ("off", "error", "info", "verbose")
    """
    global _log_level
    if isinstance(level, str):
        level = LogLevel[level.upper()]
    level = LogLevel(level)
    with _lock:
        _log_level = level
        logging.getLogger(PACKAGE_LOGGER).setLevel(_STDLIB_LEVELS[level])


def get_log_level() -> LogLevel:
    return _log_level


logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())
set_log_level(LogLevel.OFF)
