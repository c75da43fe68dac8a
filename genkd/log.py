"""Levelled log messages written to standard error."""

from __future__ import annotations

import sys
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """Verbosity levels; a message is shown when its level is at most the current one."""

    ERROR = 0
    INFO = 1
    DEBUG = 2
    VDEBUG = 3


_DEFAULT_LEVEL = LogLevel.INFO
_level: int | None = None


def set_loglevel(level: int | None) -> None:
    """Set the current verbosity; ``None`` restores the default."""
    global _level
    _level = None if level is None else int(level)


def get_loglevel() -> int:
    """Return the current verbosity."""
    return _DEFAULT_LEVEL if _level is None else _level


def _label(level: int) -> str:
    try:
        return LogLevel(level).name
    except ValueError:
        return LogLevel.VDEBUG.name


def log(level: int, message: str, image: Any = None) -> bool:
    """Write ``message`` at ``level``; return whether it was shown."""
    if level > get_loglevel():
        return False
    label = _label(level)
    if image is not None:
        handler_type = getattr(image, "handler_type", "unknown")
        line = f"{label}: {handler_type}({image.file}): {message}\n"
    else:
        line = f"{label}: {message}\n"
    sys.stderr.write(line)
    return True


def error(message: str, image: Any = None) -> bool:
    """Log an error."""
    return log(LogLevel.ERROR, message, image)


def info(message: str, image: Any = None) -> bool:
    """Log an informational message."""
    return log(LogLevel.INFO, message, image)


def debug(message: str, image: Any = None) -> bool:
    """Log a debug message."""
    return log(LogLevel.DEBUG, message, image)