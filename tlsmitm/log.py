"""Logging setup shared by every ``tlsmitm`` module.

Adds a ``TRACE`` level (5) below ``DEBUG`` for per-request lines and a
colored formatter for terminal output.  Importing this module registers
the logger class; handlers are only attached by ``setup_logging()``.
"""

from __future__ import annotations

import logging
from typing import Any

TRACE = 5


class CustomLogger(logging.Logger):
    def trace(self, message: object, *args: Any, stacklevel: int = 1, **kwargs: Any) -> None:
        if self.isEnabledFor(TRACE):
            self._log(TRACE, message, args, **kwargs, stacklevel=stacklevel + 1)


logging.setLoggerClass(CustomLogger)
logging.addLevelName(TRACE, "TRACE")


class ColoredFormatter(logging.Formatter):
    COLORS = {
        TRACE: "\033[0;37m",
        logging.DEBUG: "\033[0m",
        logging.INFO: "\033[34m",
        logging.WARNING: "\033[1;33m",
        logging.ERROR: "\033[1;31m",
        logging.CRITICAL: "\033[1;37;41m",
    }

    def format(self, record: logging.LogRecord) -> str:
        c = self.COLORS.get(record.levelno, "\033[0m")
        record.elapsed = f"{record.relativeCreated / 1000.0:8.3f}"  # type: ignore[attr-defined]
        record.msg = f"{c}{record.msg}\033[0m"
        record.levelname = f"{c}{record.levelname:<8}\033[0m"
        return super().format(record)


def get_logger(name: str) -> CustomLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def parse_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name == "TRACE":
        return TRACE
    value = logging.getLevelName(name)
    if not isinstance(value, int):
        raise ValueError(f"Unknown log level: {level}")
    return value


def setup_logging(level: str | int = logging.INFO) -> logging.Logger:
    """Attach a colored stream handler to the ``tlsmitm`` logger tree."""
    root = get_logger("tlsmitm")
    root.setLevel(parse_level(level))
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler()
    handler.setLevel(TRACE)
    handler.setFormatter(
        ColoredFormatter(
            "%(elapsed)s | %(levelname)-8s | %(filename)s | %(funcName)s[%(lineno)d] | %(message)s"
        )
    )
    root.addHandler(handler)
    root.propagate = False
    return root
