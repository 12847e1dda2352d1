"""Logging setup with logrus-style text and JSON output."""

from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime
from typing import Any

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

_NAMES = [
    (logging.CRITICAL, "fatal"),
    (logging.ERROR, "error"),
    (logging.WARNING, "warning"),
    (logging.INFO, "info"),
    (logging.DEBUG, "debug"),
]

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}
_PLAIN = re.compile(r"[A-Za-z0-9\-._/@^+]+")


def _level_name(levelno: int) -> str:
    for threshold, name in _NAMES:
        if levelno >= threshold:
            return name
    return "trace"


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return {key: value for key, value in vars(record).items() if key not in _RESERVED}


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")


class JSONFormatter(logging.Formatter):
    """Formats records as one JSON object per line with level, msg, time and extra fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry = _fields(record)
        entry.update(level=_level_name(record.levelno), msg=record.getMessage(), time=_timestamp(record))
        if record.exc_info:
            entry["error"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class _TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"time={_quote(_timestamp(record))}",
            f"level={_level_name(record.levelno)}",
            f"msg={_quote(record.getMessage())}",
        ]
        if record.exc_info:
            parts.append(f"error={_quote(self.formatException(record.exc_info))}")
        parts.extend(f"{key}={_quote(str(value))}" for key, value in sorted(_fields(record).items()))
        return " ".join(parts)


def _quote(value: str) -> str:
    return value if _PLAIN.fullmatch(value) else json.dumps(value)


def log_setup(json_format: bool = False, log_level: str = "info") -> logging.Logger:
    """Configure and return the package logger writing to stdout."""
    level = logging.INFO
    if log_level:
        try:
            level = _LEVELS[log_level.lower()]
        except KeyError:
            raise ValueError(f"Invalid loglevel: {log_level}") from None

    logger = logging.getLogger("boostrelay")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if json_format else _TextFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    logger.setLevel(level)
    return logger