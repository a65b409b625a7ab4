"""Log level names accepted in config and on the command line.

Levels use the short lowercase vocabulary shared with the rest of the agent
tooling (``warn``, ``fatal``, ``silent``, ``trace``) and are mapped onto the
stdlib ``logging`` numbers here.
"""

from __future__ import annotations

import logging

ALLOWED_LOG_LEVELS: tuple[str, ...] = (
    "silent",
    "fatal",
    "error",
    "warn",
    "info",
    "debug",
    "trace",
)

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LOGGING_LEVELS: dict[str, int] = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "silent": logging.CRITICAL + 10,
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def normalize_log_level(level: str | None, fallback: str = "info") -> str:
    """Return ``level`` trimmed if it is a known level, else ``fallback``."""
    candidate = (level if level is not None else fallback).strip()
    return candidate if candidate in ALLOWED_LOG_LEVELS else fallback


def to_logging_level(level: str) -> int:
    return _LOGGING_LEVELS[normalize_log_level(level)]


def configure_logging(level: str | None) -> str:
    """Configure the root logger; returns the level actually applied."""
    normalized = normalize_log_level(level)
    logging.basicConfig(
        level=to_logging_level(normalized),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    return normalized
