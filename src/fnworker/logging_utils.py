"""Process logging helpers."""

from __future__ import annotations

import sys

import loguru
from loguru import logger

# Wire level names to loguru level names.
LOGURU_LEVELS: dict[str, str] = {
    "trace": "TRACE",
    "debug": "DEBUG",
    "info": "INFO",
    "warn": "WARNING",
    "error": "ERROR",
    "critical": "CRITICAL",
}

_TEXT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} | {extra[invocation_id]} | {message}"
)
_CONFIGURED: tuple[str, str] | None = None


def loguru_level(level: str) -> str:
    return LOGURU_LEVELS.get(level.lower(), "INFO")


def level_no(level: str) -> int:
    """Numeric severity of a wire level name, comparable across the two level vocabularies."""
    return logger.level(loguru_level(level)).no


def _inject_context(record: loguru.Record) -> None:
    record["extra"].setdefault("invocation_id", "-")


def configure_logging(level: str = "info", log_format: str = "text") -> None:
    """Configure process-level logging once."""

    global _CONFIGURED
    if _CONFIGURED == (level, log_format):
        return

    logger.remove()
    logger.configure(patcher=_inject_context)
    if log_format == "json":
        logger.add(sys.stderr, level=loguru_level(level), serialize=True, backtrace=False, diagnose=False)
    else:
        logger.add(sys.stderr, level=loguru_level(level), format=_TEXT_FORMAT, backtrace=False, diagnose=False)
    _CONFIGURED = (level, log_format)
