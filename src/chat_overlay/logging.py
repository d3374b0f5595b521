"""Logging bootstrap utilities."""

from __future__ import annotations

import logging
from logging.config import dictConfig

from .config import LogLevel


def resolve_log_level(configured: LogLevel | str | None, debug: bool = False) -> str:
    """Return the effective level; ``--debug`` always wins over configuration."""

    if debug:
        return LogLevel.DEBUG.value
    if configured is None:
        return LogLevel.INFO.value
    if isinstance(configured, LogLevel):
        return configured.value
    return str(configured).upper()


def configure_logging(level: LogLevel | str | None = None, *, debug: bool = False) -> str:
    """Configure root logging with a structured, leveled formatter."""

    resolved_level = resolve_log_level(level, debug)

    handler_names = ["stderr"]
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%dT%H:%M:%S",
                }
            },
            "handlers": {
                "stderr": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": resolved_level,
                }
            },
            "loggers": {
                "": {"handlers": handler_names, "level": resolved_level, "propagate": False},
                "uvicorn": {"handlers": handler_names, "level": resolved_level, "propagate": False},
                "uvicorn.error": {"handlers": handler_names, "level": resolved_level, "propagate": False},
                "uvicorn.access": {"handlers": handler_names, "level": "WARNING", "propagate": False},
                "websockets": {"handlers": handler_names, "level": "WARNING", "propagate": False},
                "httpx": {"handlers": handler_names, "level": "WARNING", "propagate": False},
            },
        }
    )

    logging.getLogger(__name__).debug("Logging configured", extra={"level": resolved_level})
    return resolved_level
