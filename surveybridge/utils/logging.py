"""
Logging utilities for surveybridge.

Centralizes logging configuration so the CLI, the operations facade and the
survey logger's console mirror all share one setup. By default console output
goes through rich's handler, which colour-codes records by severity; a plain
formatter and a JSON formatter (useful for log shipping) are also available.

The audit trail written to the database is handled by
`surveybridge.survey_logger`; this module only covers the process console.

Usage:
    from surveybridge.utils.logging import configure_logging, get_logger

    configure_logging(level="INFO")
    log = get_logger(__name__)
    log.info("message", extra={"zone": "DATABASE", "session_id": token})
"""

from __future__ import annotations

import json
import logging
import logging.config
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else was passed via `extra`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def _json_formatter(record: logging.LogRecord) -> str:
    """Render a log record as JSON string."""
    payload: Dict[str, Any] = {
        "level": record.levelname,
        "logger": record.name,
        "message": record.getMessage(),
    }
    for key, value in vars(record).items():
        if key in _RESERVED_ATTRS or key == "extra":
            continue
        if isinstance(value, (str, int, float, bool)) or value is None:
            payload[key] = value
    if record.exc_info:
        payload["exc_info"] = logging.Formatter().formatException(record.exc_info)
    if record.stack_info:
        payload["stack_info"] = record.stack_info
    if hasattr(record, "extra") and isinstance(record.extra, dict):
        payload.update(record.extra)
    return json.dumps(payload, default=str)


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter for structured logs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        return _json_formatter(record)


class ZoneFilter(logging.Filter):
    """Prefix console messages with their `[ZONE]` tag when one is attached."""

    def filter(self, record: logging.LogRecord) -> bool:
        zone = getattr(record, "zone", None)
        if zone and not getattr(record, "_zone_prefixed", False):
            record.msg = f"[{zone}] {record.msg}"
            record._zone_prefixed = True
        return True


def configure_logging(
    level: str = "INFO",
    json_logs: bool = False,
    rich_console: bool = True,
    force: bool = True,
) -> None:
    """
    Configure root logging.

    Parameters
    ----------
    level : str
        Logging level name (e.g., "DEBUG", "INFO", "WARNING").
    json_logs : bool
        Whether to emit logs as JSON. Takes precedence over `rich_console`.
    rich_console : bool
        Colour-coded console output via rich. If False, uses a concise plain formatter.
    force : bool
        Whether to override existing logging configuration (recommended in CLI apps).
    """
    if not force and logging.getLogger().handlers:
        return

    if json_logs:
        handler: Dict[str, Any] = {
            "class": "logging.StreamHandler",
            "formatter": "json",
            "level": level,
        }
    elif rich_console:
        handler = {
            "class": "rich.logging.RichHandler",
            "formatter": "rich",
            "level": level,
            "filters": ["zone"],
            "show_path": False,
            "markup": False,
        }
    else:
        handler = {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "level": level,
            "filters": ["zone"],
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "zone": {"()": ZoneFilter},
            },
            "formatters": {
                "console": {
                    "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                },
                "rich": {
                    "format": "%(message)s",
                    "datefmt": "[%X]",
                },
                "json": {
                    "()": JsonFormatter,
                },
            },
            "handlers": {
                "default": handler,
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
        }
    )


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a logger with the given name. If name is None, returns the root logger.
    """
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger", "JsonFormatter", "ZoneFilter"]
