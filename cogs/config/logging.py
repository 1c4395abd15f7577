"""Logging setup for the COGS broker daemon.

Every line is one JSON object. Broker log calls attach the device numbers,
pid, requester identity or feed name they concern through ``extra=``; those
fields are lifted into the JSON object so grants and releases can be traced
per device or per user.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from logging.config import dictConfig
from logging.handlers import SysLogHandler
from pathlib import Path
from typing import Any

import msgspec

from .model import RuntimeConfig

SYSLOG_SOCKETS: tuple[Path, ...] = (Path("/dev/log"), Path("/var/run/log"))

# Fields broker code may pass through ``extra=``.
CONTEXT_FIELDS: tuple[str, ...] = ("device", "devices", "pid", "identity", "feed", "peer", "line")


class StructuredLogFormatter(logging.Formatter):
    """JSON per record with the ``cogs.`` logger prefix trimmed."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name.removeprefix("cogs."),
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            if hasattr(record, name):
                payload[name] = getattr(record, name)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return msgspec.json.encode(payload, enc_hook=str).decode("utf-8")


def _build_handler() -> logging.Handler:
    if not os.environ.get("COGS_LOG_STREAM"):
        for candidate in SYSLOG_SOCKETS:
            if candidate.exists():
                handler = SysLogHandler(address=str(candidate), facility=SysLogHandler.LOG_DAEMON)
                handler.ident = "cogsd "
                return handler
    return logging.StreamHandler()


def configure_logging(config: RuntimeConfig) -> None:
    """Route the root logger through one structured handler."""

    level_name = "DEBUG" if config.debug_logging else "INFO"
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"structured": {"()": StructuredLogFormatter}},
            "handlers": {
                "cogs": {
                    "()": _build_handler,
                    "level": level_name,
                    "formatter": "structured",
                }
            },
            "root": {"level": level_name, "handlers": ["cogs"]},
        }
    )
    logging.getLogger("cogs").info("Logging configured at level %s", level_name)
