"""Logging setup for the manager: one JSON object per line, or readable text.

Install polling and provider calls attach context through ``extra=`` (the
server id, provider, install state, HTTP status). Both formatters carry
that context, so a line can be traced back to the server it concerns.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

from .config import LoggingConfig

# Order is the order they appear in text output
CONTEXT_FIELDS = ("server_id", "provider", "install_state", "status_code", "operation", "elapsed_seconds")

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("urllib3", "botocore", "boto3", "s3transfer")


def record_context(record: logging.LogRecord) -> dict:
    """The context fields set on ``record``, skipping those left unset."""
    context = {}
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


class JSONFormatter(logging.Formatter):
    """Emits log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(record_context(record))

        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Readable lines for the command line, with context as trailing ``key=value`` pairs.

    ``2024-01-01 12:00:00 INFO     [outline_manager.server.install] Install state changed to SUCCESS server_id=do:101``
    """

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        context = record_context(record)
        if not context:
            return line
        return line + " " + " ".join(f"{key}={value}" for key, value in context.items())


def configure_logging(config: LoggingConfig) -> None:
    """Install a single stderr handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if config.format == "json" else TextFormatter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
