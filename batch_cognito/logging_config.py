"""Structured JSON logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

EXTRA_FIELDS = (
    "pool_id",
    "operation",
    "group",
    "email",
    "attempts",
    "pages",
    "records",
    "counts",
    "duration_s",
    "run_id",
)


class JsonFormatter(logging.Formatter):
    """Emit one JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        for key in EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        return json.dumps(log_entry, default=str)


def resolve_level(level: Optional[str], verbose: int = 0) -> int:
    """An explicit level wins; otherwise -v means DEBUG and the default is INFO."""
    if level:
        return getattr(logging, level.upper(), logging.INFO)
    return logging.DEBUG if verbose > 0 else logging.INFO


def configure_logging(level: Optional[str] = None, verbose: int = 0) -> None:
    """Set up the package logger with JSON formatter to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger("batch_cognito")
    root.setLevel(resolve_level(level, verbose))
    root.handlers.clear()
    root.addHandler(handler)
    root.propagate = False
