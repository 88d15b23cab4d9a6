"""One-line JSON logs for the billing service.

Each record carries the service role and the current correlation ID, so a
charge can be followed from the HTTP request through the gateway call and the
webhook that settles it. Context goes in extra={"extra_fields": {...}}, built
with safe_log_context() so payment data never reaches the log sink.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from .correlation import get_correlation_id

SERVICE_NAME = "lexbill"

# Keys owned by the formatter; extra_fields cannot overwrite them
RESERVED_KEYS = frozenset({"timestamp", "level", "logger", "message", "service", "role"})


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
            "role": os.environ.get("APP_ROLE", "public"),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            entry["correlationId"] = correlation_id

        if record.exc_info:
            exc_type = record.exc_info[0]
            if exc_type is not None:
                entry["error_type"] = exc_type.__name__
            entry["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in extra_fields.items():
                entry[key if key not in RESERVED_KEYS else f"extra_{key}"] = value

        return json.dumps(entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a stdout JSON logger; LOG_LEVEL sets the level (default INFO)."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
        logger.propagate = False

    return logger
