"""Reachline — Structured JSON Logging."""

import logging
import json
import sys
from datetime import datetime, timezone
from app.config import settings
from app.core.redact import redact_token

EXTRA_FIELDS = (
    "account_id",
    "day",
    "action",
    "mode",
    "duration_ms",
    "status_code",
    "cache",
)


class JSONFormatter(logging.Formatter):
    """Produces structured JSON log lines with access tokens redacted."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_token(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = redact_token(self.formatException(record.exc_info))
        # Attach extra fields if present
        for key in EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)
        return json.dumps(log_entry, default=str)


def get_logger(name: str) -> logging.Logger:
    """Return a named logger with structured JSON handler."""
    logger = logging.getLogger(f"reachline.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    return logger
