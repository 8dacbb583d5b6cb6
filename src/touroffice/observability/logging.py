"""Structured JSON logging with correlation ID support."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from .context import get_correlation_id
from .redaction import safe_log_context


class JsonFormatter(logging.Formatter):
    """One JSON object per line, tagged with the active correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        correlation_id = get_correlation_id()
        if correlation_id:
            log_obj["correlationId"] = correlation_id

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            log_obj.update(extra_fields)

        return json.dumps(log_obj, default=str)


def get_logger(name: str) -> logging.Logger:
    """Get a logger configured for JSON output on stdout."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False

    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    message: str,
    *,
    exc_info: bool = False,
    **fields: Any,
) -> None:
    """Log ``message`` with redacted structured fields.

    Example:
        log_event(logger, logging.INFO, "booking created",
                  proposal_id=pid, booking_number=number)
    """
    logger.log(
        level,
        message,
        exc_info=exc_info,
        extra={"extra_fields": safe_log_context(**fields)},
    )
