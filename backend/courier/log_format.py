"""
Courier Backend — Structured Log Formatter
============================================

What:  Renders log records as one JSON object per line.
How:   Standard fields (timestamp, level, logger, message, exception), the
       ids of the span active when the record was emitted, and every
       `extra=` field attached by the caller. Values that are not
       JSON-serializable are stringified.
Who:   Installed by `setup_logging()` in main.py when LOG_FORMAT=json.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from opentelemetry import trace

# Attributes every LogRecord has; anything else came from `extra=`
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            entry["trace_id"] = format(span_context.trace_id, "032x")
            entry["span_id"] = format(span_context.span_id, "016x")

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                entry[key] = value
            except (TypeError, ValueError):
                entry[key] = str(value)

        return json.dumps(entry)
