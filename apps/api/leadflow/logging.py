from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id


# Structured fields passed through `extra=`; anything else on a record is dropped.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "operation",
        "entity_type",
        "entity_id",
        "lead_id",
        "from_state",
        "to_state",
        "matched_field",
        "status",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _attach_correlation_id(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _attach_correlation_id(_base_factory(*args, **kwargs))


class CorrelationIdFilter(logging.Filter):
    """Covers records built before the factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        _attach_correlation_id(record)
        return True


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {key: value for key, value in vars(record).items() if key in LOGGED_FIELDS}
    if isinstance(fields.get("error"), str):
        fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _extra_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging() -> None:
    """Send JSON lines to stdout at LOG_LEVEL; safe to call more than once."""
    root = logging.getLogger()
    if getattr(root, "_leadflow_configured", False):
        return

    level = logging.getLevelName(os.getenv("LOG_LEVEL", "INFO").upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root.handlers.clear()
    root.setLevel(level)
    root.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    root._leadflow_configured = True  # type: ignore[attr-defined]
