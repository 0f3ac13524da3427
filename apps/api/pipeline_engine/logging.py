from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from pipeline_engine.context import get_correlation_id, get_tenant_id, get_transition_depth


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_ERROR_MAX_CHARS = 500

# Only these ``extra=`` keys reach the JSON output; entity payloads never do.
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "entity_id",
    "from_stage_id",
    "to_stage_id",
    "outcome",
    "reason",
    "action_type",
    "clock_id",
    "timer_id",
    "level",
    "event_id",
    "event_type",
    "endpoint_id",
    "attempt",
    "depth",
    "status",
    "error",
}


class PipelineContextFilter(logging.Filter):
    """Fills tenant and transition depth from context when a call site did not pass them."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "tenant_id", None):
            record.tenant_id = get_tenant_id()
        if getattr(record, "depth", None) is None:
            depth = get_transition_depth()
            if depth is not None:
                record.depth = depth
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    # tenant_id and depth are left to the filter: call sites pass them via extra=.
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "tenant_id": getattr(record, "tenant_id", None),
        }

        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
        }
        error_value = fields.get("error")
        if isinstance(error_value, str):
            fields["error"] = error_value[:_ERROR_MAX_CHARS]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_pipeline_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(PipelineContextFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._pipeline_configured = True  # type: ignore[attr-defined]
