from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from projectfeed.context import get_correlation_id, get_project_id


_RESERVED = frozenset(logging.makeLogRecord({}).__dict__)

# Structured fields allowed through `extra=`; anything else stays out of the payload.
LOGGED_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # reconciliation and records
        "project_id",
        "entity_id",
        "record_id",
        "kind",
        "kinds",
        "source",
        "sequence",
        "count",
        # mutations and stages
        "action",
        "status",
        "reason",
        "stage",
        "previous_stage",
        "error",
    }
)
MAX_ERROR_LENGTH = 500


def _stamp(record: logging.LogRecord) -> logging.LogRecord:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _stamp(record)
        # not set by the factory: `extra=` would collide with it
        if not getattr(record, "project_id", None):
            project_id = get_project_id()
            if project_id:
                record.project_id = project_id
        return True


_base_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    return _stamp(_base_factory(*args, **kwargs))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value, key=str) if isinstance(value, (set, frozenset)) else list(value)
    return str(value)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line: ts, level, logger, msg, correlation_id, fields."""

    def format(self, record: logging.LogRecord) -> str:
        fields = {
            key: value
            for key, value in record.__dict__.items()
            if key in LOGGED_FIELDS and key not in _RESERVED
        }
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=_jsonable)


def _level(name: str | None, default: int = logging.INFO) -> int:
    if not name:
        return default
    value = logging.getLevelName(name.strip().upper())
    return value if isinstance(value, int) else default


def parse_logger_levels(value: str | None) -> Mapping[str, int]:
    """Parse ``projectfeed.engine=DEBUG,projectfeed.request=WARNING``."""
    levels: dict[str, int] = {}
    for item in (value or "").split(","):
        name, _, level = item.partition("=")
        if name.strip() and level.strip():
            levels[name.strip()] = _level(level)
    return levels


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_projectfeed_configured", False):
        return

    level = _level(os.getenv("LOG_LEVEL"))

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)

    for name, logger_level in parse_logger_levels(os.getenv("LOG_LEVELS")).items():
        logging.getLogger(name).setLevel(logger_level)

    root_logger._projectfeed_configured = True  # type: ignore[attr-defined]
