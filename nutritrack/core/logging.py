"""
Structured logging for the nutritrack service.

Every record on the `nutritrack` logger carries the current request id
(bound by RequestIdMiddleware). Anything passed through `extra=` is emitted
as a field: one JSON object per line in production, `key=value` pairs after
the message elsewhere.

Use `log_event` for domain events (webhook outcomes, reconciliation
corrections) so field names and truncation stay uniform.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional, Tuple

LOGGER_NAME = "nutritrack"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord has; anything else came in through `extra=`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime", "taskName"}

# Printed first, in this order, when present
_LEADING_FIELDS = ("user_id", "event_id", "event_type", "outcome", "error_code", "status")

_MAX_FIELD_LEN = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, keeps log cardinality low."""
    if latency_ms is None:
        return "unknown"
    for limit, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < limit:
            return label
    return ">=1000ms"


def _record_fields(record: logging.LogRecord) -> Iterator[Tuple[str, object]]:
    extras = {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and key != "request_id" and value is not None
    }
    for key in _LEADING_FIELDS:
        if key in extras:
            yield key, extras.pop(key)
    yield from sorted(extras.items())


def _utc_iso(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "ts": _utc_iso(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        line.update(_record_fields(record))
        if record.exc_info:
            line["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_iso(record), f"{record.levelname:<7}", record.getMessage()]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"rid={rid}")
        parts.extend(f"{key}={value}" for key, value in _record_fields(record))
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development") -> None:
    """Install a single stdout handler on the nutritrack logger (idempotent)."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    # Propagate so pytest's caplog and uvicorn's root config still see records
    logger.propagate = True


def _truncate(value: object) -> object:
    if isinstance(value, (int, float, bool)):
        return value
    text = str(value)
    if len(text) <= _MAX_FIELD_LEN:
        return text
    return text[:_MAX_FIELD_LEN] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    outcome: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
) -> None:
    """
    Log a domain event with the standard correlation fields.

    `extra` values are stringified and truncated; keys must not collide with
    LogRecord attributes (use "reason", not "msg").
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, object] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_id": event_id,
        "event_type": event_type,
        "outcome": outcome,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = _truncate(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
