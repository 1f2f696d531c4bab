"""
Logging for the OptiRoute backend.

Everything logs through the "optiroute" logger. Events are short dotted names
("geocode.cache_hit", "billing.reconcile.failed") with their fields passed as
`extra`, so the JSON formatter can emit them as top-level keys for log search.
The request id of the current HTTP request is attached to every record.
"""

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "optiroute"
MAX_FIELD_LENGTH = 500

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("optiroute_request_id", default=None)

# Attributes every LogRecord carries; anything else came in via `extra`
_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "request_id"}

_LATENCY_BUCKETS = (
    (10, "<10ms"),
    (100, "10-100ms"),
    (500, "100-500ms"),
    (1000, "500-1000ms"),
)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def bind_request_id(request_id: str) -> Token:
    return request_id_ctx_var.set(request_id)


def unbind_request_id(token: Token) -> None:
    request_id_ctx_var.reset(token)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    """Coarse latency label, so dashboards can group requests without a histogram."""
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _utc_timestamp(record: logging.LogRecord) -> str:
    stamp = datetime.fromtimestamp(record.created, timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


def event_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields a record picked up from `extra`, without the None ones."""
    return {
        name: value
        for name, value in vars(record).items()
        if name not in _STANDARD_ATTRS and value is not None
    }


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line (production)."""

    def format(self, record: logging.LogRecord) -> str:
        document: Dict[str, Any] = {
            "timestamp": _utc_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        document.update(event_fields(record))
        if record.exc_info:
            document["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(document, default=str)


class PrettyFormatter(logging.Formatter):
    """Single-line human readable output (development)."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [_utc_timestamp(record), f"{record.levelname:<7}", record.getMessage()]
        rid = getattr(record, "request_id", None)
        if rid:
            parts.append(f"rid={rid}")
        parts.extend(f"{name}={value}" for name, value in event_fields(record).items())
        text = " ".join(parts)
        if record.exc_info:
            text += "\n" + self.formatException(record.exc_info)
        return text


def configure_logging(env: str = "development", level: int = logging.INFO) -> logging.Logger:
    """Install the stdout handler on the "optiroute" logger. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())
    logger.handlers = [handler]
    # Left on so pytest's caplog sees records
    logger.propagate = True

    # uvicorn's access log duplicates request.complete
    logging.getLogger("uvicorn.access").disabled = True
    return logger


def _truncate(value: Any, limit: int = MAX_FIELD_LENGTH) -> Any:
    if isinstance(value, (bool, int, float)):
        return value
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else text[:limit] + "...<truncated>"


def log_event(
    level: str,
    event: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a named event with bounded field values.

    Use this for fields that may carry provider payloads or exception text
    (webhook failures, upstream errors); each `extra` value is cut at
    MAX_FIELD_LENGTH characters.
    """
    fields: Dict[str, Any] = {"request_id": request_id or get_request_id(), "user_id": user_id}
    if event_type:
        fields["event_type"] = event_type
    if error_code:
        fields["error_code"] = error_code
    for name, value in (extra or {}).items():
        if value is not None:
            fields[name] = _truncate(value)

    logger = logging.getLogger(LOGGER_NAME)
    logger.log(logging.getLevelName(level.upper()), event, extra=fields)
