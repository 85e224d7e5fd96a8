"""
Logging setup for the QuizCast API.

- One ``quizcast`` logger tree; JSON lines in production, single-line text elsewhere.
- request_id lives in a context var set by RequestIdMiddleware.
- log_event: structured helper for billing/entitlement events (truncates long values,
  masks customer emails).
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ROOT_LOGGER = "quizcast"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Extra attributes promoted to top-level keys in JSON output
_JSON_FIELDS = (
    "user_id",
    "event_type",
    "event_id",
    "error_code",
    "outcome",
    "credits_remaining",
    "status",
    "path",
    "method",
    "latency_bucket",
)

_LATENCY_BUCKETS = ((25, "<25ms"), (100, "25-100ms"), (250, "100-250ms"), (1000, "250-1000ms"))

_MAX_VALUE_CHARS = 300


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1s"


def mask_email(email: Optional[str]) -> Optional[str]:
    """a***@example.com; emails are only ever logged masked."""
    if not email or "@" not in email:
        return email
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


class ContextFilter(logging.Filter):
    """Fill request_id from context when the call site did not pass one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


def _utc_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": _utc_timestamp(record),
            "level": record.levelname.lower(),
            "logger": record.name,
            "msg": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for name in _JSON_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tags = []
        for name in ("request_id", "user_id", "event_type", "error_code"):
            value = getattr(record, name, None)
            if value:
                tags.append(f"{name}={value}")
        tag_part = f" ({', '.join(tags)})" if tags else ""
        line = f"{_utc_timestamp(record)} {record.levelname:<7} {record.name}: {record.getMessage()}{tag_part}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(env: str = "development", level: int = logging.INFO) -> None:
    """Install the single stdout handler on the quizcast logger tree."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() in {"prod", "production"} else TextFormatter())
    handler.addFilter(ContextFilter())
    logger.handlers = [handler]
    # Root handlers (pytest caplog) must still receive records
    logger.propagate = True

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _clip(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float)):
        return value
    text = value if isinstance(value, str) else repr(value)
    if len(text) <= _MAX_VALUE_CHARS:
        return text
    return text[:_MAX_VALUE_CHARS] + "...[truncated]"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
    logger_name: str = ROOT_LOGGER,
) -> None:
    """
    Log one structured billing/entitlement event.

    ``extra`` values are clipped; an ``email`` key is masked.
    """
    fields: Dict[str, Any] = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "event_type": event_type,
        "error_code": error_code,
    }
    for key, value in (extra or {}).items():
        fields[key] = mask_email(value) if key == "email" else _clip(value)

    logger = logging.getLogger(logger_name)
    logger.log(logging.getLevelName(level.upper()), msg, extra=fields)
