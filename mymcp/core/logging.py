"""
Structured logging for the control plane.

- One "mymcp" logger; JSON lines in production, one-line text elsewhere.
- request_id is bound per HTTP request (see RequestIdMiddleware) and
  stamped onto every record.
- log_event() attaches user/server/operation context so orchestrator and
  configuration failures can be traced back to a caller.
"""

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOGGER_NAME = "mymcp"

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

CONTEXT_FIELDS = (
    "user_id",
    "server_id",
    "operation",
    "error_code",
    "status",
    "method",
    "path",
    "duration_ms",
)

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return default if rid is None else rid


def truncate(value: Any, limit: int = 500) -> str:
    """str() a value for logs or audit rows, capped at `limit` characters."""
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    return text if len(text) <= limit else f"{text[:limit]}...<truncated>"


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class StructuredFormatter(logging.Formatter):
    """Renders the message plus known context fields and any extras."""

    def __init__(self, as_json: bool = False):
        super().__init__()
        self.as_json = as_json

    def _fields(self, record: logging.LogRecord) -> Dict[str, Any]:
        fields = {name: getattr(record, name) for name in CONTEXT_FIELDS if getattr(record, name, None) is not None}
        for key, value in record.__dict__.items():
            if key in _RESERVED or key in fields or key == "request_id" or value is None:
                continue
            fields[key] = value
        return fields

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
        rid = getattr(record, "request_id", None)
        fields = self._fields(record)

        if self.as_json:
            payload = {
                "timestamp": ts,
                "level": record.levelname,
                "logger": record.name,
                "message": record.getMessage(),
                "request_id": rid,
                **fields,
            }
            if record.exc_info:
                payload["exc_info"] = self.formatException(record.exc_info)
            return json.dumps(payload, default=str)

        parts = [ts, record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{k}={v}" for k, v in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter(as_json=env.lower() == "production"))
    handler.addFilter(ContextFilter())
    logger.handlers = [handler]
    # Let pytest's caplog see records
    logger.propagate = True
    return logger


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    server_id: Optional[str] = None,
    operation: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    exc_info: bool = False,
) -> None:
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    fields: Dict[str, Any] = {"request_id": request_id or get_request_id()}
    for name, value in (
        ("user_id", user_id),
        ("server_id", server_id),
        ("operation", operation),
        ("error_code", error_code),
    ):
        if value is not None:
            fields[name] = value
    for key, value in (extra or {}).items():
        # Extras must not clobber LogRecord attributes
        fields[key if key not in _RESERVED else f"ctx_{key}"] = truncate(value)

    logger.log(logging.getLevelName(level.upper()), msg, extra=fields, exc_info=exc_info)
