"""
Structured logging for the credits backend.

Records under the ``charachat`` logger carry the request id and, once the
caller is authenticated, the account id. Production emits one JSON object
per line; development emits one readable line with the same fields.
Anything passed through ``extra=`` is rendered as well.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
account_id_ctx_var: ContextVar[Optional[str]] = ContextVar("account_id", default=None)

_CONTEXT_FIELDS = ("request_id", "account_id")
_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

# Upper bound (exclusive, ms) -> label
_LATENCY_BUCKETS = ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms"))


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def bind_account_id(account_id: Optional[str]) -> None:
    """Attach account_id to every record logged later in this context."""
    account_id_ctx_var.set(account_id)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for upper, label in _LATENCY_BUCKETS:
        if latency_ms < upper:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, object]:
    """Context ids first, then the record's extras; None values dropped."""
    fields = {name: getattr(record, name, None) for name in _CONTEXT_FIELDS}
    fields.update(
        (key, value)
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and key not in _CONTEXT_FIELDS
    )
    return {key: value for key, value in fields.items() if value is not None}


class ContextFilter(logging.Filter):
    """Fill request_id and account_id from context unless given explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx_var.get()
        if getattr(record, "account_id", None) is None:
            record.account_id = account_id_ctx_var.get()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, object] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _fields(record)
        rid = fields.pop("request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{record.name}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(record.getMessage())
        parts.extend(f"{key}={value}" for key, value in fields.items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """JSON lines in production, readable lines elsewhere."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(ContextFilter())

    logger = logging.getLogger("charachat")
    logger.setLevel(logging.INFO)
    logger.handlers = [handler]
    logger.propagate = True

    # Uvicorn keeps its own handlers
    for name in ("uvicorn", "uvicorn.error"):
        logging.getLogger(name).propagate = False
