"""
Logging setup: one root handler, JSON lines or a coloured console format.

Every module logs through ``logging.getLogger(__name__)`` and attaches
domain identifiers with ``extra=``:

    logger.info("Fanout done", extra={"broadcast_id": 12, "recipient_count": 40})

Those identifiers, and the request id bound by ``RequestLoggingMiddleware``,
are copied onto every record by ``RequestContextFilter`` so both formatters
can show them. JSON output is chosen by ``settings.use_json_logs``.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from resqzone.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar("request_context", default={})

# Identifiers worth indexing; anything else passed in ``extra`` stays off the line
DOMAIN_FIELDS = (
    "user_id", "group_id", "broadcast_id", "recipient_count",
    "lat", "lon", "event", "room",
)
HTTP_FIELDS = ("duration_ms", "status_code", "endpoint")

_NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio")


def bind_request_context(**values: Any) -> Token:
    """Bind request-scoped fields; pass the token to ``reset_request_context``."""
    return _request_context.set(values)


def reset_request_context(token: Token) -> None:
    _request_context.reset(token)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


class RequestContextFilter(logging.Filter):
    """Stamps ``request_id`` onto every record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_context().get("request_id")
        return True


def _record_fields(record: logging.LogRecord, names) -> Dict[str, Any]:
    return {name: getattr(record, name) for name in names if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        context = get_request_context()
        if context:
            entry["request"] = context
        entry.update(_record_fields(record, DOMAIN_FIELDS + HTTP_FIELDS))
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }
        return json.dumps(entry, default=str)


class PrettyFormatter(logging.Formatter):
    """``12:00:01 INFO     [a1b2c3d4] resqzone.app.alerts.fanout: msg  group=4``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        request_id = getattr(record, "request_id", None)
        tag = f" [{request_id[:8]}]" if request_id else ""
        fields = _record_fields(record, DOMAIN_FIELDS)
        suffix = "  " + " ".join(f"{k}={v}" for k, v in fields.items()) if fields else ""

        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{tag} {record.name}: {record.getMessage()}{suffix}"
        )
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Replace root handlers with a single stdout handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.use_json_logs if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
