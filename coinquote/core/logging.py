"""Logging setup: JSON or text lines, request id tagging, secret redaction.

Every module logs through `get_logger("<area>")`, which lands under the
`coinquote.` namespace. Request ids are set by the API middleware and picked
up here through a context variable, so resolver and price logs emitted while
serving a request carry the same id as the access log line.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

from .config import settings


request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Attributes every LogRecord carries; anything else came in through `extra=`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Third-party loggers that are chatty at INFO
_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets", "sqlalchemy.engine")


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, timezone.utc)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; `extra=` fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_var.get()
        if request_id:
            payload["request_id"] = request_id

        payload.update(
            (key, value)
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        )

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        if settings.debug:
            payload["location"] = f"{record.filename}:{record.lineno} in {record.funcName}"

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        tag = f"[{request_id[:8]}] " if request_id else ""
        line = (
            f"{_record_time(record):%Y-%m-%d %H:%M:%S} {record.levelname:8} "
            f"{tag}{record.name}: {record.getMessage()}"
        )
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class SensitiveDataFilter(logging.Filter):
    """Mask credentials before a record reaches any handler.

    Two passes: `key=value` / `"key": value` shapes for known credential
    names, then literal occurrences of the configured secrets themselves
    (an upstream error echoing the request headers, for instance).
    """

    SENSITIVE_KEYS = (
        "token",
        "secret",
        "authorization",
        "api_key",
        "x-cg-pro-api-key",
        "x-admin-token",
        "coingecko_api_key",
        "admin_token",
    )

    def __init__(self, secrets: Iterable[str | None] = ()):
        super().__init__()
        keys = "|".join(re.escape(k) for k in sorted(self.SENSITIVE_KEYS, key=len, reverse=True))
        self._pattern = re.compile(
            rf"""(["']?(?:[\w-]*(?:{keys}))["']?\s*[=:]\s*)[^\s,}}\]]+""",
            re.IGNORECASE,
        )
        self._secrets = [s for s in secrets if s and len(s) >= 4]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._pattern.sub(r"\1[REDACTED]", message)
        for secret in self._secrets:
            redacted = redacted.replace(secret, "[REDACTED]")
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging() -> None:
    """Install a single stdout handler on the root logger."""
    level = getattr(logging, settings.log_level)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        StructuredFormatter() if settings.log_format == "json" else TextFormatter()
    )
    handler.addFilter(
        SensitiveDataFilter(secrets=(settings.coingecko_api_key, settings.admin_token))
    )
    root_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the coinquote namespace."""
    return logging.getLogger(f"coinquote.{name}")
