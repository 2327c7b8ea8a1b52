"""Structured logging configuration.

Provides:
  - JSON-formatted log output for staging and production
  - Human-readable colored output for development
  - Request ID correlation for the relayer service
  - A fingerprint helper so commitments and nullifiers are never logged in full
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

FINGERPRINT_CHARS = 16

_EXTRA_FIELDS = (
    "duration_ms",
    "status_code",
    "method",
    "path",
    "origin",
    "code",
    "commitment",
    "leaf_index",
)


def fingerprint(value: str | bytes | int) -> str:
    """Return a short hex prefix of a field element for log output."""
    if isinstance(value, bytes):
        text = value.hex()
    elif isinstance(value, int):
        text = format(value, "064x")
    else:
        text = value
    return text[:FINGERPRINT_CHARS]


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.pathname:
            log_entry["module"] = record.module
            log_entry["function"] = record.funcName
            log_entry["line"] = record.lineno

        if hasattr(record, "request_id"):
            log_entry["request_id"] = record.request_id

        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else "Unknown",
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        for key in _EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry, default=str)


class DevFormatter(logging.Formatter):
    """Colored human-readable formatter for development."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.now(timezone.utc).strftime("%H:%M:%S")
        prefix = f"{color}{ts} [{record.levelname:>8s}]{self.RESET}"
        msg = record.getMessage()

        req_id = getattr(record, "request_id", None)
        if req_id:
            msg = f"[{req_id[:8]}] {msg}"

        base = f"{prefix} {record.name}: {msg}"
        if record.exc_info and record.exc_info[1]:
            base += "\n" + self.formatException(record.exc_info)
        return base


def setup_logging(env: str = "development", log_level: str = "INFO") -> None:
    """Configure root logging for the engine.

    Args:
        env: Application environment (development/staging/production)
        log_level: Minimum log level
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    if env in ("staging", "production"):
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(DevFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpcore", "httpx", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)


class RequestLogFilter(logging.Filter):
    """Filter that stamps a request ID onto every record it sees."""

    def __init__(self, request_id: str = "") -> None:
        super().__init__()
        self.request_id = request_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = self.request_id  # type: ignore[attr-defined]
        return True
