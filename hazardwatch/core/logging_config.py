"""
Structured logging configuration.

Production gets one JSON object per line; development gets a coloured,
single-line console format that prefixes the pipeline identifiers:

    14:02:11 INFO     [ev=hz_3f.. w=user_ab] hazardwatch.matching.live_matcher: ...

Pipeline code attaches identifiers with ``extra=``; only the keys listed
in STRUCTURED_FIELDS are picked up.

Usage:
    from hazardwatch.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Dispatching", extra={"event_id": "hz_ab12", "recipient_count": 40})
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from hazardwatch.core.config import settings

STRUCTURED_FIELDS = (
    "event_id", "watcher_id", "batch_id", "recipient_count",
    "attempt", "duration_ms", "status_code", "endpoint",
)

# Short tags shown by the console formatter
_TAGS = (("event_id", "ev"), ("watcher_id", "w"), ("batch_id", "b"))


def structured_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """The STRUCTURED_FIELDS present on a record."""
    return {key: getattr(record, key) for key in STRUCTURED_FIELDS if hasattr(record, key)}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):
    """One JSON object per record, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        entry.update(structured_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {
                "type": type(exc).__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured console output with pipeline ids up front."""

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
        tags = " ".join(
            f"{short}={getattr(record, key)}"
            for key, short in _TAGS
            if getattr(record, key, None)
        )
        line = (
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"
            f"{f' [{tags}]' if tags else ''} {record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[1]:
            line += "\n" + self.formatException(record.exc_info)
        return line


# ── Setup ──

def setup_logging(level: Optional[str] = None, *, json_output: Optional[bool] = None) -> None:
    """
    Install a single stdout handler on the root logger.

    Defaults come from LOG_LEVEL and ENVIRONMENT (JSON in production).
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
