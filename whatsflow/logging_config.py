"""Structured stdout logging for the Whatsflow API.

Every record is one JSON line. Structured data travels in the `context`
extra; the ids operators search by most are lifted to the top level.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Lifted out of `context` to the top level of each line.
CORRELATION_KEYS = ("conversation_id", "batch_id", "execution_id", "instance")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if isinstance(context, dict) and context:
            context = dict(context)
            for key in CORRELATION_KEYS:
                if context.get(key) is not None:
                    entry[key] = str(context.pop(key))
            if context:
                entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Replace root handlers with a single JSON stdout handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"whatsflow.{name}")


class ContextLogger(logging.LoggerAdapter):
    """Adapter whose bound ids are merged with a per-call `context=` dict."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        merged = {**self.extra, **(context or {})}
        if merged:
            kwargs["extra"] = {"context": merged}
        return msg, kwargs


def bind_logger(name: str, **context: Any) -> ContextLogger:
    """Logger for one unit of work (a batch, an action execution)."""
    return ContextLogger(get_logger(name), context)
