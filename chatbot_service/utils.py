"""
utils.py

Shared helpers for the chatbot service.

- One logging standard for every module (plain or JSON lines).
- UTC timestamp helpers used by the session and knowledge stores.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "request_id"):
            payload["request_id"] = getattr(record, "request_id")
        if hasattr(record, "session_id"):
            payload["session_id"] = getattr(record, "session_id")
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Return a configured logger.

    The handler check prevents duplicate lines when the same logger is
    requested more than once.

    LOG_LEVEL env var:
    - accepts DEBUG, INFO, WARNING, ERROR, CRITICAL.
    - read only when the handler is installed, not on every call.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        use_json = os.getenv("LOG_FORMAT", "plain").lower() == "json"
        if use_json:
            formatter = JsonLogFormatter()
        else:
            formatter = logging.Formatter(
                fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s"
            )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        env_level_str = os.getenv("LOG_LEVEL", "").upper()
        resolved_level = getattr(logging, env_level_str, None) or level
        logger.setLevel(resolved_level)
    return logger


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(value))
