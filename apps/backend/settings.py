"""
apps/backend/settings.py

Process-level settings for the chatbot API server (bind address, workers,
logging). Pipeline behaviour is configured separately through
``chatbot_service.config.load_chatbot_config``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class ServerSettings:
    host: str = field(default_factory=lambda: _env("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 8000))
    workers: int = field(default_factory=lambda: _env_int("WEB_CONCURRENCY", 1))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "info").lower())
    log_format: str = field(default_factory=lambda: _env("LOG_FORMAT", "json"))
    # Long enough for a turn that is waiting on its completion retries.
    timeout_graceful_shutdown: int = field(
        default_factory=lambda: _env_int("GRACEFUL_SHUTDOWN_SECONDS", 30)
    )
    reload: bool = field(default_factory=lambda: _env_bool("UVICORN_RELOAD", False))


settings = ServerSettings()
