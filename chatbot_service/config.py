"""
config.py

Runtime configuration for the chatbot pipeline.

Every knob is an environment variable resolved once into frozen dataclasses,
so components receive plain values and never read os.environ themselves.
Business limits (message length, blocked terms, retry count) live here rather
than in the code that enforces them.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).strip().lower() in ("true", "1", "yes")


def _env_list(key: str) -> Tuple[str, ...]:
    raw = os.getenv(key, "")
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class DatabaseConfig:
    url: str = "sqlite:///./chatbot.db"


@dataclass(frozen=True)
class CacheConfig:
    """
    Redis is optional: with no REDIS_URL the session manager runs on the
    durable store alone.
    """

    redis_url: str | None = None
    session_ttl_seconds: int = 3600
    history_size: int = 20
    key_prefix: str = "chat:"
    socket_timeout_seconds: float = 2.0


@dataclass(frozen=True)
class LLMConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4"
    max_tokens: int = 1000
    temperature: float = 0.7
    timeout_seconds: float = 60.0
    embed_model: str = "text-embedding-ada-002"
    max_attempts: int = 3


@dataclass(frozen=True)
class ModerationConfig:
    max_length: int = 1000
    blocked_terms: Tuple[str, ...] = ()


@dataclass(frozen=True)
class KnowledgeConfig:
    use_embeddings: bool = False
    similarity_threshold: float = 0.7
    default_limit: int = 5
    seed_on_startup: bool = True


@dataclass(frozen=True)
class ChatConfig:
    history_window: int = 10
    turn_timeout_seconds: float = 90.0


@dataclass(frozen=True)
class ApiConfig:
    rate_limit_per_minute: int = 20
    rate_limit_backend: str = "memory"  # memory | redis
    redis_key_prefix: str = "chat:rate"
    cors_allow_origins: Tuple[str, ...] = (
        "http://localhost:4000",
        "http://localhost:3000",
    )
    graceful_shutdown_seconds: int = 30


@dataclass(frozen=True)
class ChatbotConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    moderation: ModerationConfig = field(default_factory=ModerationConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def load_chatbot_config() -> ChatbotConfig:
    """
    Build ChatbotConfig from the environment.

    Missing or malformed values fall back to the dataclass defaults, so a bare
    environment yields a working local setup (SQLite, no Redis).
    """
    cors = _env_list("CORS_ALLOW_ORIGINS") or ApiConfig().cors_allow_origins
    return ChatbotConfig(
        database=DatabaseConfig(
            url=_env("DATABASE_URL", DatabaseConfig().url),
        ),
        cache=CacheConfig(
            redis_url=_env("REDIS_URL") or None,
            session_ttl_seconds=_env_int("REDIS_SESSION_TTL", 3600),
            history_size=_env_int("CHAT_HISTORY_CACHE_SIZE", 20),
            key_prefix=_env("CHAT_CACHE_KEY_PREFIX", "chat:"),
            socket_timeout_seconds=_env_float("REDIS_SOCKET_TIMEOUT", 2.0),
        ),
        llm=LLMConfig(
            base_url=_env("LLM_BASE_URL", LLMConfig().base_url),
            api_key=_env("LLM_API_KEY", ""),
            model=_env("LLM_MODEL", "gpt-4"),
            max_tokens=_env_int("LLM_MAX_TOKENS", 1000),
            temperature=_env_float("LLM_TEMPERATURE", 0.7),
            timeout_seconds=_env_float("LLM_TIMEOUT_SECONDS", 60.0),
            embed_model=_env("LLM_EMBED_MODEL", "text-embedding-ada-002"),
            max_attempts=_env_int("LLM_MAX_ATTEMPTS", 3),
        ),
        moderation=ModerationConfig(
            max_length=_env_int("CHAT_MESSAGE_MAX_LENGTH", 1000),
            blocked_terms=_env_list("CHAT_BLOCKED_TERMS"),
        ),
        knowledge=KnowledgeConfig(
            use_embeddings=_env_bool("KNOWLEDGE_USE_EMBEDDINGS", False),
            similarity_threshold=_env_float("KNOWLEDGE_SIMILARITY_THRESHOLD", 0.7),
            seed_on_startup=_env_bool("KNOWLEDGE_SEED_ON_STARTUP", True),
        ),
        chat=ChatConfig(
            history_window=_env_int("CHAT_HISTORY_WINDOW", 10),
            turn_timeout_seconds=_env_float("CHAT_TURN_TIMEOUT_SECONDS", 90.0),
        ),
        api=ApiConfig(
            rate_limit_per_minute=_env_int("RATE_LIMIT_PER_MINUTE", 20),
            rate_limit_backend=_env("RATE_LIMIT_BACKEND", "memory"),
            redis_key_prefix=_env("RATE_LIMIT_KEY_PREFIX", "chat:rate"),
            cors_allow_origins=cors,
            graceful_shutdown_seconds=_env_int("GRACEFUL_SHUTDOWN_SECONDS", 30),
        ),
    )
