from __future__ import annotations

from chatbot_service.config import ChatbotConfig, load_chatbot_config

_ENV_KEYS = (
    "DATABASE_URL",
    "REDIS_URL",
    "LLM_MODEL",
    "LLM_MAX_ATTEMPTS",
    "CHAT_MESSAGE_MAX_LENGTH",
    "CHAT_BLOCKED_TERMS",
    "KNOWLEDGE_USE_EMBEDDINGS",
    "RATE_LIMIT_PER_MINUTE",
    "CORS_ALLOW_ORIGINS",
    "CHAT_TURN_TIMEOUT_SECONDS",
)


def _clear(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_without_environment(monkeypatch):
    _clear(monkeypatch)
    cfg = load_chatbot_config()
    assert isinstance(cfg, ChatbotConfig)
    assert cfg.database.url.startswith("sqlite")
    assert cfg.cache.redis_url is None
    assert cfg.cache.history_size == 20
    assert cfg.llm.max_attempts == 3
    assert cfg.moderation.max_length == 1000
    assert cfg.moderation.blocked_terms == ()
    assert cfg.knowledge.use_embeddings is False
    assert cfg.knowledge.similarity_threshold == 0.7
    assert cfg.chat.history_window == 10
    assert cfg.api.cors_allow_origins


def test_environment_overrides(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db/chat")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("LLM_MODEL", "gpt-4o")
    monkeypatch.setenv("LLM_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CHAT_MESSAGE_MAX_LENGTH", "200")
    monkeypatch.setenv("CHAT_BLOCKED_TERMS", "casino, , crack ")
    monkeypatch.setenv("KNOWLEDGE_USE_EMBEDDINGS", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example,https://b.example")
    cfg = load_chatbot_config()
    assert cfg.database.url == "postgresql://u:p@db/chat"
    assert cfg.cache.redis_url == "redis://cache:6379/0"
    assert cfg.llm.model == "gpt-4o"
    assert cfg.llm.max_attempts == 5
    assert cfg.moderation.max_length == 200
    assert cfg.moderation.blocked_terms == ("casino", "crack")
    assert cfg.knowledge.use_embeddings is True
    assert cfg.api.cors_allow_origins == ("https://a.example", "https://b.example")


def test_malformed_numbers_fall_back_to_defaults(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "lots")
    monkeypatch.setenv("CHAT_TURN_TIMEOUT_SECONDS", "soon")
    cfg = load_chatbot_config()
    assert cfg.api.rate_limit_per_minute == 20
    assert cfg.chat.turn_timeout_seconds == 90.0
