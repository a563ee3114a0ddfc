from __future__ import annotations

from dataclasses import replace

import chatbot_service.cli.knowledge as knowledge_cli
import main as entry
from chatbot_service.chat.knowledge import KNOWLEDGE_BASE
from chatbot_service.config import ChatbotConfig, DatabaseConfig


class _FakeCompletionClient:
    def __init__(self, config=None):
        self.closed = False

    async def embed(self, text):
        return [0.25, 0.75]

    async def aclose(self):
        self.closed = True


def _cfg(tmp_path) -> ChatbotConfig:
    return replace(ChatbotConfig(), database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'kb.db'}"))


def test_seed_knowledge_is_idempotent(tmp_path):
    cfg = _cfg(tmp_path)
    first = knowledge_cli.cmd_seed_knowledge(cfg)
    assert first == {"added": len(KNOWLEDGE_BASE), "embedded": 0, "active": len(KNOWLEDGE_BASE)}
    second = knowledge_cli.cmd_seed_knowledge(cfg)
    assert second["added"] == 0
    assert second["active"] == len(KNOWLEDGE_BASE)


def test_seed_knowledge_with_embeddings(tmp_path, monkeypatch):
    monkeypatch.setattr(knowledge_cli, "CompletionClient", _FakeCompletionClient)
    out = knowledge_cli.cmd_seed_knowledge(_cfg(tmp_path), embed=True)
    assert out["embedded"] == len(KNOWLEDGE_BASE)


def test_main_parser_commands():
    parser = entry.build_parser()
    serve = parser.parse_args(["serve-api", "--port", "9001"])
    assert serve.command == "serve-api"
    assert serve.port == 9001
    seed = parser.parse_args(["seed-knowledge", "--embed"])
    assert seed.command == "seed-knowledge"
    assert seed.embed is True


def test_main_dispatches_serve(monkeypatch):
    import chatbot_service.cli.serve as serve_cli

    seen = {}
    monkeypatch.setattr(serve_cli.uvicorn, "run", lambda app, **kw: seen.update(app=app, **kw))
    monkeypatch.setattr("sys.argv", ["main.py", "serve-api", "--host", "127.0.0.1"])
    entry.main()
    assert seen["app"] == "chatbot_service.api:app"
    assert seen["host"] == "127.0.0.1"
