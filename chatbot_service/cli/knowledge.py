"""CLI: seed-knowledge command."""

from __future__ import annotations

import asyncio

from ..chat.knowledge import KnowledgeRetriever, init_knowledge_repository
from ..chat.llm_client import CompletionClient
from ..chat.session_store import create_db_engine
from ..config import ChatbotConfig
from ..utils import get_logger

logger = get_logger("cli.knowledge")


async def _embed_missing(retriever: KnowledgeRetriever, llm: CompletionClient) -> int:
    try:
        return await retriever.embed_missing()
    finally:
        await llm.aclose()


def cmd_seed_knowledge(cfg: ChatbotConfig, *, embed: bool = False) -> dict:
    """Create the knowledge table, insert missing seed entries and optionally embed them."""
    engine = create_db_engine(cfg.database.url)
    try:
        repo = init_knowledge_repository(engine, seed=False)
        added = repo.seed_defaults()
        embedded = 0
        if embed:
            llm = CompletionClient(cfg.llm)
            retriever = KnowledgeRetriever(repo, config=cfg.knowledge, embedder=llm.embed)
            embedded = asyncio.run(_embed_missing(retriever, llm))
        summary = {"added": added, "embedded": embedded, "active": repo.count()}
    finally:
        engine.dispose()
    logger.info(
        "Knowledge seeded added=%d embedded=%d active=%d",
        summary["added"],
        summary["embedded"],
        summary["active"],
    )
    return summary
