from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from functools import partial
from typing import Any, Callable

import numpy as np
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from ...config import KnowledgeConfig
from ...metrics import KNOWLEDGE_FAILURES
from .db_store import KnowledgeEntry

logger = logging.getLogger(__name__)

_INTENT_CATEGORY: dict[str, str | None] = {
    "build_help": "build_guide",
    "product_inquiry": "product",
    "support": "troubleshooting",
    "general": None,
}


def category_for_intent(intent: str) -> str | None:
    return _INTENT_CATEGORY.get(str(intent))


def _document(entry: KnowledgeEntry) -> str:
    return " ".join([entry.title, entry.content, " ".join(entry.tags), " ".join(entry.keywords)])


def rank_lexical(query: str, entries: list[KnowledgeEntry], *, top_k: int) -> list[KnowledgeEntry]:
    """TF-IDF cosine ranking over title, content, tags and keywords.

    The index is fitted per call on the candidate set, which is already
    narrowed by category. Entries with zero similarity are dropped.
    """
    if not entries or not query.strip():
        return []
    vectorizer = TfidfVectorizer(
        analyzer="word",
        ngram_range=(1, 2),
        min_df=1,
        sublinear_tf=True,
    )
    matrix = vectorizer.fit_transform([_document(e) for e in entries])
    sims = cosine_similarity(vectorizer.transform([query]), matrix).flatten()
    top_indices = np.argsort(sims)[::-1][:top_k]
    return [replace(entries[int(i)], score=float(sims[int(i)])) for i in top_indices if sims[int(i)] > 0]


def rank_semantic(
    query_embedding: list[float],
    entries: list[KnowledgeEntry],
    *,
    threshold: float,
    top_k: int,
) -> list[KnowledgeEntry]:
    candidates = [e for e in entries if e.embedding and len(e.embedding) == len(query_embedding)]
    if not candidates:
        return []
    matrix = np.asarray([e.embedding for e in candidates], dtype=float)
    sims = cosine_similarity(np.asarray([query_embedding], dtype=float), matrix).flatten()
    order = np.argsort(sims)[::-1]
    return [
        replace(candidates[int(i)], score=float(sims[int(i)]))
        for i in order[:top_k]
        if sims[int(i)] > threshold
    ]


def merge_by_id(*groups: list[KnowledgeEntry]) -> list[KnowledgeEntry]:
    """Deduplicate by entry id, keeping the higher-scored copy in first-seen position."""
    merged: dict[int, KnowledgeEntry] = {}
    for group in groups:
        for entry in group:
            current = merged.get(entry.id)
            if current is None or current.score < entry.score:
                merged[entry.id] = entry
    return list(merged.values())


class KnowledgeRetriever:
    """Fetches grounding entries for one turn.

    Lexical TF-IDF search always runs; embedding search joins it when
    ``KnowledgeConfig.use_embeddings`` is on and an embedder is wired in.
    Retrieval never raises: any failure is logged and yields ``[]``.
    """

    def __init__(
        self,
        repository: Any,
        *,
        config: KnowledgeConfig | None = None,
        embedder: Callable[[str], Any] | None = None,
    ) -> None:
        self.repository = repository
        self.config = config or KnowledgeConfig()
        self.embedder = embedder

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def retrieve(
        self,
        query: str,
        intent: str = "general",
        entities: Any = None,
        limit: int | None = None,
    ) -> list[KnowledgeEntry]:
        limit = limit or self.config.default_limit
        try:
            results = await self._search(query, intent, entities, limit)
        except Exception as exc:
            KNOWLEDGE_FAILURES.inc()
            logger.error("Knowledge retrieval failed, continuing without it: %s", exc)
            return []

        if results:
            try:
                await self._run(self.repository.increment_access, [e.id for e in results])
            except Exception as exc:
                logger.warning("Knowledge access count update failed: %s", exc)

        logger.debug(
            "Knowledge retrieved intent=%s count=%d query=%s", intent, len(results), query[:50]
        )
        return results

    async def _search(
        self, query: str, intent: str, entities: Any, limit: int
    ) -> list[KnowledgeEntry]:
        category = category_for_intent(intent)
        search_text = _expand_query(query, entities)

        entries = await self._run(self.repository.list_active, category)
        lexical = rank_lexical(search_text, entries, top_k=limit * 2)[:limit]

        if not (self.config.use_embeddings and self.embedder is not None):
            return lexical

        try:
            query_embedding = await self.embedder(query)
            semantic = rank_semantic(
                query_embedding,
                [e for e in entries if e.embedding],
                threshold=self.config.similarity_threshold,
                top_k=limit,
            )
        except Exception as exc:
            logger.warning("Embedding search failed, using text search only: %s", exc)
            return lexical
        return merge_by_id(lexical, semantic)[:limit]

    async def embed_missing(self) -> int:
        """Compute and store embeddings for active entries without one."""
        if self.embedder is None:
            return 0
        missing = await self._run(self.repository.list_missing_embeddings)
        embedded = 0
        for entry in missing:
            try:
                vector = await self.embedder(f"{entry.title}. {entry.content}")
            except Exception as exc:
                logger.warning("Embedding entry %s failed: %s", entry.id, exc)
                continue
            await self._run(self.repository.set_embedding, entry.id, vector)
            embedded += 1
        logger.info("Knowledge DB: %d/%d entries embedded", embedded, len(missing))
        return embedded


def _expand_query(query: str, entities: Any) -> str:
    if entities is None:
        return query
    extra = list(getattr(entities, "component_types", []) or []) + list(
        getattr(entities, "brands", []) or []
    )
    return " ".join([query, *extra]) if extra else query
