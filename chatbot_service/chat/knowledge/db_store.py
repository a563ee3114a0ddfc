"""chat/knowledge/db_store.py: durable knowledge entries.

Architecture:
  1. Entries live in the ``knowledge_entries`` table, created on startup.
  2. Embeddings, when computed, are stored as JSON float lists next to the
     entry so they survive restarts.
  3. Retrieval reads only ``status='active'`` rows; curation (create, update,
     archive) goes through the CRUD helpers below.
  4. ``seed_defaults`` inserts the entries from ``policies.py`` that are not
     in the table yet, keyed by ``seed_key``.

Usage (called in api.py lifespan):
    from chatbot_service.chat.knowledge.db_store import init_knowledge_repository
    repository = init_knowledge_repository(engine)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine

from ...errors import NotFoundError, ValidationError
from ...utils import ensure_utc, utcnow
from .policies import KNOWLEDGE_BASE, KnowledgeSeed

logger = logging.getLogger(__name__)

CATEGORIES = ("product", "compatibility", "troubleshooting", "general", "build_guide")
STATUSES = ("active", "draft", "archived")

@dataclass
class KnowledgeEntry:
    id: int
    title: str
    content: str
    category: str
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    access_count: int = 0
    last_accessed_at: datetime | None = None
    effectiveness: float = 0.5
    status: str = "active"
    # Relevance assigned by the retriever for one query; not persisted.
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "category": self.category,
            "tags": list(self.tags),
            "keywords": list(self.keywords),
            "usage": {
                "access_count": self.access_count,
                "last_accessed_at": (
                    self.last_accessed_at.isoformat() if self.last_accessed_at else None
                ),
                "effectiveness": self.effectiveness,
            },
            "status": self.status,
            "has_embedding": bool(self.embedding),
        }


class KnowledgeRepository:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self.metadata = MetaData()
        self._table = Table(
            "knowledge_entries",
            self.metadata,
            Column("id",               Integer(),    primary_key=True, autoincrement=True),
            Column("seed_key",         String(50),   nullable=True, unique=True),
            Column("title",            String(200),  nullable=False),
            Column("content",          Text(),       nullable=False),
            Column("category",         String(32),   nullable=False, index=True),
            Column("tags",             JSON(),       nullable=False),
            Column("keywords",         JSON(),       nullable=False),
            Column("embedding",        JSON(),       nullable=True),
            Column("access_count",     Integer(),    nullable=False, default=0),
            Column("last_accessed_at", DateTime(timezone=True), nullable=True),
            Column("effectiveness",    Float(),      nullable=False, default=0.5),
            Column("status",           String(16),   nullable=False, default="active"),
            Column("created_at",       DateTime(timezone=True), nullable=False),
            Column("updated_at",       DateTime(timezone=True), nullable=False),
        )

    def create_schema(self) -> None:
        self.metadata.create_all(self.engine)

    @staticmethod
    def _to_entry(row: Any) -> KnowledgeEntry:
        return KnowledgeEntry(
            id=row["id"],
            title=row["title"],
            content=row["content"],
            category=row["category"],
            tags=list(row["tags"] or []),
            keywords=list(row["keywords"] or []),
            embedding=row["embedding"] or None,
            access_count=row["access_count"] or 0,
            last_accessed_at=ensure_utc(row["last_accessed_at"]),
            effectiveness=float(row["effectiveness"] if row["effectiveness"] is not None else 0.5),
            status=row["status"],
        )

    # ── Seeding ──────────────────────────────────────────────────────────────

    def seed_defaults(self, seeds: Iterable[KnowledgeSeed] = KNOWLEDGE_BASE) -> int:
        """Insert seed entries whose ``seed_key`` is not stored yet. Returns the count added."""
        seeds = list(seeds)
        with self.engine.begin() as conn:
            existing = {
                r[0]
                for r in conn.execute(select(self._table.c.seed_key)).fetchall()
                if r[0] is not None
            }
            added = 0
            now = utcnow()
            for seed in seeds:
                if seed.seed_key in existing:
                    continue
                conn.execute(
                    insert(self._table).values(
                        seed_key=seed.seed_key,
                        title=seed.title,
                        content=seed.content,
                        category=seed.category,
                        tags=list(seed.tags),
                        keywords=list(seed.keywords),
                        access_count=0,
                        effectiveness=0.5,
                        status="active",
                        created_at=now,
                        updated_at=now,
                    )
                )
                added += 1
        if added:
            logger.info("Knowledge DB: seeded %d of %d default entries", added, len(seeds))
        return added

    # ── Retrieval reads ──────────────────────────────────────────────────────

    def list_active(self, category: str | None = None) -> list[KnowledgeEntry]:
        stmt = select(self._table).where(self._table.c.status == "active")
        if category:
            stmt = stmt.where(self._table.c.category == category)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(self._table.c.id)).mappings().all()
        return [self._to_entry(r) for r in rows]

    def list_missing_embeddings(self) -> list[KnowledgeEntry]:
        return [e for e in self.list_active() if not e.embedding]

    def increment_access(self, entry_ids: Iterable[int]) -> None:
        ids = list(entry_ids)
        if not ids:
            return
        with self.engine.begin() as conn:
            conn.execute(
                update(self._table)
                .where(self._table.c.id.in_(ids))
                .values(
                    access_count=self._table.c.access_count + 1,
                    last_accessed_at=utcnow(),
                )
            )

    def count(self, *, status: str | None = "active") -> int:
        stmt = select(func.count()).select_from(self._table)
        if status:
            stmt = stmt.where(self._table.c.status == status)
        with self.engine.connect() as conn:
            return int(conn.execute(stmt).scalar() or 0)

    # ── Curation ─────────────────────────────────────────────────────────────

    def get_entry(self, entry_id: int) -> KnowledgeEntry:
        with self.engine.connect() as conn:
            row = (
                conn.execute(select(self._table).where(self._table.c.id == entry_id))
                .mappings()
                .first()
            )
        if row is None:
            raise NotFoundError(f"Knowledge entry not found: {entry_id}")
        return self._to_entry(row)

    def create_entry(
        self,
        *,
        title: str,
        content: str,
        category: str,
        tags: list[str] | None = None,
        keywords: list[str] | None = None,
        status: str = "active",
    ) -> KnowledgeEntry:
        if category not in CATEGORIES:
            raise ValidationError(f"Unknown knowledge category: {category}")
        if status not in STATUSES:
            raise ValidationError(f"Unknown knowledge status: {status}")
        now = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(self._table).values(
                    title=title,
                    content=content,
                    category=category,
                    tags=tags or [],
                    keywords=keywords or [],
                    access_count=0,
                    effectiveness=0.5,
                    status=status,
                    created_at=now,
                    updated_at=now,
                )
            )
            new_id = result.inserted_primary_key[0]
        return self.get_entry(new_id)

    def update_entry(self, entry_id: int, **fields: Any) -> KnowledgeEntry:
        """Update curated fields. Changing title or content drops the stored embedding."""
        allowed = {"title", "content", "category", "tags", "keywords", "status", "effectiveness"}
        vals = {k: v for k, v in fields.items() if k in allowed}
        if "category" in vals and vals["category"] not in CATEGORIES:
            raise ValidationError(f"Unknown knowledge category: {vals['category']}")
        if "status" in vals and vals["status"] not in STATUSES:
            raise ValidationError(f"Unknown knowledge status: {vals['status']}")
        if "effectiveness" in vals:
            vals["effectiveness"] = min(1.0, max(0.0, float(vals["effectiveness"])))
        if "title" in vals or "content" in vals:
            vals["embedding"] = None
        vals["updated_at"] = utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                update(self._table).where(self._table.c.id == entry_id).values(**vals)
            )
        if result.rowcount == 0:
            raise NotFoundError(f"Knowledge entry not found: {entry_id}")
        return self.get_entry(entry_id)

    def archive_entry(self, entry_id: int) -> KnowledgeEntry:
        return self.update_entry(entry_id, status="archived")

    def set_embedding(self, entry_id: int, embedding: list[float]) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(self._table)
                .where(self._table.c.id == entry_id)
                .values(embedding=list(embedding), updated_at=utcnow())
            )


def init_knowledge_repository(engine: Engine, *, seed: bool = True) -> KnowledgeRepository:
    repository = KnowledgeRepository(engine)
    repository.create_schema()
    if seed:
        try:
            repository.seed_defaults()
        except Exception as exc:
            logger.warning("Knowledge DB seed error: %s", exc)
    return repository
