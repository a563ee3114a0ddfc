from .store import KnowledgeRetriever, category_for_intent
from .policies import KnowledgeSeed, KNOWLEDGE_BASE
from .db_store import (
    KnowledgeEntry,
    KnowledgeRepository,
    init_knowledge_repository,
)

__all__ = [
    "KnowledgeRetriever",
    "category_for_intent",
    "KnowledgeSeed",
    "KNOWLEDGE_BASE",
    "KnowledgeEntry",
    "KnowledgeRepository",
    "init_knowledge_repository",
]
