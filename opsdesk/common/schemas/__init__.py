"""
OpsDesk Schemas

Persisted records for knowledge collections and the specialist lookup table.
"""

from .knowledge_item import (
    KnowledgeItem,
    EmbeddingCacheEntry,
    content_hash,
)
from .lookup_entity import (
    LookupEntity,
    EntityType,
    Relation,
)

__all__ = [
    "KnowledgeItem",
    "EmbeddingCacheEntry",
    "content_hash",
    "LookupEntity",
    "EntityType",
    "Relation",
]
