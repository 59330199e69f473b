"""
Knowledge Item Schema

Core principle: an item's embedding is only trusted while it was computed from
the item's current content. The content version is a hash over exactly the
text that gets embedded, so any edit that changes search behaviour also
invalidates the cached vector.
"""

import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def content_hash(text: str) -> str:
    """Stable version string for a piece of embedding text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


class EmbeddingCacheEntry(BaseModel):
    """A cached vector plus the content version it was computed from"""
    vector: List[float] = Field(default_factory=list)
    version: str = Field(..., description="content_version of the item when embedded")
    model: str = Field(default="", description="Embedding model that produced the vector")

    @property
    def dimension(self) -> int:
        return len(self.vector)


class KnowledgeItem(BaseModel):
    """
    A searchable item owned by exactly one connector.

    ``text`` is the derived searchable text. What is actually sent to the
    embedding provider is decided by the owning connector's text builder
    (see retriever.sources); its hash is the item's content version.
    """
    id: str = Field(..., description="Unique within its source")
    title: str
    text: str = Field(default="", description="Derived searchable text")
    summary: str = Field(default="")
    url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    last_updated: datetime = Field(default_factory=_utcnow)
    embedding: Optional[EmbeddingCacheEntry] = None

    def default_embedding_text(self) -> str:
        """Title, summary, tags and body joined the way the article index does"""
        parts = [self.title, self.summary, " ".join(self.tags), self.text]
        return " ".join(p.strip() for p in parts if p and p.strip())

    def without_embedding(self) -> "KnowledgeItem":
        return self.model_copy(update={"embedding": None})

    def touch(self) -> "KnowledgeItem":
        """Copy with last_updated set to now"""
        return self.model_copy(update={"last_updated": _utcnow()})
