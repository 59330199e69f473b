"""
Embedding Cache

Decides whether an item's persisted vector can be trusted and recomputes it
when it cannot. A cached vector is trusted only while:

- its version equals the hash of the text the connector would embed now,
- it was produced by the configured model (when both sides record one),
- its dimension matches the connector's dimension,
- it is not a zero vector.

Recomputation retries provider failures with exponential backoff. A final
failure leaves the item without an embedding; it is never fatal.
"""

import asyncio
import logging
from typing import Callable, List, Optional

import numpy as np

from .errors import ProviderError
from .schemas.knowledge_item import EmbeddingCacheEntry, KnowledgeItem, content_hash

logger = logging.getLogger("opsdesk.common.embedding_cache")

TextBuilder = Callable[[KnowledgeItem], str]


class EmbeddingCache:
    """Validity checks and recomputation for one connector's vectors"""

    def __init__(
        self,
        embedder,
        text_builder: TextBuilder,
        model: str = "",
        max_retries: int = 3,
        backoff_base: float = 0.5,
        dimension: Optional[int] = None,
    ):
        self._embedder = embedder
        self._text_builder = text_builder
        self._model = model
        self._max_retries = max(0, max_retries)
        self._backoff_base = backoff_base
        self._dimension = dimension

    @property
    def dimension(self) -> Optional[int]:
        """Vector dimension for this connector, fixed by the first valid vector"""
        return self._dimension

    def reset(self) -> None:
        """Forget the dimension so a full re-embed can settle a new one"""
        self._dimension = None

    def embedding_text(self, item: KnowledgeItem) -> str:
        return self._text_builder(item)

    def content_version(self, item: KnowledgeItem) -> str:
        return content_hash(self._text_builder(item))

    def is_stale(self, item: KnowledgeItem) -> bool:
        entry = item.embedding
        if entry is None:
            return True
        if entry.version != self.content_version(item):
            return True
        if self._model and entry.model and entry.model != self._model:
            return True
        return False

    def is_valid(self, item: KnowledgeItem) -> bool:
        """True if the item's vector may be used for scoring"""
        if self.is_stale(item):
            return False
        vector = item.embedding.vector
        if not vector:
            return False
        if self._dimension is not None and len(vector) != self._dimension:
            return False
        return bool(np.any(np.asarray(vector, dtype=np.float64)))

    def adopt(self, items: List[KnowledgeItem]) -> None:
        """Fix the dimension from the first trusted cached vector, if not known"""
        if self._dimension is not None:
            return
        for item in items:
            if not self.is_stale(item) and item.embedding.vector:
                self._dimension = len(item.embedding.vector)
                return

    async def compute(self, item: KnowledgeItem) -> Optional[EmbeddingCacheEntry]:
        """
        Embed one item, retrying with exponential backoff.

        Returns:
            A fresh cache entry, or None when the provider kept failing or
            returned a vector of the wrong dimension
        """
        text = self._text_builder(item)
        if not text.strip():
            logger.warning("Item %s has no embeddable text", item.id)
            return None

        version = content_hash(text)
        attempt = 0
        while True:
            try:
                vector = await self._embedder.embed_single(text)
                break
            except (ProviderError, ValueError) as e:
                if attempt >= self._max_retries:
                    logger.warning(
                        "Embedding failed for item %s after %d attempts: %s",
                        item.id, attempt + 1, e,
                    )
                    return None
                delay = self._backoff_base * (2 ** attempt)
                attempt += 1
                logger.debug("Retrying embedding for %s in %.2fs", item.id, delay)
                await asyncio.sleep(delay)

        vector = [float(v) for v in vector]
        if self._dimension is None:
            self._dimension = len(vector)
        elif len(vector) != self._dimension:
            logger.warning(
                "Embedding for item %s has dimension %d, expected %d",
                item.id, len(vector), self._dimension,
            )
            return None

        return EmbeddingCacheEntry(vector=vector, version=version, model=self._model)

    async def refresh(self, item: KnowledgeItem) -> KnowledgeItem:
        """Copy of the item with a fresh embedding (None on failure)"""
        entry = await self.compute(item)
        return item.model_copy(update={"embedding": entry})
