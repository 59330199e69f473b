"""
Knowledge Source Connector

One searchable collection per knowledge source. Readers work on an immutable
snapshot; writers build a new snapshot, persist it, and only then swap it in,
so a failed save leaves memory exactly as it was.

Search ranking:
- score = cosine similarity between query and item vectors
- items without a valid embedding score 0 and sort after embedded items
- ties broken by item id ascending
- if the query cannot be embedded, items are ranked by weighted term
  matches over id, title, tags, summary and text instead
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from ..common.embedding_cache import EmbeddingCache
from ..common.embedding_service import batch_cosine_similarity
from ..common.errors import (
    DuplicateItemError,
    ItemNotFoundError,
    PersistenceError,
    ProviderError,
)
from ..common.schemas import KnowledgeItem
from .stores import KnowledgeStore

logger = logging.getLogger("opsdesk.retriever.connector")

# Per-field weight of a query term found in that field
LEXICAL_WEIGHTS = (("id", 15.0), ("title", 10.0), ("tags", 8.0), ("summary", 5.0), ("text", 3.0))
_LEXICAL_MAX = sum(w for _, w in LEXICAL_WEIGHTS)
LEXICAL_MIN_TERM = 3


@dataclass
class SearchResult:
    """A single ranked item with its provenance tag"""
    item: KnowledgeItem
    score: float
    source: str
    has_embedding: bool = True

    @property
    def item_id(self) -> str:
        return self.item.id

    @property
    def title(self) -> str:
        return self.item.title


@runtime_checkable
class KnowledgeConnector(Protocol):
    """Capability interface shared by every knowledge source"""

    @property
    def name(self) -> str:
        ...

    async def initialize(self) -> None:
        ...

    async def reload(self) -> None:
        ...

    async def search(self, query: str, k: int = 5) -> List[SearchResult]:
        ...

    def get_all(self, include_inactive: bool = False) -> List[KnowledgeItem]:
        ...

    def get_by_id(self, item_id: str) -> Optional[KnowledgeItem]:
        ...

    def get_by_title(self, title: str) -> Optional[KnowledgeItem]:
        ...

    def get_by_group(self, group: str) -> List[KnowledgeItem]:
        ...

    def group_counts(self) -> Dict[str, int]:
        ...

    async def add(self, item: KnowledgeItem) -> KnowledgeItem:
        ...

    async def update(self, item: KnowledgeItem) -> KnowledgeItem:
        ...

    async def delete(self, item_id: str) -> None:
        ...

    def stats(self) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class _Snapshot:
    items: Tuple[KnowledgeItem, ...] = ()
    by_id: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def build(cls, items) -> "_Snapshot":
        items = tuple(items)
        return cls(items=items, by_id={item.id: i for i, item in enumerate(items)})


def _utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def lexical_score(item: KnowledgeItem, query: str) -> float:
    """
    Weighted term containment, scaled to [0, 1].

    Each query term of at least LEXICAL_MIN_TERM characters earns the weight
    of every field that contains it.
    """
    words = (w.strip(".-") for w in re.findall(r"[\w.\-]+", (query or "").lower()))
    terms = [w for w in words if len(w) >= LEXICAL_MIN_TERM]
    if not terms:
        return 0.0
    fields = {
        "id": item.id.lower(),
        "title": item.title.lower(),
        "tags": " ".join(item.tags).lower(),
        "summary": (item.summary or "").lower(),
        "text": (item.text or "").lower(),
    }
    raw = sum(weight for term in terms for name, weight in LEXICAL_WEIGHTS if term in fields[name])
    return raw / (_LEXICAL_MAX * len(terms))


class CollectionConnector:
    """
    Connector over a persisted collection of knowledge items.

    Composes a KnowledgeStore, an embedding service and a per-source text
    builder. All writes go through a single asyncio.Lock.
    """

    def __init__(
        self,
        name: str,
        store: KnowledgeStore,
        embedding_service,
        text_builder: Optional[Callable[[KnowledgeItem], str]] = None,
        request_interval: float = 0.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
    ):
        """
        Args:
            name: Provenance tag for this source
            store: Whole-collection persistence
            embedding_service: Anything with async ``embed_single(text)``
            text_builder: Text to embed for an item (default: title, summary, tags, text)
            request_interval: Delay between provider calls during cold start
            max_retries: Provider retries per item
            backoff_base: First retry delay in seconds, doubled each attempt
        """
        self._name = name
        self._store = store
        self._embedder = embedding_service
        self._text_builder = text_builder or KnowledgeItem.default_embedding_text
        self._request_interval = request_interval
        self._cache = EmbeddingCache(
            embedding_service,
            self._text_builder,
            model=getattr(embedding_service, "model", "") or "",
            max_retries=max_retries,
            backoff_base=backoff_base,
        )
        self._snapshot = _Snapshot()
        self._write_lock = asyncio.Lock()
        self._initialized = False
        self._init_task: Optional[asyncio.Task] = None
        self._last_loaded: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def embedding_text(self, item: KnowledgeItem) -> str:
        return self._text_builder(item)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Load items, reuse valid cached embeddings, compute the rest. Idempotent."""
        if self._initialized:
            return
        async with self._write_lock:
            if self._initialized:
                return
            await self._load(force=False)
            self._initialized = True

    async def _ensure_initialized(self) -> None:
        """
        Initialize in a task of its own that callers only wait on.

        A caller cancelled by its timeout leaves the load running, so the
        next search finds it finished instead of starting over.
        """
        if self._initialized:
            return
        if self._init_task is None or self._init_task.done():
            self._init_task = asyncio.create_task(self.initialize())
        await asyncio.shield(self._init_task)

    async def reload(self) -> None:
        """Reload from the store and re-embed every active item"""
        async with self._write_lock:
            await self._load(force=True)
            self._initialized = True

    async def _load(self, force: bool) -> None:
        loaded = self._store.load()

        items: Dict[str, KnowledgeItem] = {}
        for item in loaded:
            if item.id in items:
                logger.warning("[%s] Duplicate item id %s in store, keeping the last", self._name, item.id)
            items[item.id] = item
        ordered = list(items.values())

        if force:
            self._cache.reset()
        else:
            self._cache.adopt(ordered)

        recomputed = 0
        for idx, item in enumerate(ordered):
            if not item.is_active:
                continue
            if not force and self._cache.is_valid(item):
                continue
            if recomputed > 0 and self._request_interval > 0:
                await asyncio.sleep(self._request_interval)
            ordered[idx] = await self._cache.refresh(item)
            recomputed += 1

        if recomputed:
            try:
                self._store.save(ordered)
            except PersistenceError as e:
                # Vectors stay usable in memory and are recomputed on next start
                logger.error("[%s] Could not persist recomputed embeddings: %s", self._name, e)

        self._snapshot = _Snapshot.build(ordered)
        self._last_loaded = datetime.now(timezone.utc)

        missing = sum(1 for i in ordered if i.is_active and not self._cache.is_valid(i))
        logger.info(
            "[%s] Loaded %d items (%d recomputed, %d without embedding)",
            self._name, len(ordered), recomputed, missing,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(self, query: str, k: int = 5) -> List[SearchResult]:
        """
        Top-k active items by cosine similarity to the query.

        An empty query returns the k most recently updated active items with
        score 0 and makes no provider call.
        """
        await self._ensure_initialized()
        snapshot = self._snapshot
        active = [item for item in snapshot.items if item.is_active]
        if k <= 0 or not active:
            return []

        if not query or not query.strip():
            recent = sorted(active, key=lambda i: (-_utc(i.last_updated).timestamp(), i.id))[:k]
            return [
                SearchResult(item=i, score=0.0, source=self._name, has_embedding=self._cache.is_valid(i))
                for i in recent
            ]

        query_vector = await self._embed_query(query)
        if query_vector is None:
            return self._lexical_search(active, query, k)

        embedded = [item for item in active if self._cache.is_valid(item)]
        scores: List[float] = [0.0] * len(embedded)
        if embedded and query_vector is not None:
            scores = batch_cosine_similarity(query_vector, [i.embedding.vector for i in embedded])

        results = [
            SearchResult(item=item, score=float(score), source=self._name, has_embedding=True)
            for item, score in zip(embedded, scores)
        ]
        embedded_ids = {item.id for item in embedded}
        results.extend(
            SearchResult(item=item, score=0.0, source=self._name, has_embedding=False)
            for item in active
            if item.id not in embedded_ids
        )

        results.sort(key=lambda r: (not r.has_embedding, -r.score, r.item_id))
        return results[:k]

    async def _embed_query(self, query: str) -> Optional[List[float]]:
        """Query vector, or None (lexical ranking is used) when the provider fails"""
        try:
            vector = await self._embedder.embed_single(query)
        except (ProviderError, ValueError) as e:
            logger.warning("[%s] Query embedding failed, falling back to lexical ranking: %s", self._name, e)
            return None

        dimension = self._cache.dimension
        if dimension is not None and len(vector) != dimension:
            logger.warning(
                "[%s] Query vector dimension %d does not match collection dimension %d",
                self._name, len(vector), dimension,
            )
            return None
        return vector

    def _lexical_search(self, active: List[KnowledgeItem], query: str, k: int) -> List[SearchResult]:
        results = [
            SearchResult(
                item=item,
                score=lexical_score(item, query),
                source=self._name,
                has_embedding=self._cache.is_valid(item),
            )
            for item in active
        ]
        results.sort(key=lambda r: (-r.score, not r.has_embedding, r.item_id))
        return results[:k]

    def get_all(self, include_inactive: bool = False) -> List[KnowledgeItem]:
        items = self._snapshot.items
        if include_inactive:
            return list(items)
        return [item for item in items if item.is_active]

    def get_by_id(self, item_id: str) -> Optional[KnowledgeItem]:
        snapshot = self._snapshot
        idx = snapshot.by_id.get(item_id)
        return snapshot.items[idx] if idx is not None else None

    def get_by_title(self, title: str) -> Optional[KnowledgeItem]:
        """Case-insensitive exact title match, active items first"""
        wanted = (title or "").strip().casefold()
        if not wanted:
            return None
        matches = [i for i in self._snapshot.items if i.title.strip().casefold() == wanted]
        if not matches:
            return None
        matches.sort(key=lambda i: (not i.is_active, i.id))
        return matches[0]

    def get_by_group(self, group: str) -> List[KnowledgeItem]:
        """Active items whose ``metadata["group"]`` matches, newest first"""
        wanted = (group or "").strip().casefold()
        if not wanted:
            return []
        matches = [
            i for i in self._snapshot.items
            if i.is_active and str(i.metadata.get("group") or "").strip().casefold() == wanted
        ]
        matches.sort(key=lambda i: (-_utc(i.last_updated).timestamp(), i.id))
        return matches

    def group_counts(self) -> Dict[str, int]:
        """
        Active item count per group; ungrouped items are not counted.

        Groups differing only in case are counted together under the
        spelling seen first.
        """
        names: Dict[str, str] = {}
        counts: Dict[str, int] = {}
        for item in self._snapshot.items:
            group = str(item.metadata.get("group") or "").strip()
            if not item.is_active or not group:
                continue
            name = names.setdefault(group.casefold(), group)
            counts[name] = counts.get(name, 0) + 1
        return dict(sorted(counts.items()))

    def stats(self) -> Dict[str, Any]:
        items = self._snapshot.items
        active = [i for i in items if i.is_active]
        embedded = sum(1 for i in active if self._cache.is_valid(i))
        return {
            "name": self._name,
            "initialized": self._initialized,
            "total": len(items),
            "active": len(active),
            "inactive": len(items) - len(active),
            "embedded": embedded,
            "missing_embeddings": len(active) - embedded,
            "dimension": self._cache.dimension,
            "last_loaded": self._last_loaded.isoformat() if self._last_loaded else None,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, item: KnowledgeItem) -> KnowledgeItem:
        """
        Add a new item, embedding only that item.

        Raises:
            DuplicateItemError: id already present (active or not)
            PersistenceError: save failed; the collection is unchanged
        """
        await self.initialize()
        async with self._write_lock:
            snapshot = self._snapshot
            if item.id in snapshot.by_id:
                raise DuplicateItemError(f"[{self._name}] Item {item.id} already exists")

            if item.is_active and not self._cache.is_valid(item):
                item = await self._cache.refresh(item)

            self._commit(snapshot.items + (item,))
            logger.info("[%s] Added item %s", self._name, item.id)
            return item

    async def update(self, item: KnowledgeItem) -> KnowledgeItem:
        """
        Replace an existing item. Re-embeds only when its content version changed.

        Raises:
            ItemNotFoundError: no item with this id
            PersistenceError: save failed; the collection is unchanged
        """
        await self.initialize()
        async with self._write_lock:
            snapshot = self._snapshot
            idx = snapshot.by_id.get(item.id)
            if idx is None:
                raise ItemNotFoundError(f"[{self._name}] Item {item.id} not found")

            updated = item.touch()
            if updated.embedding is None:
                updated = updated.model_copy(update={"embedding": snapshot.items[idx].embedding})
            if updated.is_active and not self._cache.is_valid(updated):
                updated = await self._cache.refresh(updated)

            items = list(snapshot.items)
            items[idx] = updated
            self._commit(items)
            logger.info("[%s] Updated item %s", self._name, item.id)
            return updated

    async def delete(self, item_id: str) -> None:
        """
        Soft-delete: the item is hidden from search but kept for audit.

        Raises:
            ItemNotFoundError: no item with this id
            PersistenceError: save failed; the collection is unchanged
        """
        await self.initialize()
        async with self._write_lock:
            snapshot = self._snapshot
            idx = snapshot.by_id.get(item_id)
            if idx is None:
                raise ItemNotFoundError(f"[{self._name}] Item {item_id} not found")
            existing = snapshot.items[idx]
            if not existing.is_active:
                return

            items = list(snapshot.items)
            items[idx] = existing.model_copy(update={"is_active": False}).touch()
            self._commit(items)
            logger.info("[%s] Deactivated item %s", self._name, item_id)

    def _commit(self, items) -> None:
        """Persist a new collection, then swap the snapshot in"""
        items = list(items)
        try:
            self._store.save(items)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"[{self._name}] Failed to persist collection: {e}") from e
        self._snapshot = _Snapshot.build(items)
