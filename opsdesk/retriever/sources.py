"""
Knowledge Sources

The three collections OpsDesk searches, each a CollectionConnector with its
own searchable-text recipe:

- articles: knowledge-base articles (title, short description, purpose, tags)
- wiki: cached wiki pages (title, labels, ancestors, content; capped at 8000 chars)
- tickets: ticket-derived reference facts (name, category, keywords, description, link)
"""

from pathlib import Path
from typing import Callable, Dict, Optional, Union

from ..common.schemas import KnowledgeItem
from .connector import CollectionConnector
from .stores import JsonFileStore, KnowledgeStore

WIKI_TEXT_LIMIT = 8000


def _join(*parts) -> str:
    return " ".join(str(p).strip() for p in parts if p and str(p).strip())


def _as_list(value) -> list:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def article_text(item: KnowledgeItem) -> str:
    """Title, short description, purpose and tags"""
    return _join(
        item.title,
        item.summary,
        item.metadata.get("purpose", ""),
        " ".join(item.tags),
    )


def wiki_text(item: KnowledgeItem) -> str:
    """Title, labels, ancestor page titles and content, truncated"""
    text = _join(
        item.title,
        " ".join(item.tags),
        " ".join(_as_list(item.metadata.get("ancestors"))),
        item.text,
    )
    return text[:WIKI_TEXT_LIMIT]


def ticket_text(item: KnowledgeItem) -> str:
    """Name, category, keywords, description and link"""
    return _join(
        item.title,
        item.metadata.get("category", ""),
        " ".join(item.tags),
        item.summary or item.text,
        item.url or "",
    )


TEXT_BUILDERS: Dict[str, Callable[[KnowledgeItem], str]] = {
    "articles": article_text,
    "wiki": wiki_text,
    "tickets": ticket_text,
}


def create_connector(
    name: str,
    embedding_service,
    store: Optional[KnowledgeStore] = None,
    data_dir: Union[str, Path, None] = None,
    **kwargs,
) -> CollectionConnector:
    """
    Build a connector for a known source name.

    Args:
        name: One of TEXT_BUILDERS
        embedding_service: Embedding provider shared by all sources
        store: Explicit store; defaults to ``<data_dir>/<name>.json``
        data_dir: Directory for the default JSON store
        **kwargs: Passed through to CollectionConnector (request_interval, ...)

    Raises:
        ValueError: unknown source name, or neither store nor data_dir given
    """
    if name not in TEXT_BUILDERS:
        raise ValueError(f"Unknown knowledge source: {name}")
    if store is None:
        if data_dir is None:
            raise ValueError("Either store or data_dir is required")
        store = JsonFileStore(Path(data_dir) / f"{name}.json")

    return CollectionConnector(
        name=name,
        store=store,
        embedding_service=embedding_service,
        text_builder=TEXT_BUILDERS[name],
        **kwargs,
    )
