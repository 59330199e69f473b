"""
Knowledge Context

Explicit registry of everything the router needs: connectors, lookup table,
embedding service and retrieval settings. Built once at startup and passed
in; nothing here is process-global.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..common.config import OpsDeskConfig, RetrieverConfig
from ..common.embedding_service import EmbeddingService
from ..common.errors import LookupUnavailable
from ..common.llm_client import LLMClient
from .aggregator import SourceAggregator
from .composer import AnswerComposer
from .connector import KnowledgeConnector
from .lookup import LookupTable
from .sources import TEXT_BUILDERS, create_connector

logger = logging.getLogger("opsdesk.retriever.context")


@dataclass
class KnowledgeContext:
    """Connectors, lookup table and retrieval settings for one process"""
    connectors: Dict[str, KnowledgeConnector] = field(default_factory=dict)
    lookup: LookupTable = field(default_factory=LookupTable.unavailable)
    embedding_service: Optional[EmbeddingService] = None
    priority: List[str] = field(default_factory=list)
    settings: RetrieverConfig = field(default_factory=RetrieverConfig)

    def __post_init__(self):
        self._aggregator: Optional[SourceAggregator] = None

    @property
    def aggregator(self) -> SourceAggregator:
        if self._aggregator is None:
            self._aggregator = SourceAggregator(
                list(self.connectors.values()),
                priority=self.priority or list(self.connectors),
                timeout=self.settings.source_timeout,
            )
        return self._aggregator

    def get_connector(self, name: str) -> Optional[KnowledgeConnector]:
        return self.connectors.get(name)

    async def initialize(self) -> Dict[str, bool]:
        """
        Initialize every connector concurrently.

        A connector that fails to load is logged and stays uninitialized; it
        will be reported unavailable by the aggregator until it loads.
        """
        names = list(self.connectors)
        outcomes = await asyncio.gather(
            *(self.connectors[n].initialize() for n in names),
            return_exceptions=True,
        )
        status = {}
        for name, outcome in zip(names, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error("Failed to initialize source %s: %s", name, outcome)
                status[name] = False
            else:
                status[name] = True
        return status

    def stats(self) -> dict:
        return {
            "sources": {name: c.stats() for name, c in self.connectors.items()},
            "lookup": {"available": self.lookup.is_available, **self.lookup.stats()},
            "priority": list(self.priority),
        }


def build_embedding_service(config: OpsDeskConfig) -> EmbeddingService:
    return EmbeddingService(
        mode=config.embedding.mode,
        model=config.embedding.model,
        openai_api_key=config.embedding.openai_api_key or None,
    )


def load_lookup(path: str) -> LookupTable:
    """Load the lookup table, or an unavailable table if it cannot be read"""
    try:
        return LookupTable.from_file(path)
    except LookupUnavailable as e:
        logger.warning("Specialist lookup disabled: %s", e)
        return LookupTable.unavailable()


def build_context(
    config: OpsDeskConfig,
    embedding_service: Optional[EmbeddingService] = None,
) -> KnowledgeContext:
    """Create connectors for every enabled source plus the lookup table"""
    embedder = embedding_service or build_embedding_service(config)

    connectors: Dict[str, KnowledgeConnector] = {}
    for name in config.sources.enabled:
        if name not in TEXT_BUILDERS:
            logger.warning("Skipping unknown knowledge source: %s", name)
            continue
        connectors[name] = create_connector(
            name,
            embedder,
            data_dir=config.sources.data_dir,
            request_interval=config.embedding.request_interval,
            max_retries=config.embedding.max_retries,
            backoff_base=config.embedding.backoff_base,
        )

    return KnowledgeContext(
        connectors=connectors,
        lookup=load_lookup(config.sources.lookup_path),
        embedding_service=embedder,
        priority=[s for s in config.sources.source_priority if s in connectors],
        settings=config.retriever,
    )


def build_llm_client(config: OpsDeskConfig) -> LLMClient:
    llm = config.llm
    models = {
        "anthropic": llm.anthropic_model,
        "openai": llm.openai_model,
        "google": llm.google_model,
    }
    return LLMClient(
        provider=llm.provider,
        model=models.get(llm.provider.lower(), ""),
        anthropic_api_key=llm.anthropic_api_key or None,
        openai_api_key=llm.openai_api_key or None,
        google_api_key=llm.google_api_key or None,
    )


def build_composer(config: OpsDeskConfig) -> AnswerComposer:
    client = build_llm_client(config)
    if not client.is_available:
        logger.warning("No LLM configured for provider %s, answers will be raw listings", config.llm.provider)
    return AnswerComposer(client)
