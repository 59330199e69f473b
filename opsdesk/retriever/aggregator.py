"""
Source Aggregator

Fans a query out to every connector concurrently and merges the results.
A connector that times out or fails contributes nothing; the merge never
waits longer than the per-source timeout.
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional, Sequence

from ..common.errors import SourceUnavailable
from .connector import KnowledgeConnector, SearchResult

logger = logging.getLogger("opsdesk.retriever.aggregator")


class SourceAggregator:
    """
    Concurrent multi-source search with deterministic merge ordering.

    Order: score descending, then position in ``priority`` (sources not
    listed come after, by name), then item id ascending.
    """

    def __init__(
        self,
        connectors: Sequence[KnowledgeConnector],
        priority: Optional[Sequence[str]] = None,
        timeout: float = 5.0,
    ):
        self._connectors = list(connectors)
        self._priority = list(priority or [c.name for c in self._connectors])
        self._timeout = timeout

    @property
    def connectors(self) -> List[KnowledgeConnector]:
        return list(self._connectors)

    def _priority_key(self, source: str):
        try:
            return (self._priority.index(source), "")
        except ValueError:
            return (len(self._priority), source)

    async def _search_one(self, connector: KnowledgeConnector, query: str, k: int) -> List[SearchResult]:
        try:
            return await asyncio.wait_for(connector.search(query, k), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise SourceUnavailable(connector.name, f"timed out after {self._timeout}s") from e
        except SourceUnavailable:
            raise
        except Exception as e:
            raise SourceUnavailable(connector.name, str(e)) from e

    async def search_all(self, query: str, per_source_k: int = 5, total_cap: int = 8) -> List[SearchResult]:
        """
        Search every connector and merge.

        Args:
            query: User query
            per_source_k: Results requested from each connector
            total_cap: Maximum merged results

        Returns:
            Merged results, each tagged with its source
        """
        if not self._connectors or total_cap <= 0:
            return []

        start = time.monotonic()
        outcomes = await asyncio.gather(
            *(self._search_one(c, query, per_source_k) for c in self._connectors),
            return_exceptions=True,
        )

        merged: List[SearchResult] = []
        statuses: Dict[str, str] = {}
        for connector, outcome in zip(self._connectors, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, SourceUnavailable):
                statuses[connector.name] = "timeout" if "timed out" in outcome.reason else "error"
                logger.warning("%s", outcome)
                continue
            if isinstance(outcome, BaseException):
                statuses[connector.name] = "error"
                logger.error("Unexpected failure from %s", connector.name, exc_info=outcome)
                continue
            statuses[connector.name] = f"ok({len(outcome)})"
            for result in outcome:
                # Provenance always reflects the connector that answered
                if result.source != connector.name:
                    result.source = connector.name
                merged.append(result)

        merged.sort(key=lambda r: (-r.score, self._priority_key(r.source), r.item_id))
        merged = merged[:total_cap]

        logger.info(
            "Aggregated %d results in %.0fms: %s",
            len(merged),
            (time.monotonic() - start) * 1000,
            ", ".join(f"{name}={status}" for name, status in statuses.items()),
        )
        return merged
