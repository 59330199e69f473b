"""
Harvest Job

Periodic, deduplicating ingestion of facts into a knowledge source.

Each run:
1. Load the processed set and the watermark
2. Fetch candidates newer than the watermark
3. Keep candidates the detector flags as solutions
4. Add a fact item per new candidate to the target connector
5. Save the processed set once, after the batch
6. Advance the watermark only if no add failed

Fact ids are deterministic, so a crash between steps 4 and 5 only means the
next run meets DuplicateItemError for those candidates and records them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from ..common.errors import DuplicateItemError, OpsDeskError, SourceUnavailable
from ..retriever.connector import KnowledgeConnector
from .detector import SolutionDetector
from .fact_builder import FactBuilder
from .processed_store import ProcessedStore
from .sources.base import FactSource

logger = logging.getLogger("opsdesk.harvester.harvest_job")


@dataclass
class HarvestReport:
    """Outcome of one harvest run"""
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    skipped: bool = False
    fetched: int = 0
    accepted: int = 0
    rejected: int = 0
    added: int = 0
    already_processed: int = 0
    failed: int = 0
    added_ids: List[str] = field(default_factory=list)
    watermark: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "skipped": self.skipped,
            "fetched": self.fetched,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "added": self.added,
            "already_processed": self.already_processed,
            "failed": self.failed,
            "added_ids": list(self.added_ids),
            "watermark": self.watermark,
            "error": self.error,
        }


class HarvestJob:
    """Single-run-at-a-time harvester for one fact source and one connector"""

    def __init__(
        self,
        source: FactSource,
        connector: KnowledgeConnector,
        detector: Optional[SolutionDetector] = None,
        builder: Optional[FactBuilder] = None,
        store: Optional[ProcessedStore] = None,
        period_seconds: float = 3600,
    ):
        self._source = source
        self._connector = connector
        self._detector = detector or SolutionDetector()
        self._builder = builder or FactBuilder(self._detector)
        self._store = store or ProcessedStore(name=source.source_name)
        self._period = period_seconds
        self._run_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.last_report: Optional[HarvestReport] = None

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    @property
    def is_scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> HarvestReport:
        """
        Run one harvest pass.

        Returns:
            HarvestReport; ``skipped`` is True if another run was in progress

        Raises:
            PersistenceError: harvest state could not be loaded or saved
        """
        if self._run_lock.locked():
            logger.info("Harvest already running, skipping")
            return HarvestReport(skipped=True)

        async with self._run_lock:
            report = HarvestReport()
            processed = self._store.load_processed()
            seen = set(processed)
            watermark = self._store.load_watermark()

            try:
                candidates = await self._source.fetch_candidates(since=watermark)
            except SourceUnavailable as e:
                logger.warning("Harvest source unavailable: %s", e)
                report.error = str(e)
                report.watermark = watermark.isoformat() if watermark else None
                self.last_report = report
                return report

            report.fetched = len(candidates)
            newest = watermark
            changed = False

            for candidate in sorted(candidates, key=lambda c: (c.updated_at, c.key)):
                if newest is None or candidate.updated_at > newest:
                    newest = candidate.updated_at

                key = self._builder.fact_id(candidate)
                if key in seen:
                    report.already_processed += 1
                    continue

                detection = self._detector.detect(candidate)
                if not detection.is_solution:
                    report.rejected += 1
                    continue
                report.accepted += 1

                item = self._builder.build(candidate, detection)
                try:
                    await self._connector.add(item)
                    report.added += 1
                    report.added_ids.append(item.id)
                except DuplicateItemError:
                    report.already_processed += 1
                except OpsDeskError as e:
                    report.failed += 1
                    logger.warning("Failed to add fact %s: %s", item.id, e)
                    continue

                processed.append(key)
                seen.add(key)
                changed = True

            if changed:
                self._store.save_processed(processed)

            if report.failed == 0 and newest is not None and newest != watermark:
                self._store.save_watermark(newest)
                watermark = newest
            report.watermark = watermark.isoformat() if watermark else None

            logger.info(
                "Harvest finished: fetched=%d accepted=%d added=%d already=%d failed=%d",
                report.fetched, report.accepted, report.added, report.already_processed, report.failed,
            )
            self.last_report = report
            return report

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error("Harvest run failed", exc_info=True)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._period)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        """Run periodically in the background until stop()"""
        if self.is_scheduled:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info("Harvest job scheduled every %ss", self._period)

    async def stop(self) -> None:
        """Stop the periodic loop, letting an in-progress run finish"""
        if self._task is None:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        await self._source.close()
        logger.info("Harvest job stopped")
