"""
Harvester - Periodic Fact Ingestion

Reads resolved items from an external fact source, keeps the ones that
carry a solution, and appends them as facts to a knowledge source.

Key Components:
- FactSource / JiraFactSource: candidate retrieval
- SolutionDetector: keyword heuristic for probable solutions
- FactBuilder: problem/solution extraction and redaction
- ProcessedStore: processed-id set and watermark on disk
- HarvestJob: single-run-at-a-time orchestration
"""

from .detector import DetectionResult, SolutionDetector
from .fact_builder import FactBuilder
from .harvest_job import HarvestJob, HarvestReport
from .processed_store import ProcessedStore
from .sources import Candidate, FactSource, JiraFactSource

__all__ = [
    "DetectionResult",
    "SolutionDetector",
    "FactBuilder",
    "HarvestJob",
    "HarvestReport",
    "ProcessedStore",
    "Candidate",
    "FactSource",
    "JiraFactSource",
]
