"""
Base Fact Source

Abstract base class for external systems the harvester reads from.
Each source turns its own records into Candidates.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Candidate:
    """
    Common candidate format for all fact sources.

    ``id`` is opaque and only unique within its source.
    """
    id: str
    source: str  # "jira", ...
    title: str
    body: str
    updated_at: datetime
    url: Optional[str] = None
    comments: List[str] = field(default_factory=list)
    labels: List[str] = field(default_factory=list)
    category: str = ""
    resolution: str = ""
    raw_data: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        """Identifier recorded in the processed set"""
        return f"{self.source}-{self.id}"

    @property
    def full_text(self) -> str:
        return "\n".join(t for t in [self.title, self.body, *self.comments] if t)


class FactSource(ABC):
    """
    Abstract base class for fact sources.

    Each source must implement:
    - fetch_candidates: candidates updated at or after a watermark
    """

    def __init__(self, source_name: str):
        """
        Args:
            source_name: Name of the source (e.g., "jira")
        """
        self.source_name = source_name

    @abstractmethod
    async def fetch_candidates(self, since: Optional[datetime] = None) -> List[Candidate]:
        """
        Fetch candidates newer than the watermark.

        Args:
            since: Watermark; None fetches everything the source exposes

        Returns:
            Candidates in any order

        Raises:
            SourceUnavailable: the source could not be read
        """
        pass

    async def close(self) -> None:
        """Release any held connections"""
        return None
