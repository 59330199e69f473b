"""
Fact Builder

Converts accepted candidates into KnowledgeItems for the target source.
The item id is derived from the candidate key, so building the same
candidate twice always yields the same id.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from ..common.schemas import KnowledgeItem
from .detector import DetectionResult, SolutionDetector
from .sources.base import Candidate

logger = logging.getLogger("opsdesk.harvester.fact_builder")

PROBLEM_LIMIT = 500
SOLUTION_LIMIT = 1500


class FactBuilder:
    """
    Builds fact items from candidates.

    Extraction:
    1. Problem: candidate title plus the start of its description
    2. Solution: the latest comment mentioning a solution keyword, else the
       description sentences that mention one
    3. Sensitive data is redacted from everything stored
    """

    # Patterns for sensitive data to redact
    SENSITIVE_PATTERNS = [
        (r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b', '[EMAIL]'),  # Email
        (r'\b\d{3}[-.]?\d{3}[-.]?\d{4}\b', '[PHONE]'),  # Phone
        (r'\b(?:sk|pk|api|key|token|secret|password)[_-][a-zA-Z0-9_-]{15,}\b', '[API_KEY]'),  # API keys with prefix
        (r'\b[A-Za-z0-9]{32,}\b', '[API_KEY]'),  # Long alphanumeric tokens (32+ chars)
        (r'\b[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}[-\s]?[0-9]{4}\b', '[CARD]'),  # Credit card
        (r'(?i)\b(password|contraseña|pwd)\s*[:=]\s*\S+', r'\1: [REDACTED]'),  # Inline passwords
    ]

    def __init__(self, detector: Optional[SolutionDetector] = None):
        self._detector = detector or SolutionDetector()

    @staticmethod
    def fact_id(candidate: Candidate) -> str:
        return candidate.key

    def redact(self, text: str) -> Tuple[str, List[str]]:
        """Redact sensitive data from text"""
        redacted = text or ""
        notes = []
        for pattern, replacement in self.SENSITIVE_PATTERNS:
            matches = re.findall(pattern, redacted, re.IGNORECASE)
            if matches:
                redacted = re.sub(pattern, replacement, redacted, flags=re.IGNORECASE)
                notes.append(f"Redacted {len(matches)} {replacement.split(':')[-1].strip()}")
        return redacted, notes

    def _extract_solution(self, candidate: Candidate) -> str:
        for comment in reversed(candidate.comments):
            if self._detector.matched_keywords(comment):
                return comment.strip()

        sentences = re.split(r"(?<=[.!?])\s+|\n+", candidate.body or "")
        relevant = [s.strip() for s in sentences if s.strip() and self._detector.matched_keywords(s)]
        if relevant:
            return " ".join(relevant)

        if candidate.comments:
            return candidate.comments[-1].strip()
        return (candidate.body or "").strip()

    def build(self, candidate: Candidate, detection: Optional[DetectionResult] = None) -> KnowledgeItem:
        """
        Build a fact item from an accepted candidate.

        Args:
            candidate: Candidate accepted by the detector
            detection: Detection result, recorded in metadata

        Returns:
            KnowledgeItem with id ``<source>-<candidate id>``
        """
        title, title_notes = self.redact(candidate.title.strip() or candidate.id)
        problem, problem_notes = self.redact((candidate.body or "").strip()[:PROBLEM_LIMIT])
        solution, solution_notes = self.redact(self._extract_solution(candidate)[:SOLUTION_LIMIT])
        notes = title_notes + problem_notes + solution_notes
        if notes:
            logger.info("Redactions in %s: %s", candidate.key, "; ".join(notes))

        text_parts = [f"Problem: {problem}" if problem else "", f"Solution: {solution}" if solution else ""]
        metadata = {
            "category": candidate.category,
            "source": candidate.source,
            "source_id": candidate.id,
            "resolution": candidate.resolution,
            "harvested_at": datetime.now(timezone.utc).isoformat(),
        }
        if detection is not None:
            metadata["detection_confidence"] = detection.confidence
            metadata["matched_keywords"] = list(detection.matched_keywords)
        if notes:
            metadata["redaction_notes"] = "; ".join(notes)

        return KnowledgeItem(
            id=self.fact_id(candidate),
            title=title,
            text="\n".join(p for p in text_parts if p),
            summary=solution[:300],
            url=candidate.url,
            tags=list(dict.fromkeys(candidate.labels)),
            metadata=metadata,
            last_updated=candidate.updated_at,
        )
