"""
Solution Detector

Keyword heuristic that decides whether a candidate probably carries a
solution worth keeping as a fact.
"""

import re
from dataclasses import dataclass, field
from typing import List

from .sources.base import Candidate

# Phrases that indicate a fix was found (English + Spanish)
SOLUTION_KEYWORDS = [
    "resolved", "fixed", "solution", "solved", "workaround", "root cause",
    "the fix", "fix was", "steps to resolve", "to resolve this",
    "resuelto", "solucionado", "solución", "solucion", "se resolvió",
    "causa raíz", "pasos para", "se corrigió", "corregido",
]

# Resolution values that mean the issue ended with a fix
POSITIVE_RESOLUTIONS = {"fixed", "done", "resolved", "solucionado", "resuelto", "hecho"}

# Resolution values that mean nothing was learned
NEGATIVE_RESOLUTIONS = {
    "won't fix", "won't do", "duplicate", "cannot reproduce", "incomplete",
    "declined", "rejected", "no se corregirá", "duplicado",
}


@dataclass
class DetectionResult:
    """Result of solution detection"""
    is_solution: bool
    confidence: float
    matched_keywords: List[str] = field(default_factory=list)
    reason: str = ""


class SolutionDetector:
    """
    Detects candidates that probably describe a working solution.

    Algorithm:
    1. Reject empty/very short candidates and negative resolutions
    2. Count solution keywords across title, body and comments
    3. A positive resolution adds confidence
    4. Accept when confidence reaches the threshold
    """

    def __init__(self, threshold: float = 0.5, min_length: int = 20):
        """
        Args:
            threshold: Minimum confidence to accept a candidate
            min_length: Minimum characters of text to consider
        """
        self._threshold = threshold
        self._min_length = min_length
        self._patterns = [
            (k, re.compile(r"(?<!\w)" + re.escape(k) + r"(?!\w)", re.IGNORECASE))
            for k in SOLUTION_KEYWORDS
        ]

    @property
    def threshold(self) -> float:
        return self._threshold

    def matched_keywords(self, text: str) -> List[str]:
        return [k for k, pattern in self._patterns if pattern.search(text or "")]

    def detect(self, candidate: Candidate) -> DetectionResult:
        """
        Detect whether the candidate carries a solution.

        Args:
            candidate: Candidate from a fact source

        Returns:
            DetectionResult with acceptance, confidence and matched keywords
        """
        text = candidate.full_text
        if len(text.strip()) < self._min_length:
            return DetectionResult(is_solution=False, confidence=0.0, reason="too short")

        resolution = (candidate.resolution or "").strip().lower()
        if resolution in NEGATIVE_RESOLUTIONS:
            return DetectionResult(is_solution=False, confidence=0.0, reason=f"resolution: {resolution}")

        matched = self.matched_keywords(text)
        confidence = min(1.0, 0.3 * len(matched))
        if resolution in POSITIVE_RESOLUTIONS:
            confidence = min(1.0, confidence + 0.3)

        if not matched:
            return DetectionResult(is_solution=False, confidence=confidence, reason="no solution keywords")

        return DetectionResult(
            is_solution=confidence >= self._threshold,
            confidence=round(confidence, 2),
            matched_keywords=matched,
            reason="keywords" if confidence >= self._threshold else "below threshold",
        )
