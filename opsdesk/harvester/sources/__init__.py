"""
Fact Sources

External systems the harvester reads candidate facts from.
"""

from .base import Candidate, FactSource
from .jira import JiraFactSource

__all__ = [
    "Candidate",
    "FactSource",
    "JiraFactSource",
]
