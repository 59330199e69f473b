"""
Retriever - Knowledge Retrieval and Query Routing

Answers questions from several knowledge sources or from the SAP lookup
table, depending on how the question is classified.

Key Components:
- CollectionConnector: One searchable collection per knowledge source
- SourceAggregator: Concurrent fan-out and deterministic merge
- QueryClassifier: Generalist vs Specialist routing rules
- AgentRouter: Classify, retrieve, compose

Pipeline:
1. Classify the question (keywords, verified codes, context)
2. Specialist: resolve codes in the lookup table and build a fact sheet
   Generalist: search all sources concurrently and merge by score
3. Compose the answer with the configured LLM (or a raw listing)
"""

from .aggregator import SourceAggregator
from .composer import AnswerComposer, ComposedAnswer
from .connector import CollectionConnector, KnowledgeConnector, SearchResult
from .context import KnowledgeContext, build_composer, build_context
from .fact_sheet import FactSheet, build_fact_sheet
from .lookup import LookupResult, LookupTable
from .query_classifier import ClassificationResult, QueryClassifier, QueryType, Route
from .router import AgentResponse, AgentRouter, CitedSource
from .sources import create_connector
from .stores import InMemoryStore, JsonFileStore, KnowledgeStore
from .streaming import AnswerStream, StreamStatus

__all__ = [
    "SourceAggregator",
    "AnswerComposer",
    "ComposedAnswer",
    "CollectionConnector",
    "KnowledgeConnector",
    "SearchResult",
    "KnowledgeContext",
    "build_composer",
    "build_context",
    "FactSheet",
    "build_fact_sheet",
    "LookupResult",
    "LookupTable",
    "ClassificationResult",
    "QueryClassifier",
    "QueryType",
    "Route",
    "AgentResponse",
    "AgentRouter",
    "CitedSource",
    "create_connector",
    "InMemoryStore",
    "JsonFileStore",
    "KnowledgeStore",
    "AnswerStream",
    "StreamStatus",
]
