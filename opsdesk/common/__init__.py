"""
OpsDesk Common Module

Shared infrastructure for the retriever and harvester.
"""

from .config import OpsDeskConfig, load_config
from .embedding_cache import EmbeddingCache
from .embedding_service import EmbeddingService, cosine_similarity, batch_cosine_similarity
from .errors import (
    OpsDeskError,
    ProviderError,
    SourceUnavailable,
    PersistenceError,
    DuplicateItemError,
    ItemNotFoundError,
    LookupUnavailable,
)
from .llm_client import LLMClient

__all__ = [
    "OpsDeskConfig",
    "load_config",
    "EmbeddingCache",
    "EmbeddingService",
    "cosine_similarity",
    "batch_cosine_similarity",
    "OpsDeskError",
    "ProviderError",
    "SourceUnavailable",
    "PersistenceError",
    "DuplicateItemError",
    "ItemNotFoundError",
    "LookupUnavailable",
    "LLMClient",
]
