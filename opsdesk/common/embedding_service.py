"""
Embedding Service

Provides embedding generation for knowledge connectors.
Uses fastembed for on-device embeddings by default, or the OpenAI
embeddings API when mode is "openai".
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np

from .errors import ProviderError

logger = logging.getLogger("opsdesk.common.embedding_service")


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Returns 0.0 when either vector has zero magnitude or the dimensions
    differ. The result is clamped to [-1, 1] to absorb float rounding.
    """
    v1 = np.asarray(vec1, dtype=np.float64)
    v2 = np.asarray(vec2, dtype=np.float64)

    if v1.shape != v2.shape or v1.size == 0:
        return 0.0

    norm1 = np.linalg.norm(v1)
    norm2 = np.linalg.norm(v2)
    if norm1 == 0 or norm2 == 0:
        return 0.0

    similarity = float(np.dot(v1, v2) / (norm1 * norm2))
    return max(-1.0, min(1.0, similarity))


def batch_cosine_similarity(
    query_vec: Sequence[float],
    vectors: Sequence[Sequence[float]],
) -> List[float]:
    """
    Compute cosine similarity between a query and multiple vectors.

    All vectors must share the query's dimension. Zero rows (and a zero
    query) score 0.0.
    """
    if not vectors:
        return []

    query = np.asarray(query_vec, dtype=np.float64)
    matrix = np.asarray(vectors, dtype=np.float64)

    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return [0.0] * len(vectors)

    row_norms = np.linalg.norm(matrix, axis=1)
    denominators = row_norms * query_norm
    dots = np.dot(matrix, query)

    # Zero rows divide by 1 and keep their 0 dot product
    safe = np.where(denominators == 0, 1.0, denominators)
    similarities = np.where(denominators == 0, 0.0, dots / safe)

    return np.clip(similarities, -1.0, 1.0).tolist()


class EmbeddingService:
    """
    Embedding provider for OpsDesk connectors.

    Modes:
    - "femb": fastembed, on-device, no external API calls
    - "openai": OpenAI embeddings API (async client)

    Every failure surfaces as ProviderError so callers can degrade
    uniformly regardless of backend.
    """

    def __init__(
        self,
        mode: str = "femb",
        model: str = "sentence-transformers/paraphrase-multilingual-MiniLM-L12-v2",
        openai_api_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self._mode = (mode or "femb").lower()
        self._model = model
        self._timeout = timeout
        self._backend = None
        self._dimension: Optional[int] = None
        self._init_backend(openai_api_key)

    def _init_backend(self, openai_api_key: Optional[str]) -> None:
        """Initialize the underlying embedding backend"""
        if self._mode == "femb":
            try:
                from fastembed import TextEmbedding
                self._backend = TextEmbedding(model_name=self._model)
                logger.info("Initialized fastembed with model=%s", self._model)
            except Exception as e:
                logger.warning("Could not initialize fastembed model %s: %s", self._model, e)
                self._backend = None
            return

        if self._mode == "openai":
            if not openai_api_key:
                logger.info("OpenAI API key not provided, embedding service unavailable")
                return
            try:
                from openai import AsyncOpenAI
                self._backend = AsyncOpenAI(api_key=openai_api_key, timeout=self._timeout)
                logger.info("Initialized OpenAI embeddings with model=%s", self._model)
            except Exception as e:
                logger.warning("Failed to initialize OpenAI embeddings client: %s", e)
                self._backend = None
            return

        logger.warning("Unsupported embedding mode: %s", self._mode)

    @property
    def is_available(self) -> bool:
        """Check if embedding service is available"""
        return self._backend is not None

    @property
    def model(self) -> str:
        return self._model

    @property
    def dimension(self) -> Optional[int]:
        """Vector dimension, known after the first successful call"""
        return self._dimension

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of strings to embed

        Returns:
            List of embedding vectors

        Raises:
            ProviderError: backend unavailable or the call failed
        """
        if not self._backend:
            raise ProviderError("Embedding backend not initialized")

        if not texts:
            return []

        try:
            if self._mode == "femb":
                vectors = await asyncio.to_thread(self._embed_local, texts)
            else:
                vectors = await self._embed_openai(texts)
        except asyncio.CancelledError:
            raise
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Embedding call failed: {e}") from e

        if vectors and self._dimension is None:
            self._dimension = len(vectors[0])
        return vectors

    async def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: String to embed

        Returns:
            Embedding vector
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        embeddings = await self.embed([text])
        return embeddings[0]

    def _embed_local(self, texts: List[str]) -> List[List[float]]:
        return [np.asarray(v, dtype=np.float32).tolist() for v in self._backend.embed(texts)]

    async def _embed_openai(self, texts: List[str]) -> List[List[float]]:
        response = await self._backend.embeddings.create(model=self._model, input=texts)
        ordered = sorted(response.data, key=lambda d: d.index)
        return [list(d.embedding) for d in ordered]
