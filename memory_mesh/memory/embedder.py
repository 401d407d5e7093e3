"""
Embedding service and vector similarity.

Wraps the provider's embed capability with a bounded in-memory cache and
provides the cosine similarity used by the relation builder and the
hybrid search engine.
"""

import hashlib
import logging
from collections import OrderedDict
from typing import List, Optional, Sequence

import numpy as np

from memory_mesh.core.errors import ShapeMismatchError
from memory_mesh.memory.provider import AIProvider

logger = logging.getLogger(__name__)


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors.

    Args:
        vec1: First vector
        vec2: Second vector

    Returns:
        float: Similarity in [-1, 1]; 0.0 when either vector has zero magnitude

    Raises:
        ShapeMismatchError: If the vectors differ in length

    Example:
        >>> cosine_similarity([1.0, 0.0], [1.0, 0.0])
        1.0
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    if a.shape != b.shape:
        raise ShapeMismatchError(f"Vector shapes differ: {a.shape} vs {b.shape}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(a, b) / (norm_a * norm_b))
    return max(-1.0, min(1.0, similarity))


class EmbeddingCache:
    """
    LRU cache for embeddings.

    Avoids redundant provider calls for repeated queries.
    """

    def __init__(self, cache_size: int = 1000):
        self.cache_size = cache_size
        self.cache: "OrderedDict[str, List[float]]" = OrderedDict()

    def _get_cache_key(self, text: str) -> str:
        return hashlib.md5(text.encode("utf-8")).hexdigest()

    def get(self, text: str) -> Optional[List[float]]:
        key = self._get_cache_key(text)
        vector = self.cache.get(key)
        if vector is not None:
            self.cache.move_to_end(key)
        return vector

    def set(self, text: str, vector: List[float]) -> None:
        key = self._get_cache_key(text)
        self.cache[key] = vector
        self.cache.move_to_end(key)
        while len(self.cache) > self.cache_size:
            self.cache.popitem(last=False)

    def clear(self) -> None:
        self.cache.clear()


class EmbeddingService:
    """Cached access to the provider's embed capability."""

    def __init__(self, provider: AIProvider, cache_size: int = 1000):
        self.provider = provider
        self.cache = EmbeddingCache(cache_size)

    async def get_embedding(self, text: str, use_cache: bool = True) -> List[float]:
        """
        Embed text, using the cache when possible.

        Args:
            text: Text to embed
            use_cache: Whether to read and populate the cache

        Returns:
            List[float]: Embedding vector

        Raises:
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        if use_cache:
            cached = self.cache.get(text)
            if cached is not None:
                logger.debug("Embedding cache hit")
                return cached

        vector = await self.provider.embed(text)
        if not vector:
            raise ValueError("Provider returned an empty embedding")

        if use_cache:
            self.cache.set(text, vector)
        return vector
