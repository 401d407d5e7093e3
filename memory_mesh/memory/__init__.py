"""Memory processing components."""

from .canonicalizer import CanonicalContent, canonicalize, normalize_text, normalize_url
from .citations import dedupe_citations
from .deduplicator import DuplicateMatch, MemoryDeduplicator
from .embedder import EmbeddingService, cosine_similarity
from .provider import AIProvider, GeminiProvider

__all__ = [
    "CanonicalContent",
    "canonicalize",
    "normalize_text",
    "normalize_url",
    "dedupe_citations",
    "DuplicateMatch",
    "MemoryDeduplicator",
    "EmbeddingService",
    "cosine_similarity",
    "AIProvider",
    "GeminiProvider",
]
