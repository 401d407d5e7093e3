"""Business logic services."""

from .job_queue import CancellationToken, JobQueue
from .vector_service import EmbeddingStore, SqlEmbeddingStore, ChromaEmbeddingStore, create_embedding_store

__all__ = [
    "CancellationToken",
    "JobQueue",
    "EmbeddingStore",
    "SqlEmbeddingStore",
    "ChromaEmbeddingStore",
    "create_embedding_store",
]
