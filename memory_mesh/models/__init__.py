"""Database models and schemas for the memory mesh."""

from .memory import (
    User,
    Memory,
    Embedding,
    MemoryRelation,
    Job,
    MemorySnapshot,
    UserProfile,
)
from .schemas import (
    APIResponse,
    ContentSubmission,
    SubmissionResponse,
    JobStatusResponse,
    JobStatus,
    JobKind,
    RelationType,
    EmbeddingFacet,
    SearchRequest,
    SearchResponse,
    AnswerResult,
)

__all__ = [
    # SQLAlchemy models
    "User",
    "Memory",
    "Embedding",
    "MemoryRelation",
    "Job",
    "MemorySnapshot",
    "UserProfile",
    # Pydantic schemas
    "APIResponse",
    "ContentSubmission",
    "SubmissionResponse",
    "JobStatusResponse",
    "JobStatus",
    "JobKind",
    "RelationType",
    "EmbeddingFacet",
    "SearchRequest",
    "SearchResponse",
    "AnswerResult",
]
