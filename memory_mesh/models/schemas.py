"""
Pydantic schemas for API request/response validation and internal payloads.

Defines submissions, job status, search and answer payloads, the memory
graph view and the export bundle format.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, Enum):
    """Lifecycle states of an asynchronous job."""
    QUEUED = "queued"
    ACTIVE = "active"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobKind(str, Enum):
    """Kinds of work handled by the worker pool."""
    CONTENT = "content"
    ANSWER = "answer"


class RelationType(str, Enum):
    """
    Types of edges in the memory mesh.

    - semantic: content embeddings are close
    - topical: extracted topics/categories overlap
    - temporal: captured close together in time
    """
    SEMANTIC = "semantic"
    TOPICAL = "topical"
    TEMPORAL = "temporal"


class EmbeddingFacet(str, Enum):
    """Text fields of a memory that get their own embedding."""
    CONTENT = "content"
    SUMMARY = "summary"
    TITLE = "title"


# ================================
# Enrichment
# ================================

class ExtractedMetadata(BaseModel):
    """Structured metadata returned by the AI provider."""
    topics: List[str] = Field(default_factory=list)
    categories: List[str] = Field(default_factory=list)
    sentiment: Optional[str] = None
    importance: Optional[float] = Field(None, description="Importance in [0, 1]")
    key_points: List[str] = Field(default_factory=list)
    searchable_terms: List[str] = Field(default_factory=list)

    @field_validator("importance", mode="before")
    @classmethod
    def normalize_importance(cls, v):
        """Accept 0-1 or 1-10 scales and clamp to [0, 1]."""
        if v is None or v == "":
            return None
        value = float(v)
        if value > 1.0:
            value = value / 10.0
        return max(0.0, min(1.0, value))

    @field_validator("sentiment", mode="before")
    @classmethod
    def normalize_sentiment(cls, v):
        if v is None:
            return None
        v = str(v).strip().lower()
        return v or None


class ContentSubmission(BaseModel):
    """
    Request to capture a piece of content.

    When memory_id is set the job re-enriches that memory instead of
    running duplicate detection.
    """
    user_id: str = Field(..., min_length=1, max_length=100, description="User identifier")
    content: str = Field(..., min_length=1, max_length=100000, description="Raw captured text")
    url: Optional[str] = Field(None, max_length=2048, description="Source URL")
    title: Optional[str] = Field(None, max_length=1000, description="Page or document title")
    source: str = Field(default="api", max_length=50, description="Capture source tag")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Capture metadata")
    memory_id: Optional[str] = Field(None, description="Existing memory to re-enrich")

    @field_validator("content")
    @classmethod
    def validate_content(cls, v):
        """Validate content is not blank."""
        if not v.strip():
            raise ValueError("Content cannot be empty")
        return v

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "content": "PostgreSQL 16 adds logical replication from standbys...",
                "url": "https://www.postgresql.org/about/news/postgresql-16-released",
                "title": "PostgreSQL 16 Released",
                "source": "extension"
            }
        }


class SubmissionResponse(BaseModel):
    """Result of a submission on the synchronous path."""
    job_id: Optional[str] = Field(None, description="Queued job id, if any")
    memory_id: Optional[str] = Field(None, description="Existing memory id for duplicates")
    is_duplicate: bool = Field(default=False)
    reason: Optional[str] = Field(None, description="Why the submission was a duplicate")


class JobStatusResponse(BaseModel):
    """Status of an asynchronous job."""
    job_id: str
    user_id: str
    kind: JobKind
    status: JobStatus
    attempts: int = 0
    reason: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        """Pydantic configuration."""
        from_attributes = True


# ================================
# Search & Answer
# ================================

class SearchFilters(BaseModel):
    """Pre-filters applied before scoring."""
    category: Optional[str] = None
    sentiment: Optional[str] = None
    source: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


class SearchRequest(BaseModel):
    """Hybrid search request."""
    user_id: str = Field(..., description="User identifier")
    query: str = Field(..., min_length=1, max_length=1000, description="Search query")
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int = Field(default=10, ge=1, le=100, description="Maximum number of results")

    class Config:
        """Pydantic configuration."""
        json_schema_extra = {
            "example": {
                "user_id": "user123",
                "query": "postgres replication",
                "filters": {"category": "databases"},
                "limit": 5
            }
        }


class SearchResult(BaseModel):
    """One ranked memory with its score breakdown."""
    memory_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    summary: Optional[str] = None
    source: Optional[str] = None
    created_at: datetime
    keyword_score: float = Field(..., ge=0.0, le=1.0)
    semantic_score: float = Field(..., ge=0.0, le=1.0)
    blended_score: float = Field(..., ge=0.0, le=1.0)
    related_memory_ids: List[str] = Field(default_factory=list)


class SearchResponse(BaseModel):
    """Ranked search results."""
    query: str
    results: List[SearchResult]
    total_found: int = Field(..., ge=0)
    semantic_available: bool = True
    search_time_ms: float = Field(..., ge=0)


class Citation(BaseModel):
    """Bracketed citation label pointing at a memory."""
    label: int = Field(..., ge=1)
    memory_id: str
    title: Optional[str] = None
    url: Optional[str] = None


class AnswerRequest(BaseModel):
    """Request for a cited answer (async job)."""
    user_id: str = Field(..., description="User identifier")
    query: str = Field(..., min_length=1, max_length=1000)
    top_k: int = Field(default=5, ge=1, le=20, description="Results used as context")


class AnswerResult(BaseModel):
    """Generated answer with deduplicated citations."""
    query: str
    answer: Optional[str] = None
    citations: List[Citation] = Field(default_factory=list)
    results: List[SearchResult] = Field(default_factory=list)


class ContextRequest(BaseModel):
    """Request for context-only retrieval."""
    user_id: str = Field(..., description="User identifier")
    query: str = Field(..., min_length=1, max_length=1000)
    limit: int = Field(default=5, ge=1, le=50)


class ContextResponse(BaseModel):
    """Context blocks for an external answer generator."""
    query: str
    context: str
    memory_ids: List[str] = Field(default_factory=list)


# ================================
# Memory Mesh
# ================================

class MemoryResponse(BaseModel):
    """Memory data returned to clients."""
    memory_id: str = Field(..., description="Unique memory identifier")
    user_id: str = Field(..., description="User identifier")
    source: str
    url: Optional[str] = None
    title: Optional[str] = None
    summary: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    importance_score: float
    access_count: int = 0
    created_at: datetime
    last_accessed: Optional[datetime] = None

    @classmethod
    def from_model(cls, memory) -> "MemoryResponse":
        return cls(
            memory_id=memory.memory_id,
            user_id=memory.user_id,
            source=memory.source,
            url=memory.url,
            title=memory.title,
            summary=memory.summary,
            metadata=memory.get_metadata(),
            importance_score=memory.importance_score,
            access_count=memory.access_count or 0,
            created_at=memory.created_at,
            last_accessed=memory.last_accessed,
        )


class RelatedMemory(BaseModel):
    """Outgoing edge of a memory."""
    related_memory_id: str
    relation_type: RelationType
    similarity_score: float
    title: Optional[str] = None


class MemoryWithRelations(BaseModel):
    """A memory and its outgoing edges, strongest first."""
    memory: MemoryResponse
    relations: List[RelatedMemory] = Field(default_factory=list)

class MeshNode(BaseModel):
    """Memory node in the graph view."""
    memory_id: str
    title: Optional[str] = None
    source: Optional[str] = None
    importance_score: float = 0.0
    created_at: datetime


class MeshEdge(BaseModel):
    """Relation edge in the graph view."""
    source: str
    target: str
    relation_type: RelationType
    similarity_score: float


class MemoryMesh(BaseModel):
    """A user's memory graph."""
    user_id: str
    nodes: List[MeshNode] = Field(default_factory=list)
    edges: List[MeshEdge] = Field(default_factory=list)


class RebuildResult(BaseModel):
    """Outcome of a user relation rebuild."""
    user_id: str
    memories_processed: int = 0
    relations_written: int = 0
    skipped_cooldown: bool = False


# ================================
# Export / Import
# ================================

EXPORT_BUNDLE_VERSION = "1.0"


class ExportedMemory(BaseModel):
    """Memory as stored in an export bundle."""
    memory_id: str
    source: str = "import"
    url: Optional[str] = None
    title: Optional[str] = None
    content: str
    summary: Optional[str] = None
    canonical_hash: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    importance_score: float = 0.5
    created_at: datetime


class ExportedRelation(BaseModel):
    """Relation as stored in an export bundle."""
    memory_id: str
    related_memory_id: str
    relation_type: RelationType
    similarity_score: float = Field(..., ge=0.0, le=1.0)


class ExportBundle(BaseModel):
    """Portable snapshot of a user's memory graph."""
    version: str = EXPORT_BUNDLE_VERSION
    exported_at: datetime
    user_id: str
    memories: List[ExportedMemory] = Field(default_factory=list)
    relations: List[ExportedRelation] = Field(default_factory=list)


class ImportResult(BaseModel):
    """Counts from importing an export bundle."""
    imported: int = 0
    skipped: int = 0
    relations_imported: int = 0
    memory_ids: List[str] = Field(default_factory=list, description="Ids of newly created memories")


# ================================
# API Envelope
# ================================

class APIResponse(BaseModel):
    """
    Standard API response wrapper.

    Provides consistent response format across all endpoints.
    """
    success: bool = Field(..., description="Whether request was successful")
    data: Optional[Any] = Field(None, description="Response data")
    error: Optional[str] = Field(None, description="Error message if failed")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Response timestamp")


class HealthResponse(BaseModel):
    """Service health information."""
    status: str
    database: bool
    workers_running: int
    queued_jobs: int
    version: str
    stats: Dict[str, int] = Field(default_factory=dict, description="In-process queue and background task counters")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
