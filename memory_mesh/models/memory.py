"""
SQLAlchemy models for memory storage.

Defines tables for users, memories, per-facet embeddings, the relation
graph, asynchronous jobs, enrichment snapshots and user profiles.
"""

import uuid
from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, JSON,
    String, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship

from memory_mesh.core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    User owning a memory graph.

    Attributes:
        user_id: Unique user identifier
        created_at: User creation timestamp
        last_activity: Last submission timestamp
        total_memories: Number of stored memories
    """

    __tablename__ = "users"

    user_id = Column(String(255), primary_key=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_activity = Column(DateTime, default=datetime.utcnow)
    total_memories = Column(Integer, default=0, nullable=False)

    memories = relationship("Memory", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<User(user_id='{self.user_id}')>"


class Memory(Base):
    """
    One captured and enriched unit of content.

    Attributes:
        memory_id: Unique UUID
        user_id: Owning user
        source: Capture source tag (extension, api, import)
        url: Optional source URL
        title: Optional page or document title
        content: Raw captured text
        summary: AI generated summary
        canonical_text: Normalized text used for fingerprinting
        canonical_hash: sha256 fingerprint, unique per user
        metadata_: Extracted metadata (topics, categories, sentiment, ...)
        importance_score: Importance in [0, 1]
        access_count: Times this memory was re-submitted or merged
        last_accessed: Last merge timestamp
    """

    __tablename__ = "memories"

    memory_id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), ForeignKey("users.user_id"), nullable=False, index=True)
    source = Column(String(50), nullable=False, default="api")
    url = Column(Text, nullable=True)
    title = Column(Text, nullable=True)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    canonical_text = Column(Text, nullable=False)
    canonical_hash = Column(String(64), nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)
    importance_score = Column(Float, default=0.5, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    access_count = Column(Integer, default=0, nullable=False)
    last_accessed = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="memories")

    __table_args__ = (
        UniqueConstraint("user_id", "canonical_hash", name="uq_memory_user_canonical"),
        Index("idx_memory_user_created", "user_id", "created_at"),
        Index("idx_memory_user_url", "user_id", "url"),
    )

    def get_metadata(self) -> Dict[str, Any]:
        """
        Get metadata as dictionary.

        Returns:
            Dict: Memory metadata or empty dict if None
        """
        return dict(self.metadata_ or {})

    def set_metadata(self, data: Dict[str, Any]) -> None:
        """Replace metadata with a new dictionary."""
        self.metadata_ = dict(data)

    def __repr__(self) -> str:
        return f"<Memory(memory_id='{self.memory_id}', user_id='{self.user_id}')>"


class Embedding(Base):
    """Vector for one text facet (content, summary, title) of a memory."""

    __tablename__ = "embeddings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    memory_id = Column(String(36), ForeignKey("memories.memory_id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(255), nullable=False, index=True)
    facet = Column(String(20), nullable=False)
    vector = Column(JSON, nullable=False)
    dimension = Column(Integer, nullable=False)
    model = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("memory_id", "facet", name="uq_embedding_memory_facet"),
        Index("idx_embedding_user_facet", "user_id", "facet"),
    )

    def __repr__(self) -> str:
        return f"<Embedding(memory_id='{self.memory_id}', facet='{self.facet}')>"


class MemoryRelation(Base):
    """
    Directed, typed and scored edge between two memories of the same user.

    At most one row exists per (memory_id, related_memory_id, relation_type).
    """

    __tablename__ = "memory_relations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    memory_id = Column(String(36), ForeignKey("memories.memory_id", ondelete="CASCADE"), nullable=False)
    related_memory_id = Column(String(36), ForeignKey("memories.memory_id", ondelete="CASCADE"), nullable=False)
    relation_type = Column(String(20), nullable=False)
    similarity_score = Column(Float, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "memory_id", "related_memory_id", "relation_type",
            name="uq_relation_pair_type"
        ),
        Index("idx_relation_memory", "memory_id"),
        Index("idx_relation_related", "related_memory_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<MemoryRelation({self.memory_id} -> {self.related_memory_id}, "
            f"type='{self.relation_type}', score={self.similarity_score:.3f})>"
        )


class Job(Base):
    """
    Unit of asynchronous work.

    Content jobs carry raw text plus capture metadata; answer jobs carry
    a search query. Status moves queued -> active -> done/failed/cancelled.
    """

    __tablename__ = "jobs"

    job_id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(255), nullable=False, index=True)
    kind = Column(String(20), nullable=False, default="content")
    payload = Column(JSON, nullable=False)
    fingerprint = Column(String(64), nullable=True)
    status = Column(String(20), nullable=False, default="queued", index=True)
    attempts = Column(Integer, default=0, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    result = Column(JSON, nullable=True)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_job_user_fingerprint", "user_id", "fingerprint"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in ("done", "failed", "cancelled")

    def __repr__(self) -> str:
        return f"<Job(job_id='{self.job_id}', kind='{self.kind}', status='{self.status}')>"


class MemorySnapshot(Base):
    """Immutable audit record of the raw input and the resulting summary."""

    __tablename__ = "memory_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False, index=True)
    memory_id = Column(String(36), nullable=False, index=True)
    raw_text = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    summary_hash = Column(String(64), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class UserProfile(Base):
    """Generated profile text summarizing a user's memories."""

    __tablename__ = "user_profiles"

    user_id = Column(String(255), primary_key=True)
    profile_text = Column(Text, nullable=True)
    memory_count = Column(Integer, default=0, nullable=False)
    version = Column(Integer, default=0, nullable=False)
    last_updated = Column(DateTime, nullable=True)
