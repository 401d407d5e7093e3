"""
Pytest configuration and fixtures.

Provides an in-memory SQLite database, a deterministic AI provider and a
fully wired MemoryService for unit, integration and API tests.
"""

import hashlib
from datetime import datetime
from typing import Any, Dict, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from memory_mesh.core.database import Base, build_session_factory, session_scope
from memory_mesh.core.rate_limiter import RateLimiter, RetryPolicy
from memory_mesh.memory.canonicalizer import canonicalize
from memory_mesh.memory.provider import AIProvider, AnswerDraft, ContextItem, citations_from_text
from memory_mesh.models.memory import Memory, User
from memory_mesh.models.schemas import ExtractedMetadata
from memory_mesh.services.memory_service import MemoryService
from memory_mesh.services.vector_service import SqlEmbeddingStore


class FakeProvider(AIProvider):
    """
    Deterministic AI provider.

    Failures are injected by setting the *_error attributes; embeddings
    for specific texts can be pinned through `vectors`.
    """

    embedding_model = "fake-embedding"

    def __init__(self):
        self.summary_calls = 0
        self.metadata_calls = 0
        self.embed_calls = 0
        self.answer_calls = 0
        self.summary_error: Optional[Exception] = None
        self.metadata_error: Optional[Exception] = None
        self.embed_error: Optional[Exception] = None
        self.answer_error: Optional[Exception] = None
        self.metadata = ExtractedMetadata(
            topics=["databases", "replication"],
            categories=["technology"],
            sentiment="neutral",
            importance=0.6,
            key_points=["standbys can publish"]
        )
        self.vectors: Dict[str, List[float]] = {}
        self.before_summary = None

    async def summarize(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        self.summary_calls += 1
        if self.before_summary is not None:
            self.before_summary()
        if self.summary_error is not None:
            raise self.summary_error
        return f"Summary of: {text[:60]}"

    async def extract_metadata(self, text: str, metadata: Optional[Dict[str, Any]] = None) -> ExtractedMetadata:
        self.metadata_calls += 1
        if self.metadata_error is not None:
            raise self.metadata_error
        return self.metadata.model_copy(deep=True)

    async def embed(self, text: str) -> List[float]:
        self.embed_calls += 1
        if self.embed_error is not None:
            raise self.embed_error
        if text in self.vectors:
            return list(self.vectors[text])
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        return [(byte - 127.5) / 127.5 for byte in digest[:16]]

    async def answer_with_citations(self, query: str, context_items: List[ContextItem]) -> AnswerDraft:
        self.answer_calls += 1
        if self.answer_error is not None:
            raise self.answer_error
        text = " ".join(f"{item.title} [{item.label}]." for item in context_items)
        return AnswerDraft(text=text, citations=citations_from_text(text, context_items))


class RecordedSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def engine():
    """In-memory SQLite engine shared across sessions."""
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def recorded_sleep():
    return RecordedSleep()


@pytest.fixture
def retry_policy(recorded_sleep):
    return RetryPolicy(max_attempts=3, base_delay=2.0, max_delay=60.0, jitter=0.5, sleep=recorded_sleep)


@pytest.fixture
def store(session_factory):
    return SqlEmbeddingStore(session_factory)


@pytest.fixture
def memory_service(provider, session_factory, store, retry_policy):
    """MemoryService wired to the test database and fake provider."""
    return MemoryService(
        provider=provider,
        session_factory=session_factory,
        store=store,
        retry_policy=retry_policy,
        queue_rate_limiter=RateLimiter(max_requests_per_minute=10000),
        worker_concurrency=1
    )


@pytest.fixture
def memory_factory(session_factory):
    """Insert memories directly, bypassing enrichment."""

    def create(
        user_id: str = "user123",
        content: str = "PostgreSQL logical replication from standby servers",
        title: Optional[str] = None,
        url: Optional[str] = None,
        summary: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
        importance_score: float = 0.5,
        source: str = "api"
    ) -> Memory:
        canonical = canonicalize(content, url)
        with session_scope(session_factory) as db:
            if db.get(User, user_id) is None:
                db.add(User(user_id=user_id))
                db.flush()
            memory = Memory(
                user_id=user_id,
                source=source,
                url=url,
                title=title,
                content=content,
                summary=summary,
                canonical_text=canonical.text,
                canonical_hash=canonical.fingerprint,
                metadata_=metadata or {},
                importance_score=importance_score,
                created_at=created_at or datetime.utcnow()
            )
            db.add(memory)
            db.flush()
        return memory

    return create


@pytest.fixture
def sample_submission() -> Dict[str, Any]:
    """Sample submission payload for testing."""
    return {
        "user_id": "user123",
        "content": "PostgreSQL 16 adds logical replication from standby servers. "
                   "Published 2023-09-14 10:00:00.",
        "url": "https://www.postgresql.org/about/news/postgresql-16-released?utm_source=feed",
        "title": "PostgreSQL 16 Released",
        "source": "extension",
        "metadata": {"key_topics": ["postgresql"]}
    }
