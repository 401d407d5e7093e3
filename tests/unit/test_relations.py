"""
Unit tests for the relation builder (memory mesh).
"""

import math
from datetime import datetime, timedelta

import pytest

from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.database import session_scope
from memory_mesh.core.errors import NotFoundError, ShapeMismatchError
from memory_mesh.memory.embedder import EmbeddingService, cosine_similarity
from memory_mesh.memory.relations import (
    RelationBuilder, RelationCandidate, jaccard, merge_candidates, rank_candidates, temporal_score
)
from memory_mesh.models.memory import MemoryRelation
from memory_mesh.models.schemas import RelationType
from tests.conftest import FakeProvider


@pytest.fixture
def builder(provider, store, session_factory):
    return RelationBuilder(EmbeddingService(provider), store, session_factory, UserCooldown(600))


def unit_vector_at(cosine: float):
    """2D unit vector whose cosine with [1, 0] is the given value."""
    return [cosine, math.sqrt(1.0 - cosine ** 2)]


def relation_rows(session_factory, memory_id=None):
    with session_scope(session_factory) as db:
        query = db.query(MemoryRelation)
        if memory_id:
            query = query.filter(MemoryRelation.memory_id == memory_id)
        return query.all()


class TestScoring:
    """Tests for the pure scoring helpers."""

    def test_semantic_threshold_is_inclusive(self):
        kept = rank_candidates({"a": 0.29, "b": 0.30}, RelationType.SEMANTIC, 0.3, 8)
        assert [c.related_memory_id for c in kept] == ["b"]

    def test_rank_keeps_top_n(self):
        scores = {f"m{i}": 0.3 + i / 100 for i in range(12)}
        kept = rank_candidates(scores, RelationType.SEMANTIC, 0.3, 8)
        assert len(kept) == 8
        assert kept[0].related_memory_id == "m11"

    def test_temporal_decay_half_window(self):
        assert temporal_score(timedelta(days=3.5), timedelta(days=7)) == pytest.approx(0.5)
        assert temporal_score(timedelta(days=-3.5), timedelta(days=7)) == pytest.approx(0.5)
        assert temporal_score(timedelta(days=8), timedelta(days=7)) == 0.0

    def test_jaccard(self):
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard(set(), set()) == 0.0

    def test_merge_keeps_highest_score(self):
        merged = merge_candidates([
            [RelationCandidate("x", RelationType.SEMANTIC, 0.4)],
            [RelationCandidate("x", RelationType.TOPICAL, 0.6)],
            [RelationCandidate("x", RelationType.TEMPORAL, 0.5)],
        ])
        assert merged == [RelationCandidate("x", RelationType.TOPICAL, 0.6)]

    def test_merge_tie_prefers_earlier_type(self):
        merged = merge_candidates([
            [RelationCandidate("x", RelationType.SEMANTIC, 0.5)],
            [],
            [RelationCandidate("x", RelationType.TEMPORAL, 0.5)],
        ])
        assert merged[0].relation_type == RelationType.SEMANTIC

    def test_cosine_similarity(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
        assert cosine_similarity([1.0, 0.0], [0.0, 0.0]) == 0.0
        with pytest.raises(ShapeMismatchError):
            cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0])


class TestBuildRelations:
    """Tests for RelationBuilder.build_relations."""

    async def test_semantic_threshold(self, builder, store, memory_factory, session_factory):
        old = datetime.utcnow() - timedelta(days=30)
        source = memory_factory(content="source", created_at=old)
        below = memory_factory(content="below", created_at=old - timedelta(days=20))
        above = memory_factory(content="above", created_at=old - timedelta(days=40))

        store.upsert(source.memory_id, "user123", "content", [1.0, 0.0])
        store.upsert(below.memory_id, "user123", "content", unit_vector_at(0.29))
        store.upsert(above.memory_id, "user123", "content", unit_vector_at(0.31))

        await builder.build_relations(source.memory_id, "user123")

        edges = relation_rows(session_factory, source.memory_id)
        assert [(e.related_memory_id, e.relation_type) for e in edges] == [(above.memory_id, "semantic")]
        assert edges[0].similarity_score == pytest.approx(0.31)

    async def test_mismatched_vectors_skipped(self, builder, store, memory_factory, session_factory):
        old = datetime.utcnow() - timedelta(days=30)
        source = memory_factory(content="source", created_at=old)
        other = memory_factory(content="other", created_at=old - timedelta(days=20))
        store.upsert(source.memory_id, "user123", "content", [1.0, 0.0])
        store.upsert(other.memory_id, "user123", "content", [1.0, 0.0, 0.0])

        assert await builder.build_relations(source.memory_id, "user123") == []

    async def test_temporal_relation_at_half_window(self, builder, memory_factory, session_factory):
        now = datetime.utcnow()
        first = memory_factory(content="first", created_at=now)
        second = memory_factory(content="second", created_at=now - timedelta(days=3.5))

        written = await builder.build_relations(first.memory_id, "user123")

        assert len(written) == 1
        assert written[0].relation_type == RelationType.TEMPORAL
        assert written[0].related_memory_id == second.memory_id
        assert written[0].score == pytest.approx(0.5)

    async def test_topical_relation_case_folded(self, builder, memory_factory, session_factory):
        old = datetime.utcnow() - timedelta(days=60)
        source = memory_factory(
            content="source", created_at=old,
            metadata={"topics": ["Postgres", "Replication"], "categories": ["Databases"]}
        )
        other = memory_factory(
            content="other", created_at=old - timedelta(days=30),
            metadata={"topics": ["postgres"], "categories": ["databases"]}
        )

        written = await builder.build_relations(source.memory_id, "user123")

        assert len(written) == 1
        assert written[0].related_memory_id == other.memory_id
        assert written[0].relation_type == RelationType.TOPICAL
        assert written[0].score == pytest.approx(0.7 * 0.5 + 0.3 * 1.0)

    async def test_other_users_are_ignored(self, builder, memory_factory):
        now = datetime.utcnow()
        mine = memory_factory(content="mine", created_at=now)
        memory_factory(user_id="someone_else", content="theirs", created_at=now)

        assert await builder.build_relations(mine.memory_id, "user123") == []

    async def test_missing_memory(self, builder):
        with pytest.raises(NotFoundError):
            await builder.build_relations("missing", "user123")


class TestEdgeUniqueness:
    """At most one row per (memory, related memory, type)."""

    def test_upsert_only_raises_score(self, builder, memory_factory, session_factory):
        a = memory_factory(content="a")
        b = memory_factory(content="b")

        assert builder.upsert_relation(a.memory_id, b.memory_id, RelationType.SEMANTIC, 0.8) is True
        assert builder.upsert_relation(a.memory_id, b.memory_id, RelationType.SEMANTIC, 0.5) is False
        rows = relation_rows(session_factory, a.memory_id)
        assert len(rows) == 1
        assert rows[0].similarity_score == pytest.approx(0.8)

        assert builder.upsert_relation(a.memory_id, b.memory_id, RelationType.SEMANTIC, 0.9) is True
        rows = relation_rows(session_factory, a.memory_id)
        assert len(rows) == 1
        assert rows[0].similarity_score == pytest.approx(0.9)

    def test_types_are_separate_edges(self, builder, memory_factory, session_factory):
        a = memory_factory(content="a")
        b = memory_factory(content="b")

        builder.upsert_relation(a.memory_id, b.memory_id, RelationType.SEMANTIC, 0.8)
        builder.upsert_relation(a.memory_id, b.memory_id, RelationType.TEMPORAL, 0.4)

        assert len(relation_rows(session_factory, a.memory_id)) == 2

    async def test_rebuild_is_idempotent(self, builder, memory_factory, session_factory):
        now = datetime.utcnow()
        first = memory_factory(content="first", created_at=now)
        memory_factory(content="second", created_at=now - timedelta(days=1))

        await builder.build_relations(first.memory_id, "user123")
        await builder.build_relations(first.memory_id, "user123")

        assert len(relation_rows(session_factory, first.memory_id)) == 1


class TestEmbeddings:
    """Tests for RelationBuilder.generate_embeddings."""

    async def test_embeds_available_facets(self, builder, memory_factory, store):
        memory = memory_factory(content="body", title="Title", summary=None)

        stored = await builder.generate_embeddings(memory.memory_id)

        assert sorted(stored) == ["content", "title"]
        assert store.get(memory.memory_id, "user123", "summary") is None
        assert len(store.get(memory.memory_id, "user123", "content")) == 16

    async def test_partial_failure(self, store, session_factory, memory_factory):
        class TitleFailingProvider(FakeProvider):
            async def embed(self, text):
                if text == "Title":
                    raise RuntimeError("embedding failed")
                return await super().embed(text)

        builder = RelationBuilder(EmbeddingService(TitleFailingProvider()), store, session_factory)
        memory = memory_factory(content="body", title="Title", summary="summary")

        stored = await builder.generate_embeddings(memory.memory_id)

        assert sorted(stored) == ["content", "summary"]


class TestMeshOperations:
    """Rebuild, cleanup and graph views."""

    async def test_rebuild_cooldown_for_users_without_embeddings(self, builder, memory_factory):
        memory_factory(content="no embeddings yet")

        first = await builder.rebuild_user_relations("user123")
        second = await builder.rebuild_user_relations("user123")

        assert first.skipped_cooldown is False
        assert first.memories_processed == 0
        assert second.skipped_cooldown is True

    async def test_rebuild_processes_embedded_memories(self, builder, store, memory_factory):
        now = datetime.utcnow()
        a = memory_factory(content="a", created_at=now)
        b = memory_factory(content="b", created_at=now - timedelta(days=1))
        store.upsert(a.memory_id, "user123", "content", [1.0, 0.0])
        store.upsert(b.memory_id, "user123", "content", [1.0, 0.1])

        result = await builder.rebuild_user_relations("user123")

        assert result.memories_processed == 2
        assert result.relations_written == 2

    def test_cleanup_low_quality_relations(self, builder, memory_factory, session_factory):
        a = memory_factory(content="a")
        b = memory_factory(content="b")
        c = memory_factory(content="c")
        builder.upsert_relation(a.memory_id, b.memory_id, RelationType.TEMPORAL, 0.2)
        builder.upsert_relation(a.memory_id, c.memory_id, RelationType.SEMANTIC, 0.8)

        assert builder.cleanup_low_quality_relations("user123", min_score=0.3) == 1
        assert [r.related_memory_id for r in relation_rows(session_factory)] == [c.memory_id]

    def test_memory_mesh_and_relations_view(self, builder, memory_factory):
        a = memory_factory(content="a", title="A")
        b = memory_factory(content="b", title="B")
        c = memory_factory(content="c", title="C")
        builder.upsert_relation(a.memory_id, b.memory_id, RelationType.SEMANTIC, 0.5)
        builder.upsert_relation(a.memory_id, c.memory_id, RelationType.TOPICAL, 0.9)

        mesh = builder.get_memory_mesh("user123")
        assert len(mesh.nodes) == 3
        assert len(mesh.edges) == 2

        view = builder.get_memory_with_relations(a.memory_id)
        assert view.memory.title == "A"
        assert [r.title for r in view.relations] == ["C", "B"]

        with pytest.raises(NotFoundError):
            builder.get_memory_with_relations("missing")
