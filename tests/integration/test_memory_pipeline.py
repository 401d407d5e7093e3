"""
End-to-end pipeline tests: submission through enrichment, relations,
search, cited answers and graph export/import.
"""

import pytest

from memory_mesh.core.database import session_scope
from memory_mesh.models.memory import Embedding, Memory
from memory_mesh.models.schemas import (
    AnswerRequest, ContentSubmission, JobKind, JobStatus, SearchRequest
)


async def submit_and_process(service, **fields) -> str:
    response = service.submit_content(ContentSubmission(**fields))
    await service.drain()
    status = service.get_job_status(response.job_id)
    assert status.status == JobStatus.DONE
    return status.result["memory_id"]


@pytest.fixture
async def populated(memory_service, sample_submission):
    """Two enriched memories for user123."""
    first = await submit_and_process(memory_service, **sample_submission)
    second = await submit_and_process(
        memory_service,
        user_id="user123",
        content="Logical replication slots can now be created on standby servers in PostgreSQL.",
        title="Replication on standbys",
        url="https://example.com/standby-replication"
    )
    return first, second


class TestPipeline:

    async def test_memories_are_linked(self, memory_service, populated):
        first, second = populated

        mesh = memory_service.get_memory_mesh("user123")

        assert {node.memory_id for node in mesh.nodes} == {first, second}
        assert any(edge.source == second and edge.target == first for edge in mesh.edges)

        view = memory_service.get_memory_relations(second)
        assert len(view.relations) == 1
        assert view.relations[0].related_memory_id == first

    async def test_search_finds_enriched_memories(self, memory_service, populated):
        first, second = populated

        response = await memory_service.search(SearchRequest(user_id="user123", query="replication standby"))

        assert {r.memory_id for r in response.results} == {first, second}
        assert response.semantic_available is True
        scores = [r.blended_score for r in response.results]
        assert scores == sorted(scores, reverse=True)

    async def test_answer_job(self, memory_service, populated):
        response = memory_service.request_answer(AnswerRequest(user_id="user123", query="standby replication"))
        await memory_service.drain()

        status = memory_service.get_answer_status(response.job_id)

        assert status.kind == JobKind.ANSWER
        assert status.status == JobStatus.DONE
        assert "[1]" in status.result["answer"]
        assert status.result["citations"][0]["label"] == 1
        assert len(status.result["results"]) == 2

    async def test_context(self, memory_service, populated):
        response = await memory_service.get_context("user123", "replication", limit=1)

        assert response.context.startswith("[1] ")
        assert len(response.memory_ids) == 1

    async def test_rebuild_with_pruning(self, memory_service, populated):
        result = await memory_service.rebuild_relations("user123", min_score=1.0)

        assert result.memories_processed == 2
        mesh = memory_service.get_memory_mesh("user123")
        assert all(edge.similarity_score >= 1.0 for edge in mesh.edges)

    async def test_export_import_round_trip(self, memory_service, session_factory, populated):
        bundle = memory_service.export_user_graph("user123")
        assert len(bundle.memories) == 2

        result = await memory_service.import_user_graph("user456", bundle)
        await memory_service.drain()

        assert result.imported == 2
        assert result.skipped == 0
        with session_scope(session_factory) as db:
            imported_ids = [
                row[0] for row in db.query(Memory.memory_id).filter(Memory.user_id == "user456")
            ]
            assert len(imported_ids) == 2
            embedded = db.query(Embedding).filter(Embedding.memory_id.in_(imported_ids)).count()
            assert embedded == 6

        mesh = memory_service.get_memory_mesh("user456")
        assert len(mesh.edges) >= 1

    async def test_health(self, memory_service, populated):
        health = memory_service.health()

        assert health.database is True
        assert health.status == "healthy"
        assert health.queued_jobs == 0
        assert health.workers_running == 0
        assert health.stats["background_failures"] == 0
