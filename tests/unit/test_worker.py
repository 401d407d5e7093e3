"""
Unit tests for the enrichment worker, worker pool and background tasks.
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from memory_mesh.core.database import session_scope
from memory_mesh.core.errors import FatalError, ProviderUnavailableError
from memory_mesh.memory.canonicalizer import canonicalize
from memory_mesh.models.memory import Embedding, Job, Memory, MemorySnapshot, User, UserProfile
from memory_mesh.models.schemas import ContentSubmission, JobKind, JobStatus
from memory_mesh.services.worker import BackgroundTaskRunner


def count(session_factory, model, **filters) -> int:
    with session_scope(session_factory) as db:
        return db.query(model).filter_by(**filters).count()


class TestEnrichment:
    """Tests for the content job happy path."""

    async def test_content_job_creates_memory(self, memory_service, session_factory, sample_submission):
        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        assert response.job_id is not None
        assert response.is_duplicate is False

        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.DONE
        assert job.attempts == 1
        assert job.result["is_duplicate"] is False
        memory_id = job.result["memory_id"]

        with session_scope(session_factory) as db:
            memory = db.get(Memory, memory_id)
            assert memory.summary.startswith("Summary of:")
            assert memory.title == "PostgreSQL 16 Released"
            assert memory.source == "extension"
            assert memory.importance_score == pytest.approx(0.6)
            metadata = memory.get_metadata()
            assert metadata["topics"] == ["databases", "replication"]
            assert metadata["key_topics"] == ["postgresql"]
            assert db.get(User, "user123").total_memories == 1

        assert count(session_factory, MemorySnapshot, memory_id=memory_id) == 1
        assert count(session_factory, Embedding, memory_id=memory_id) == 3

    async def test_profile_refreshed_after_enrichment(self, memory_service, session_factory, sample_submission):
        memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        with session_scope(session_factory) as db:
            profile = db.get(UserProfile, "user123")
            assert profile is not None
            assert profile.version == 1
            assert profile.memory_count == 1

    @pytest.mark.parametrize("importance, expected_version", [(0.9, 2), (0.5, 1)])
    async def test_profile_window_depends_on_importance(
        self, memory_service, provider, session_factory, sample_submission, importance, expected_version
    ):
        # Profile is 4 days old: stale for the 3-day window, fresh for the 7-day one
        with session_scope(session_factory) as db:
            db.add(User(user_id="user123"))
            db.add(UserProfile(
                user_id="user123", profile_text="old profile", memory_count=0, version=1,
                last_updated=datetime.utcnow() - timedelta(days=4)
            ))
        provider.metadata.importance = importance

        memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        with session_scope(session_factory) as db:
            assert db.get(UserProfile, "user123").version == expected_version

    async def test_background_failures_do_not_fail_job(self, memory_service, provider, sample_submission):
        provider.embed_error = ProviderUnavailableError("embedding backend down")

        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        assert memory_service.get_job_status(response.job_id).status == JobStatus.DONE


class TestDedupIdempotence:
    """Identical content yields exactly one memory."""

    async def test_second_submission_reports_first_memory(self, memory_service, session_factory, sample_submission):
        first = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()
        memory_id = memory_service.get_job_status(first.job_id).result["memory_id"]

        # Same content after normalization: different timestamp, markup and case
        resubmitted = dict(sample_submission)
        resubmitted["content"] = (
            "<p>postgresql 16 adds LOGICAL replication from standby servers.</p> "
            "Published 2024-02-01 08:15:00."
        )
        second = memory_service.submit_content(ContentSubmission(**resubmitted))

        assert second.is_duplicate is True
        assert second.memory_id == memory_id
        assert second.reason == "canonical"
        assert second.job_id is None
        assert count(session_factory, Memory, user_id="user123") == 1

        with session_scope(session_factory) as db:
            assert db.get(Memory, memory_id).access_count == 1

    async def test_pending_duplicate_returns_existing_job(self, memory_service, sample_submission):
        first = memory_service.submit_content(ContentSubmission(**sample_submission))
        second = memory_service.submit_content(ContentSubmission(**sample_submission))

        assert second.is_duplicate is True
        assert second.job_id == first.job_id
        assert second.reason == "pending_job"

    async def test_racing_jobs_merge_in_worker(self, memory_service, session_factory):
        payload = {"content": "Same article body", "url": None, "title": None, "source": "api", "metadata": {}}
        fingerprint = canonicalize("Same article body").fingerprint
        first = memory_service.queue.enqueue("user123", JobKind.CONTENT, dict(payload), fingerprint)
        second = memory_service.queue.enqueue("user123", JobKind.CONTENT, dict(payload), fingerprint)

        await memory_service.drain()

        first_result = memory_service.get_job_status(first.job_id).result
        second_result = memory_service.get_job_status(second.job_id).result
        assert first_result["is_duplicate"] is False
        assert second_result["is_duplicate"] is True
        assert second_result["memory_id"] == first_result["memory_id"]
        assert count(session_factory, Memory, user_id="user123") == 1


class TestRetryBound:
    """Retryable failures are bounded by the retry policy."""

    async def test_summarization_retried_three_times_then_fails(
        self, memory_service, provider, recorded_sleep, session_factory, sample_submission
    ):
        provider.summary_error = ProviderUnavailableError("model overloaded")

        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.FAILED
        assert "summarize failed after 3 attempts" in job.reason
        assert provider.summary_calls == 3

        delays = recorded_sleep.delays
        assert len(delays) == 2
        assert delays == sorted(delays)
        assert all(2.0 <= delay <= 60.0 for delay in delays)
        assert count(session_factory, Memory) == 0

    async def test_fatal_summarization_error_not_retried(self, memory_service, provider, sample_submission):
        provider.summary_error = FatalError("content blocked")

        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.FAILED
        assert job.reason == "content blocked"
        assert provider.summary_calls == 1


class TestDegradedMetadata:
    """Metadata extraction failure does not fail the job."""

    async def test_fatal_metadata_error_degrades_to_empty(self, memory_service, provider, session_factory, sample_submission):
        provider.metadata_error = FatalError("unparseable metadata")

        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.DONE
        with session_scope(session_factory) as db:
            memory = db.get(Memory, job.result["memory_id"])
            assert memory.get_metadata() == {"key_topics": ["postgresql"]}
            assert memory.importance_score == pytest.approx(0.5)

    async def test_exhausted_metadata_retries_degrade(self, memory_service, provider, sample_submission):
        provider.metadata_error = ProviderUnavailableError("unavailable")

        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        assert memory_service.get_job_status(response.job_id).status == JobStatus.DONE
        assert provider.metadata_calls == 3


class TestCancellation:
    """Cooperative cancellation at checkpoints."""

    async def test_cancel_before_persistence(self, memory_service, provider, session_factory, sample_submission):
        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        provider.before_summary = lambda: memory_service.queue.request_cancel(response.job_id)

        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.CANCELLED
        assert count(session_factory, Memory) == 0
        assert count(session_factory, MemorySnapshot) == 0

    async def test_cancel_before_pickup(self, memory_service, provider, sample_submission):
        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        status = memory_service.cancel_job(response.job_id)
        assert status.status == JobStatus.QUEUED

        await memory_service.drain()

        assert memory_service.get_job_status(response.job_id).status == JobStatus.CANCELLED
        assert provider.summary_calls == 0

    async def test_cancel_finished_job_is_ignored(self, memory_service, sample_submission):
        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        await memory_service.drain()

        assert memory_service.queue.request_cancel(response.job_id) is False
        assert memory_service.cancel_job(response.job_id).status == JobStatus.DONE


class TestReEnrichment:
    """Jobs targeting an existing memory refresh it in place."""

    async def test_refreshes_summary_and_keeps_content(self, memory_service, memory_factory, session_factory):
        stored = memory_factory(content="Original body", summary="old summary", metadata={"topics": ["old"]})

        response = memory_service.submit_content(ContentSubmission(
            user_id="user123", content="Original body", memory_id=stored.memory_id
        ))
        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.DONE
        assert job.result["memory_id"] == stored.memory_id

        with session_scope(session_factory) as db:
            memory = db.get(Memory, stored.memory_id)
            assert memory.summary.startswith("Summary of:")
            assert memory.content == "Original body"
            assert memory.canonical_hash == stored.canonical_hash
            assert memory.get_metadata()["topics"] == ["databases", "replication", "old"]
        assert count(session_factory, Memory) == 1
        assert count(session_factory, MemorySnapshot, memory_id=stored.memory_id) == 1

    async def test_missing_memory_fails_job(self, memory_service, provider):
        response = memory_service.submit_content(ContentSubmission(
            user_id="user123", content="Anything", memory_id="does-not-exist"
        ))
        await memory_service.drain()

        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.FAILED
        assert "not found" in job.reason
        assert provider.summary_calls == 0


class TestQueueRecovery:
    """Stalled jobs are requeued at startup."""

    async def test_recover_requeues_active_jobs(self, memory_service, session_factory, sample_submission):
        response = memory_service.submit_content(ContentSubmission(**sample_submission))
        memory_service.queue.dequeue_nowait()
        memory_service.queue.task_done()
        memory_service.queue.mark_active(response.job_id)

        recovered = memory_service.queue.recover()
        assert recovered == [response.job_id]

        await memory_service.drain()
        job = memory_service.get_job_status(response.job_id)
        assert job.status == JobStatus.DONE
        assert job.attempts == 2


class TestBackgroundTaskRunner:
    """Detached tasks never propagate failures."""

    async def test_failure_is_contained(self):
        runner = BackgroundTaskRunner(max_concurrency=2)

        async def boom():
            raise RuntimeError("relation builder crashed")

        async def fine():
            return "ok"

        runner.spawn("boom", boom())
        runner.spawn("fine", fine())
        await runner.drain()

        assert runner.failures == 1
        assert runner.pending == 0


class TestWorkerPool:
    """Workers consume the queue in the background."""

    async def test_pool_processes_jobs(self, memory_service, sample_submission):
        await memory_service.start()
        try:
            response = memory_service.submit_content(ContentSubmission(**sample_submission))
            for _ in range(200):
                status = memory_service.get_job_status(response.job_id).status
                if status in (JobStatus.DONE, JobStatus.FAILED):
                    break
                await asyncio.sleep(0.01)
            assert memory_service.get_job_status(response.job_id).status == JobStatus.DONE
            assert memory_service.pool.running == 1
        finally:
            await memory_service.stop()

        assert memory_service.pool.running == 0
