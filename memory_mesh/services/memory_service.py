"""
Core memory service for business logic.

Wires the canonicalizer, deduplicator, job queue, enrichment worker,
relation builder, search engine and export service together and exposes
the operations used by the API layer.
"""

import logging
from typing import Dict, List, Optional

from memory_mesh.core.config import settings
from memory_mesh.core.cooldown import UserCooldown
from memory_mesh.core.database import SessionFactory, SessionLocal, check_database_connection, session_scope
from memory_mesh.core.errors import InvalidInputError, NotFoundError
from memory_mesh.core.rate_limiter import RateLimiter, RetryPolicy
from memory_mesh.memory.canonicalizer import canonicalize
from memory_mesh.memory.deduplicator import MemoryDeduplicator
from memory_mesh.memory.embedder import EmbeddingService
from memory_mesh.memory.provider import AIProvider, GeminiProvider
from memory_mesh.memory.relations import RelationBuilder
from memory_mesh.memory.retriever import HybridSearchEngine
from memory_mesh.models.memory import Job
from memory_mesh.models.schemas import (
    AnswerRequest, ContentSubmission, ContextResponse, ExportBundle, HealthResponse,
    ImportResult, JobKind, JobStatusResponse, MemoryMesh, MemoryWithRelations,
    RebuildResult, SearchRequest, SearchResponse, SubmissionResponse
)
from memory_mesh.services.export_service import GraphExportService
from memory_mesh.services.job_queue import JobQueue
from memory_mesh.services.profile_service import ProfileRefreshService
from memory_mesh.services.vector_service import EmbeddingStore, create_embedding_store
from memory_mesh.services.worker import BackgroundTaskRunner, EnrichmentWorker, WorkerPool
from memory_mesh.utils.security import validate_content, validate_search_query, validate_user_id

logger = logging.getLogger(__name__)


class MemoryService:
    """
    High-level memory management service.

    Every collaborator can be injected; by default the service uses the
    configured database, embedding store and Gemini provider.

    Example:
        >>> service = MemoryService()
        >>> await service.start()
        >>> response = service.submit_content(ContentSubmission(user_id="user123", content="..."))
        >>> service.get_job_status(response.job_id).status
        'queued'
    """

    def __init__(
        self,
        provider: Optional[AIProvider] = None,
        session_factory: SessionFactory = SessionLocal,
        store: Optional[EmbeddingStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
        queue_rate_limiter: Optional[RateLimiter] = None,
        relation_cooldown: Optional[UserCooldown] = None,
        worker_concurrency: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.provider = provider or GeminiProvider()
        self.store = store or create_embedding_store(session_factory)
        self.deduplicator = MemoryDeduplicator()
        self.embedding_service = EmbeddingService(self.provider)

        self.queue = JobQueue(session_factory)
        self.background = BackgroundTaskRunner(settings.worker_concurrency)
        self.relation_builder = RelationBuilder(
            self.embedding_service, self.store, session_factory, relation_cooldown
        )
        self.profile_service = ProfileRefreshService(self.provider, session_factory)
        self.search_engine = HybridSearchEngine(
            self.provider, self.embedding_service, self.store, session_factory
        )
        self.export_service = GraphExportService(self.relation_builder, session_factory)
        self.worker = EnrichmentWorker(
            self.provider,
            self.relation_builder,
            self.profile_service,
            self.background,
            session_factory=session_factory,
            deduplicator=self.deduplicator,
            retry_policy=retry_policy
        )
        self.pool = WorkerPool(
            self.queue,
            handlers={
                JobKind.CONTENT.value: self.worker.process,
                JobKind.ANSWER.value: self.search_engine.run_answer_job,
            },
            concurrency=worker_concurrency,
            rate_limiter=queue_rate_limiter
        )

    # ================================
    # Lifecycle
    # ================================

    async def start(self, start_workers: bool = True) -> List[str]:
        """
        Requeue stalled jobs and start the worker pool.

        Returns:
            List[str]: Requeued job ids
        """
        recovered = self.queue.recover()
        if start_workers:
            await self.pool.start()
        return recovered

    async def stop(self) -> None:
        """Stop workers and cancel outstanding background work."""
        await self.pool.stop()
        await self.background.shutdown()

    async def drain(self) -> List[Job]:
        """Process every queued job inline, then wait for background work."""
        finished = await self.pool.drain()
        await self.background.drain()
        return finished

    # ================================
    # Submission & jobs
    # ================================

    def submit_content(self, submission: ContentSubmission) -> SubmissionResponse:
        """
        Accept content for enrichment.

        Duplicates of stored memories are merged immediately. Duplicates of
        content still waiting in the queue return the pending job. Anything
        else is queued as a content job.

        Args:
            submission: Content submission

        Returns:
            SubmissionResponse: Job id, or the existing memory for duplicates

        Raises:
            InvalidInputError: If the user id or content is invalid
        """
        user_id = validate_user_id(submission.user_id)
        content = validate_content(submission.content)
        canonical = canonicalize(content, submission.url)
        if not canonical.text:
            raise InvalidInputError("Content is empty after normalization")

        metadata = dict(submission.metadata)
        if submission.memory_id:
            metadata["memory_id"] = submission.memory_id
        else:
            with session_scope(self.session_factory) as db:
                match = self.deduplicator.find_duplicate(
                    db, user_id, canonical.fingerprint, canonical.text, canonical.url
                )
                if match is not None:
                    self.deduplicator.merge(match.memory, metadata)
                    logger.info(
                        f"Submission for user {user_id} merged into memory "
                        f"{match.memory.memory_id} ({match.reason})"
                    )
                    return SubmissionResponse(
                        memory_id=match.memory.memory_id,
                        is_duplicate=True,
                        reason=match.reason
                    )

            pending = self.queue.find_pending_duplicate(
                user_id, canonical.fingerprint, canonical.text, canonical.url
            )
            if pending is not None:
                logger.info(f"Submission for user {user_id} matches pending job {pending.job_id}")
                return SubmissionResponse(job_id=pending.job_id, is_duplicate=True, reason="pending_job")

        payload = {
            "content": content,
            "url": submission.url,
            "title": submission.title,
            "source": submission.source,
            "metadata": metadata,
        }
        job = self.queue.enqueue(user_id, JobKind.CONTENT, payload, canonical.fingerprint)
        return SubmissionResponse(job_id=job.job_id, memory_id=submission.memory_id)

    def get_job_status(self, job_id: str) -> JobStatusResponse:
        """
        Raises:
            NotFoundError: If the job does not exist
        """
        job = self.queue.get(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return JobStatusResponse.model_validate(job)

    def cancel_job(self, job_id: str) -> JobStatusResponse:
        """Request cancellation and return the job's current status."""
        status = self.get_job_status(job_id)
        if not self.queue.request_cancel(job_id):
            logger.info(f"Job {job_id} already finished ({status.status.value}); cancel ignored")
        return self.get_job_status(job_id)

    # ================================
    # Search & answer
    # ================================

    async def search(self, request: SearchRequest) -> SearchResponse:
        user_id = validate_user_id(request.user_id)
        query = validate_search_query(request.query)
        return await self.search_engine.search(user_id, query, request.filters, request.limit)

    def request_answer(self, request: AnswerRequest) -> SubmissionResponse:
        """Queue an answer job; poll get_answer_status for the result."""
        user_id = validate_user_id(request.user_id)
        query = validate_search_query(request.query)
        job = self.queue.enqueue(user_id, JobKind.ANSWER, {"query": query, "top_k": request.top_k})
        return SubmissionResponse(job_id=job.job_id)

    def get_answer_status(self, job_id: str) -> JobStatusResponse:
        status = self.get_job_status(job_id)
        if status.kind != JobKind.ANSWER:
            raise NotFoundError(f"Answer job {job_id} not found")
        return status

    async def get_context(self, user_id: str, query: str, limit: int = 5) -> ContextResponse:
        return await self.search_engine.build_context(
            validate_user_id(user_id), validate_search_query(query), limit
        )

    # ================================
    # Memory mesh
    # ================================

    def get_memory_mesh(self, user_id: str, limit: int = 200) -> MemoryMesh:
        return self.relation_builder.get_memory_mesh(validate_user_id(user_id), limit)

    def get_memory_relations(self, memory_id: str) -> MemoryWithRelations:
        return self.relation_builder.get_memory_with_relations(memory_id)

    async def rebuild_relations(self, user_id: str, min_score: Optional[float] = None) -> RebuildResult:
        """Rebuild a user's edges, optionally pruning edges below min_score afterwards."""
        user_id = validate_user_id(user_id)
        result = await self.relation_builder.rebuild_user_relations(user_id)
        if min_score is not None and not result.skipped_cooldown:
            self.relation_builder.cleanup_low_quality_relations(user_id, min_score)
        return result

    # ================================
    # Export / import
    # ================================

    def export_user_graph(self, user_id: str) -> ExportBundle:
        return self.export_service.export_user_graph(validate_user_id(user_id))

    async def import_user_graph(self, user_id: str, bundle: ExportBundle) -> ImportResult:
        """
        Import a bundle and schedule embeddings and relations for the new memories.
        """
        user_id = validate_user_id(user_id)
        result = self.export_service.import_user_graph(user_id, bundle)
        for memory_id in result.memory_ids:
            self.background.spawn(
                f"relations:{memory_id}",
                self.relation_builder.process_memory(memory_id, user_id)
            )
        return result

    # ================================
    # Health
    # ================================

    def health(self) -> HealthResponse:
        database_ok = check_database_connection(self.session_factory.kw.get("bind"))
        queued = self.queue.pending_count() if database_ok else 0
        return HealthResponse(
            status="healthy" if database_ok else "degraded",
            database=database_ok,
            workers_running=self.pool.running,
            queued_jobs=queued,
            version=settings.api_version,
            stats=self.get_stats()
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "queued_in_process": self.queue.qsize(),
            "background_tasks": self.background.pending,
            "background_failures": self.background.failures,
        }
