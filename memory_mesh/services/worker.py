"""
Enrichment worker, worker pool and detached background tasks.

The enrichment worker turns a queued content submission into an enriched
memory:

1. checkpoint (cancellation)
2. duplicate resolution, skipped for re-enrichment of a known memory
3. summarization and metadata extraction, concurrently, each under the
   bounded retry policy; metadata failure degrades to an empty object
4. checkpoint (cancellation)
5. persist memory + snapshot
6. detached background work: embeddings, relations, profile refresh

The worker pool runs a fixed number of workers over the job queue and
records every terminal state with a readable reason.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import IntegrityError

from memory_mesh.core.config import settings
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.core.errors import (
    FatalError, InvalidInputError, JobCancelledError, NotFoundError, RetryExhaustedError
)
from memory_mesh.core.rate_limiter import RateLimiter, RetryPolicy
from memory_mesh.memory.canonicalizer import CanonicalContent, canonicalize, sha256_hex
from memory_mesh.memory.deduplicator import MemoryDeduplicator
from memory_mesh.memory.provider import AIProvider
from memory_mesh.memory.relations import RelationBuilder
from memory_mesh.models.memory import Job, Memory, MemorySnapshot, User
from memory_mesh.services.job_queue import CancellationToken, JobQueue
from memory_mesh.services.profile_service import ProfileRefreshService

logger = logging.getLogger(__name__)

DEFAULT_IMPORTANCE = 0.5

# Capture metadata forwarded to the AI provider prompts
PROMPT_METADATA_KEYS = ("title", "url", "content_type", "content_summary", "key_topics")

JobHandler = Callable[[Job, CancellationToken], Awaitable[Optional[Dict[str, Any]]]]


def get_or_create_user(db, user_id: str) -> User:
    """Get a user row, creating it on first use."""
    user = db.get(User, user_id)
    if user is None:
        user = User(user_id=user_id)
        db.add(user)
        db.flush()
        logger.info(f"Created new user: {user_id}")
    return user


class BackgroundTaskRunner:
    """
    Supervised fire-and-forget tasks.

    Failures are logged and never reach the code that spawned the task.
    Concurrency is bounded by a semaphore.
    """

    def __init__(self, max_concurrency: int = 4):
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self.failures = 0

    def spawn(self, name: str, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(self._supervise(name, coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _supervise(self, name: str, coro: Coroutine) -> None:
        async with self._semaphore:
            try:
                await coro
                logger.debug(f"Background task {name} finished")
            except asyncio.CancelledError:
                logger.info(f"Background task {name} cancelled")
                raise
            except Exception as e:
                self.failures += 1
                logger.error(f"Background task {name} failed: {e}", exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every spawned task, including tasks spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding tasks."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)


class EnrichmentWorker:
    """
    Processes content jobs into enriched memories.

    Example:
        >>> worker = EnrichmentWorker(provider, relation_builder, profile_service, background)
        >>> result = await worker.process(job, queue.token(job.job_id))
        >>> result["memory_id"]
    """

    def __init__(
        self,
        provider: AIProvider,
        relation_builder: RelationBuilder,
        profile_service: ProfileRefreshService,
        background: BackgroundTaskRunner,
        session_factory: SessionFactory = SessionLocal,
        deduplicator: Optional[MemoryDeduplicator] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.provider = provider
        self.relation_builder = relation_builder
        self.profile_service = profile_service
        self.background = background
        self.session_factory = session_factory
        self.deduplicator = deduplicator or MemoryDeduplicator()
        self.retry_policy = retry_policy or RetryPolicy()

    async def process(self, job: Job, token: CancellationToken) -> Dict[str, Any]:
        """
        Run the enrichment protocol for one content job.

        Args:
            job: Active content job
            token: Cancellation token for the job

        Returns:
            Dict: {memory_id, is_duplicate, reason?, summary_preview?}

        Raises:
            JobCancelledError: If cancellation was observed at a checkpoint
            FatalError: On invalid payloads, missing memories or exhausted retries
        """
        payload = job.payload or {}
        text = payload.get("content") or ""
        if not text.strip():
            raise InvalidInputError(f"Job {job.job_id} has no content")

        capture_metadata = dict(payload.get("metadata") or {})
        target_memory_id = capture_metadata.pop("memory_id", None) or payload.get("memory_id")

        token.check()

        canonical = canonicalize(text, payload.get("url"))
        if target_memory_id:
            self._ensure_memory_exists(target_memory_id, job.user_id)
        else:
            duplicate = self._merge_if_duplicate(job.user_id, canonical, capture_metadata)
            if duplicate is not None:
                return duplicate

        prompt_metadata = {
            key: value for key, value in {**capture_metadata, **payload}.items()
            if key in PROMPT_METADATA_KEYS and value
        }
        summary, extracted = await self._enrich(text, prompt_metadata, token)

        token.check()

        memory_id, is_duplicate, importance = self._persist(
            job, canonical, text, summary, extracted, capture_metadata, target_memory_id
        )

        if is_duplicate:
            return {"memory_id": memory_id, "is_duplicate": True, "reason": "canonical"}

        self._schedule_background(memory_id, job.user_id, importance)

        return {
            "memory_id": memory_id,
            "is_duplicate": False,
            "summary_preview": summary[:200],
        }

    # ================================
    # Steps
    # ================================

    def _ensure_memory_exists(self, memory_id: str, user_id: str) -> None:
        with session_scope(self.session_factory) as db:
            memory = db.get(Memory, memory_id)
            if memory is None or memory.user_id != user_id:
                raise NotFoundError(f"Memory {memory_id} not found for user {user_id}")

    def _merge_if_duplicate(
        self,
        user_id: str,
        canonical: CanonicalContent,
        capture_metadata: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            match = self.deduplicator.find_duplicate(
                db, user_id, canonical.fingerprint, canonical.text, canonical.url
            )
            if match is None:
                return None
            self.deduplicator.merge(match.memory, capture_metadata)
            return {
                "memory_id": match.memory.memory_id,
                "is_duplicate": True,
                "reason": match.reason,
            }

    async def _enrich(
        self,
        text: str,
        prompt_metadata: Dict[str, Any],
        token: CancellationToken
    ) -> Tuple[str, Dict[str, Any]]:
        summary_result, metadata_result = await asyncio.gather(
            self._summarize(text, prompt_metadata, token),
            self._extract_metadata(text, prompt_metadata, token),
            return_exceptions=True
        )

        for result in (summary_result, metadata_result):
            if isinstance(result, JobCancelledError):
                raise result
        if isinstance(summary_result, BaseException):
            raise summary_result
        if isinstance(metadata_result, BaseException):
            raise metadata_result

        return summary_result, metadata_result

    async def _summarize(self, text: str, metadata: Dict[str, Any], token: CancellationToken) -> str:
        async def attempt() -> str:
            token.check()
            return await self.provider.summarize(text, metadata)

        summary = await self.retry_policy.call("summarize", attempt)
        if not summary or not summary.strip():
            raise FatalError("Provider returned an empty summary")
        return summary.strip()

    async def _extract_metadata(
        self,
        text: str,
        metadata: Dict[str, Any],
        token: CancellationToken
    ) -> Dict[str, Any]:
        async def attempt():
            token.check()
            return await self.provider.extract_metadata(text, metadata)

        try:
            extracted = await self.retry_policy.call("extract_metadata", attempt)
        except JobCancelledError:
            raise
        except Exception as e:
            logger.warning(f"Metadata extraction failed, continuing with empty metadata: {e}")
            return {}

        return extracted.model_dump(exclude_none=True)

    def _persist(
        self,
        job: Job,
        canonical: CanonicalContent,
        text: str,
        summary: str,
        extracted: Dict[str, Any],
        capture_metadata: Dict[str, Any],
        target_memory_id: Optional[str]
    ) -> Tuple[str, bool, float]:
        payload = job.payload or {}

        try:
            with session_scope(self.session_factory) as db:
                if target_memory_id:
                    memory = db.get(Memory, target_memory_id)
                    if memory is None:
                        raise NotFoundError(f"Memory {target_memory_id} disappeared during enrichment")
                    memory.summary = summary
                    memory.set_metadata(
                        self.deduplicator.merge_metadata(extracted, memory.get_metadata())
                    )
                    if extracted.get("importance") is not None:
                        memory.importance_score = extracted["importance"]
                else:
                    user = get_or_create_user(db, job.user_id)
                    memory = Memory(
                        user_id=job.user_id,
                        source=payload.get("source") or "api",
                        url=payload.get("url"),
                        title=payload.get("title") or capture_metadata.get("title"),
                        content=text,
                        summary=summary,
                        canonical_text=canonical.text,
                        canonical_hash=canonical.fingerprint,
                        metadata_=self.deduplicator.merge_metadata(extracted, capture_metadata),
                        importance_score=extracted.get("importance", DEFAULT_IMPORTANCE),
                        access_count=0
                    )
                    db.add(memory)
                    db.flush()
                    user.total_memories = (user.total_memories or 0) + 1
                    user.last_activity = datetime.utcnow()

                db.add(MemorySnapshot(
                    user_id=job.user_id,
                    memory_id=memory.memory_id,
                    raw_text=text,
                    summary=summary,
                    summary_hash=sha256_hex(summary)
                ))
                memory_id = memory.memory_id
                importance = memory.importance_score

        except IntegrityError:
            # A concurrent job stored the same fingerprint first
            logger.info(f"Job {job.job_id} lost a duplicate race; merging into existing memory")
            duplicate = self._merge_if_duplicate(job.user_id, canonical, capture_metadata)
            if duplicate is None:
                raise
            return duplicate["memory_id"], True, DEFAULT_IMPORTANCE

        logger.info(
            f"Persisted memory {memory_id} for user {job.user_id} "
            f"({'re-enriched' if target_memory_id else 'new'}, importance={importance:.2f})"
        )
        return memory_id, False, importance

    def _schedule_background(self, memory_id: str, user_id: str, importance: float) -> None:
        self.background.spawn(
            f"relations:{memory_id}",
            self.relation_builder.process_memory(memory_id, user_id)
        )

        if importance >= settings.profile_importance_threshold:
            window_days = settings.profile_refresh_days_important
        else:
            window_days = settings.profile_refresh_days
        self.background.spawn(
            f"profile:{user_id}",
            self.profile_service.refresh_if_due(user_id, window_days)
        )


class WorkerPool:
    """
    Bounded pool of workers consuming the job queue.

    Each worker waits on the shared rate limiter before starting a job.
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[str, JobHandler],
        concurrency: Optional[int] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.queue = queue
        self.handlers = handlers
        self.concurrency = concurrency or settings.worker_concurrency
        self.rate_limiter = rate_limiter or RateLimiter(settings.queue_rate_limit_per_minute)
        self._workers: List[asyncio.Task] = []

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._workers:
            return
        for index in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._worker_loop(index), name=f"worker-{index}"))
        logger.info(f"Started {self.concurrency} workers")

    async def stop(self) -> None:
        """Cancel the worker tasks and wait for them to exit."""
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Worker pool stopped")

    @property
    def running(self) -> int:
        return sum(1 for task in self._workers if not task.done())

    async def _worker_loop(self, index: int) -> None:
        while True:
            job_id = await self.queue.dequeue()
            try:
                await self.rate_limiter.acquire()
                await self.run_job(job_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Worker {index} crashed on job {job_id}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def run_job(self, job_id: str) -> Optional[Job]:
        """
        Run one job through its handler and record the terminal state.

        Args:
            job_id: Job to run

        Returns:
            Optional[Job]: The finished job, or None if it was not runnable
        """
        job = self.queue.mark_active(job_id)
        if job is None:
            logger.debug(f"Job {job_id} is not queued; skipping")
            return None

        handler = self.handlers.get(job.kind)

        try:
            if handler is None:
                raise InvalidInputError(f"No handler for job kind '{job.kind}'")
            result = await handler(job, self.queue.token(job_id))

        except JobCancelledError as e:
            logger.info(f"Job {job_id} cancelled")
            self.queue.mark_cancelled(job_id, str(e))
        except RetryExhaustedError as e:
            logger.error(f"Job {job_id} failed after retries: {e}")
            self.queue.fail(job_id, str(e))
        except FatalError as e:
            logger.error(f"Job {job_id} failed: {e}")
            self.queue.fail(job_id, str(e))
        except Exception as e:
            logger.error(f"Job {job_id} failed with unexpected error: {e}", exc_info=True)
            self.queue.fail(job_id, f"Unexpected error: {e}")
        else:
            self.queue.complete(job_id, result)
            logger.info(f"Job {job_id} done")

        return self.queue.get(job_id)

    async def drain(self) -> List[Job]:
        """
        Run every waiting job in order on the current task.

        Returns:
            List[Job]: Finished jobs
        """
        finished: List[Job] = []
        while True:
            job_id = self.queue.dequeue_nowait()
            if job_id is None:
                return finished
            try:
                job = await self.run_job(job_id)
                if job is not None:
                    finished.append(job)
            finally:
                self.queue.task_done()
