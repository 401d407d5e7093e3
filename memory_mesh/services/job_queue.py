"""
Job queue transport.

Jobs are persisted in the relational store and their ids are handed to
workers through an in-process asyncio queue. Cancellation is a flag on the
job row that workers observe at checkpoints through a CancellationToken.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from memory_mesh.core.config import settings
from memory_mesh.core.database import SessionFactory, SessionLocal, session_scope
from memory_mesh.core.errors import JobCancelledError
from memory_mesh.memory.canonicalizer import normalize_text, normalize_url, text_similarity
from memory_mesh.models.memory import Job
from memory_mesh.models.schemas import JobKind, JobStatus

logger = logging.getLogger(__name__)

PENDING_STATUSES = (JobStatus.QUEUED.value, JobStatus.ACTIVE.value)
PENDING_DUPLICATE_SCAN_LIMIT = 50


class CancellationToken:
    """
    Cooperative cancellation handle for one job.

    Example:
        >>> token = queue.token(job_id)
        >>> token.check()  # raises JobCancelledError once cancellation is requested
    """

    def __init__(self, job_id: str, session_factory: SessionFactory = SessionLocal):
        self.job_id = job_id
        self.session_factory = session_factory

    def is_cancelled(self) -> bool:
        with session_scope(self.session_factory) as db:
            row = db.query(Job.cancel_requested).filter(Job.job_id == self.job_id).first()
            return bool(row and row[0])

    def check(self) -> None:
        """Raise JobCancelledError if cancellation was requested."""
        if self.is_cancelled():
            logger.info(f"Cancellation observed for job {self.job_id}")
            raise JobCancelledError(self.job_id)


class JobQueue:
    """Persistent job records with an in-process dispatch queue."""

    def __init__(self, session_factory: SessionFactory = SessionLocal):
        self.session_factory = session_factory
        self._queue: "asyncio.Queue[str]" = asyncio.Queue()

    # ================================
    # Producer side
    # ================================

    def enqueue(
        self,
        user_id: str,
        kind: JobKind,
        payload: Dict[str, Any],
        fingerprint: Optional[str] = None
    ) -> Job:
        """
        Persist a job and hand it to the workers.

        Args:
            user_id: Owning user
            kind: Job kind
            payload: Job payload (content + metadata, or a query)
            fingerprint: Canonical fingerprint for content jobs

        Returns:
            Job: The queued job
        """
        with session_scope(self.session_factory) as db:
            job = Job(
                user_id=user_id,
                kind=JobKind(kind).value,
                payload=payload,
                fingerprint=fingerprint,
                status=JobStatus.QUEUED.value
            )
            db.add(job)
            db.flush()
            job_id = job.job_id

        self._queue.put_nowait(job_id)
        logger.info(f"Enqueued {JobKind(kind).value} job {job_id} for user {user_id}")
        return job

    def find_pending_duplicate(
        self,
        user_id: str,
        fingerprint: str,
        normalized_text: str,
        url: Optional[str] = None
    ) -> Optional[Job]:
        """
        Find a queued or active content job for the same content.

        Matches by fingerprint, or by normalized URL with text similarity
        above the duplicate threshold.
        """
        with session_scope(self.session_factory) as db:
            pending = db.query(Job).filter(
                Job.user_id == user_id,
                Job.kind == JobKind.CONTENT.value,
                Job.status.in_(PENDING_STATUSES),
                Job.cancel_requested.is_(False)
            ).order_by(Job.created_at.desc()).limit(PENDING_DUPLICATE_SCAN_LIMIT).all()

        normalized = normalize_url(url)
        for job in pending:
            if job.fingerprint == fingerprint:
                return job
            if not normalized:
                continue
            payload = job.payload or {}
            if normalize_url(payload.get("url")) != normalized:
                continue
            similarity = text_similarity(normalize_text(payload.get("content", "")), normalized_text)
            if similarity > settings.duplicate_similarity_threshold:
                return job
        return None

    def request_cancel(self, job_id: str) -> bool:
        """
        Flag a job for cancellation.

        Returns:
            bool: False if the job is unknown or already finished
        """
        with session_scope(self.session_factory) as db:
            job = db.get(Job, job_id)
            if job is None or job.is_terminal:
                return False
            job.cancel_requested = True

        logger.info(f"Cancellation requested for job {job_id}")
        return True

    # ================================
    # Consumer side
    # ================================

    async def dequeue(self) -> str:
        """Wait for the next job id."""
        return await self._queue.get()

    def dequeue_nowait(self) -> Optional[str]:
        """Next job id, or None if nothing is waiting."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def task_done(self) -> None:
        self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def token(self, job_id: str) -> CancellationToken:
        return CancellationToken(job_id, self.session_factory)

    def get(self, job_id: str) -> Optional[Job]:
        with session_scope(self.session_factory) as db:
            return db.get(Job, job_id)

    def mark_active(self, job_id: str) -> Optional[Job]:
        """
        Transition a queued job to active and count the attempt.

        Returns:
            Optional[Job]: The job, or None if it is missing or not queued
        """
        with session_scope(self.session_factory) as db:
            job = db.get(Job, job_id)
            if job is None or job.status != JobStatus.QUEUED.value:
                return None
            job.status = JobStatus.ACTIVE.value
            job.attempts = (job.attempts or 0) + 1
            job.started_at = datetime.utcnow()
            return job

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        self._finish(job_id, JobStatus.DONE, result=result)

    def fail(self, job_id: str, reason: str) -> None:
        self._finish(job_id, JobStatus.FAILED, reason=reason)

    def mark_cancelled(self, job_id: str, reason: str = "Cancelled by request") -> None:
        self._finish(job_id, JobStatus.CANCELLED, reason=reason)

    def _finish(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[Dict[str, Any]] = None,
        reason: Optional[str] = None
    ) -> None:
        with session_scope(self.session_factory) as db:
            job = db.get(Job, job_id)
            if job is None:
                logger.warning(f"Cannot finish unknown job {job_id}")
                return
            job.status = status.value
            job.result = result
            job.reason = reason
            job.finished_at = datetime.utcnow()

    def pending_count(self) -> int:
        with session_scope(self.session_factory) as db:
            return db.query(Job).filter(Job.status.in_(PENDING_STATUSES)).count()

    def recover(self) -> List[str]:
        """
        Requeue jobs left queued or active by a previous process.

        Returns:
            List[str]: Requeued job ids
        """
        with session_scope(self.session_factory) as db:
            stalled = db.query(Job).filter(
                Job.status.in_(PENDING_STATUSES)
            ).order_by(Job.created_at.asc()).all()
            for job in stalled:
                job.status = JobStatus.QUEUED.value
            job_ids = [job.job_id for job in stalled]

        for job_id in job_ids:
            self._queue.put_nowait(job_id)

        if job_ids:
            logger.info(f"Requeued {len(job_ids)} stalled jobs")
        return job_ids
