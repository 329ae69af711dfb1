"""
Job dispatcher for sync orchestration.

Handles:
- Enqueueing tasks, optionally delayed
- Splitting a market history run into a batch of chunked tasks
- Claiming the next due task (conditional UPDATE, safe across workers)
- Releasing running tasks back to the queue
- Batch cancellation
- Recovery of tasks stuck in RUNNING after a worker crash
- Manual requeue from dead letter queue
"""

import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from esisync.config.sync_settings import MarketHistorySettings, SyncSettings
from esisync.ingestion.batch import SyncBatch
from esisync.ingestion.jobs import corporation_medals, market_history
from esisync.ingestion.jobs.models import SyncJob, JobStatus, TaskState

logger = logging.getLogger(__name__)

# How many due candidates to try before giving up on a claim
CLAIM_CANDIDATES = 5

# error_code of jobs dead-lettered by stale recovery
STALE_ERROR_CODE = "execution_timeout"


class SyncJobError(Exception):
    """Base class for sync engine errors."""


class UnknownJobTypeError(SyncJobError):
    """Raised when no handler is registered for a job type."""

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class JobNotFoundError(SyncJobError):
    """Raised when a job is not found."""


class BatchNotFoundError(SyncJobError):
    """Raised when a batch is not found."""


def _chunks(ids: List[Any], size: int) -> Iterable[List[Any]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class JobDispatcher:
    """
    Dispatcher for sync jobs.

    Responsibilities:
    - Create and queue jobs
    - Hand out due jobs to workers, one worker per job
    - Manage job lifecycle transitions outside of execution
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[SyncSettings] = None,
    ):
        self.db = db_session
        self.settings = settings or SyncSettings()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def enqueue(
        self,
        job_type: str,
        context: Optional[Dict[str, Any]] = None,
        remaining_ids: Optional[List[Any]] = None,
        delay_seconds: float = 0,
        batch_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[List[str]] = None,
    ) -> SyncJob:
        """
        Persist a new QUEUED job.

        Args:
            job_type: Handler name
            context: Job parameters (region_id, corporation_id)
            remaining_ids: Identifiers to process, duplicates dropped
            delay_seconds: Seconds before the job may be claimed
            batch_id: Owning batch
            max_attempts: Attempt budget (default from retry settings)
            tags: Job tags stored in job_metadata

        Returns:
            Created SyncJob
        """
        state = TaskState(context=context or {}, remaining_ids=remaining_ids or [])

        job = SyncJob(
            job_id=str(uuid.uuid4()),
            job_type=job_type,
            status=JobStatus.QUEUED,
            context=state.context,
            remaining_ids=state.remaining_ids,
            attempts=0,
            max_attempts=max_attempts or self.settings.retry.max_attempts,
            batch_id=batch_id,
            available_at=self._now() + timedelta(seconds=delay_seconds),
            job_metadata={"tags": list(tags or [])},
        )
        self.db.add(job)
        self.db.flush()

        logger.info(
            "job.queued",
            extra={
                "job_id": job.job_id,
                "job_type": job_type,
                "batch_id": batch_id,
                "remaining": len(state.remaining_ids),
                "delay_seconds": delay_seconds,
            },
        )
        return job

    def release(
        self,
        job: SyncJob,
        state: TaskState,
        delay_seconds: float,
        attempts: Optional[int] = None,
    ) -> SyncJob:
        """
        Put a running job back in the queue with its current progress.

        Args:
            job: Job being released
            state: Handler's TaskState (remaining queue is persisted as-is)
            delay_seconds: Seconds before the job may be claimed again
            attempts: New attempt count (defaults to the state's)
        """
        job.apply_state(state)
        job.mark_released(
            available_at=self._now() + timedelta(seconds=delay_seconds),
            attempts=state.attempts if attempts is None else attempts,
        )
        self.db.flush()
        return job

    def dispatch_market_history(
        self,
        type_ids: List[int],
        region_id: Optional[int] = None,
        chunk_size: Optional[int] = None,
        name: Optional[str] = None,
    ) -> SyncBatch:
        """
        Create a batch with one market history job per chunk of type ids.

        Args:
            type_ids: Market type ids to sync (duplicates dropped)
            region_id: Region to pull (default from settings)
            chunk_size: Type ids per job (default from settings)
            name: Batch label

        Returns:
            The created SyncBatch
        """
        history: MarketHistorySettings = self.settings.market_history
        region_id = region_id or history.region_id
        chunk_size = chunk_size or history.chunk_size
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")

        ids = TaskState(remaining_ids=type_ids).remaining_ids
        chunks = list(_chunks(ids, chunk_size))

        batch = SyncBatch(
            batch_id=str(uuid.uuid4()),
            name=name or f"{market_history.JOB_TYPE}:{region_id}",
            total_jobs=len(chunks),
            completed_jobs=0,
            cancelled=False,
        )
        self.db.add(batch)
        self.db.flush()

        for current, chunk in enumerate(chunks, start=1):
            self.enqueue(
                market_history.JOB_TYPE,
                context={"region_id": region_id},
                remaining_ids=chunk,
                batch_id=batch.batch_id,
                tags=market_history.build_tags(len(chunks), current),
            )

        logger.info(
            "batch.dispatched",
            extra={
                "batch_id": batch.batch_id,
                "name": batch.name,
                "total_jobs": batch.total_jobs,
                "type_count": len(ids),
            },
        )
        return batch

    def dispatch_corporation_medals(
        self,
        corporation_id: int,
        batch_id: Optional[str] = None,
    ) -> SyncJob:
        return self.enqueue(
            corporation_medals.JOB_TYPE,
            context={"corporation_id": corporation_id},
            batch_id=batch_id,
            tags=["corporation", f"corporation_id:{corporation_id}"],
        )

    def claim_next_job(
        self,
        worker_id: str,
        job_types: Optional[List[str]] = None,
    ) -> Optional[SyncJob]:
        """
        Atomically move one due QUEUED job to RUNNING.

        The UPDATE only matches while the row is still QUEUED, so of two
        workers racing for the same row exactly one sees a rowcount of 1.

        Returns:
            The claimed SyncJob, or None if nothing is due
        """
        now = self._now()
        query = (
            self.db.query(SyncJob.job_id)
            .filter(
                SyncJob.status == JobStatus.QUEUED,
                SyncJob.available_at <= now,
            )
        )
        if job_types:
            query = query.filter(SyncJob.job_type.in_(job_types))

        candidates = (
            query
            .order_by(SyncJob.available_at.asc(), SyncJob.created_at.asc())
            .limit(CLAIM_CANDIDATES)
            .all()
        )

        for (job_id,) in candidates:
            claimed = (
                self.db.query(SyncJob)
                .filter(
                    SyncJob.job_id == job_id,
                    SyncJob.status == JobStatus.QUEUED,
                )
                .update(
                    {
                        SyncJob.status: JobStatus.RUNNING,
                        SyncJob.started_at: now,
                        SyncJob.claimed_by: worker_id,
                    },
                    synchronize_session=False,
                )
            )
            if claimed == 1:
                job = self.db.get(SyncJob, job_id, populate_existing=True)
                logger.debug(
                    "job.claimed",
                    extra={"job_id": job_id, "worker_id": worker_id},
                )
                return job

        return None

    def get_job(self, job_id: str) -> Optional[SyncJob]:
        return self.db.query(SyncJob).filter(SyncJob.job_id == job_id).first()

    def get_batch(self, batch_id: str) -> Optional[SyncBatch]:
        return self.db.query(SyncBatch).filter(SyncBatch.batch_id == batch_id).first()

    def cancel_batch(self, batch_id: str) -> SyncBatch:
        """
        Set the batch's cancelled flag. Cancelling twice is a no-op.

        Running jobs notice at their next check; queued jobs stop as soon
        as they are claimed.

        Raises:
            BatchNotFoundError: If batch not found
        """
        batch = self.get_batch(batch_id)
        if not batch:
            raise BatchNotFoundError(f"Batch {batch_id} not found")

        if batch.cancel():
            self.db.flush()
            logger.info(
                "batch.cancelled",
                extra={
                    "batch_id": batch_id,
                    "completed_jobs": batch.completed_jobs,
                    "total_jobs": batch.total_jobs,
                },
            )
        return batch

    def _execution_timeout(self, job_type: str) -> int:
        if job_type == market_history.JOB_TYPE:
            return self.settings.market_history.execution_timeout_seconds
        return self.settings.worker.default_execution_timeout_seconds

    def recover_stale_jobs(
        self,
        job_types: Optional[List[str]] = None,
    ) -> int:
        """
        Requeue jobs stuck in RUNNING longer than their execution timeout.

        Each recovery uses up one attempt. A job whose budget is spent by
        the recovery goes to the dead letter queue instead of the queue.

        Args:
            job_types: Job types to check (default: all known types)

        Returns:
            Number of jobs recovered (requeued or dead-lettered)
        """
        now = self._now()
        types = job_types or [market_history.JOB_TYPE, corporation_medals.JOB_TYPE]

        requeued = 0
        dead_lettered = 0
        for job_type in types:
            cutoff = now - timedelta(seconds=self._execution_timeout(job_type))
            stale = (
                SyncJob.job_type == job_type,
                SyncJob.status == JobStatus.RUNNING,
                SyncJob.started_at < cutoff,
            )
            spent = SyncJob.attempts + 1 >= SyncJob.max_attempts

            dead_lettered += (
                self.db.query(SyncJob)
                .filter(*stale, spent)
                .update(
                    {
                        SyncJob.status: JobStatus.DEAD_LETTER,
                        SyncJob.attempts: SyncJob.attempts + 1,
                        SyncJob.claimed_by: None,
                        SyncJob.completed_at: now,
                        SyncJob.error_code: STALE_ERROR_CODE,
                        SyncJob.error_message: "Execution timeout exceeded, attempts exhausted",
                    },
                    synchronize_session=False,
                )
            )
            requeued += (
                self.db.query(SyncJob)
                .filter(*stale)
                .update(
                    {
                        SyncJob.status: JobStatus.QUEUED,
                        SyncJob.attempts: SyncJob.attempts + 1,
                        SyncJob.available_at: now,
                        SyncJob.started_at: None,
                        SyncJob.claimed_by: None,
                    },
                    synchronize_session=False,
                )
            )

        recovered = requeued + dead_lettered
        if recovered:
            self.db.expire_all()
            logger.warning(
                "job.stale_recovered",
                extra={
                    "requeued": requeued,
                    "dead_lettered": dead_lettered,
                    "job_types": types,
                },
            )
        return recovered

    def get_dead_letter_jobs(self, limit: int = 100) -> List[SyncJob]:
        return (
            self.db.query(SyncJob)
            .filter(SyncJob.status == JobStatus.DEAD_LETTER)
            .order_by(SyncJob.completed_at.desc())
            .limit(limit)
            .all()
        )

    def requeue_from_dlq(self, job_id: str) -> SyncJob:
        """
        Requeue a dead-lettered job with a fresh attempt budget.

        The remaining queue is kept, so work already done is not repeated.

        Raises:
            JobNotFoundError: If job not found
            ValueError: If job is not in dead letter status
        """
        job = self.get_job(job_id)
        if not job:
            raise JobNotFoundError(f"Job {job_id} not found")

        if job.status != JobStatus.DEAD_LETTER:
            raise ValueError(
                f"Job {job_id} is not in dead letter queue (status: {job.status.value})"
            )

        job.mark_released(available_at=self._now(), attempts=0)
        job.completed_at = None
        job.job_metadata = {
            **(job.job_metadata or {}),
            "requeued_from_dlq": True,
            "original_error": job.error_message,
        }
        job.error_code = None
        job.error_message = None
        self.db.flush()

        logger.info(
            "job.dlq_requeue",
            extra={"job_id": job_id, "job_type": job.job_type},
        )
        return job
