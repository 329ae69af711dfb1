"""
Job runner for sync orchestration.

Executes sync jobs:
- Claims due jobs through the dispatcher
- Hands each job to the handler registered for its job_type
- Applies the handler's outcome: success, release, cancel, fail
- Dead-letters jobs whose attempt budget is spent

Handlers return expected branches as outcomes. Anything they raise is
treated as unclassified: the job is failed, never retried.
"""

import logging
from typing import Dict, Iterable, Optional

from sqlalchemy.orm import Session

from esisync.config.sync_settings import SyncSettings
from esisync.ingestion.bans import BanRegistry
from esisync.ingestion.batch import increment_completed_jobs
from esisync.ingestion.fetch import FetchAttempt
from esisync.ingestion.jobs.base import (
    JobCancelled,
    JobCompleted,
    JobContext,
    JobFailed,
    JobOutcome,
    JobReleased,
    SyncJobHandler,
)
from esisync.ingestion.jobs.corporation_medals import CorporationMedalsJob
from esisync.ingestion.jobs.dispatcher import (
    JobDispatcher,
    JobNotFoundError,
    UnknownJobTypeError,
)
from esisync.ingestion.jobs.market_history import MarketHistoryJob
from esisync.ingestion.jobs.models import SyncJob, TaskState
from esisync.ingestion.jobs.retry import (
    ErrorCategory,
    RetryPolicy,
    should_retry,
    log_retry_decision,
)
from esisync.ingestion.rate_limiter import RateLimiter
from esisync.integrations.esi.client import EsiClient

logger = logging.getLogger(__name__)


class JobRunner:
    """
    Executes sync jobs by calling their handlers.

    Responsibilities:
    - Execute claimed jobs
    - Requeue released jobs according to the retry policy
    - Move jobs to DLQ after max attempts
    - Emit lifecycle log events for all state transitions
    """

    def __init__(
        self,
        db_session: Session,
        handlers: Iterable[SyncJobHandler],
        retry_policy: RetryPolicy = RetryPolicy(),
        settings: Optional[SyncSettings] = None,
    ):
        """
        Initialize job runner.

        Args:
            db_session: Database session
            handlers: Job handlers, keyed internally by their job_type
            retry_policy: Retry policy configuration
            settings: Sync settings passed on to the dispatcher
        """
        self.db = db_session
        self.handlers: Dict[str, SyncJobHandler] = {h.job_type: h for h in handlers}
        self.retry_policy = retry_policy
        self.dispatcher = JobDispatcher(db_session, settings)

    def _get_handler(self, job_type: str) -> SyncJobHandler:
        handler = self.handlers.get(job_type)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def _log_job_started(self, job: SyncJob) -> None:
        """Log job.started event."""
        logger.info(
            "job.started",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "batch_id": job.batch_id,
                "attempts": job.attempts,
                "remaining": len(job.remaining_ids or []),
                "tags": job.tags,
            },
        )

    def _log_job_completed(self, job: SyncJob, outcome: JobCompleted) -> None:
        """Log job.completed event."""
        logger.info(
            "job.completed",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "batch_id": job.batch_id,
                "processed": outcome.processed,
                "attempts": job.attempts,
            },
        )

    def _log_job_released(self, job: SyncJob, outcome: JobReleased) -> None:
        """Log job.released event."""
        logger.info(
            "job.released",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "reason": getattr(outcome.reason, "value", outcome.reason),
                "delay_seconds": outcome.delay_seconds,
                "counts_as_attempt": outcome.counts_as_attempt,
                "attempts": job.attempts,
                "remaining": len(job.remaining_ids or []),
            },
        )

    def _log_job_cancelled(self, job: SyncJob) -> None:
        """Log job.cancelled event."""
        logger.info(
            "job.cancelled",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "batch_id": job.batch_id,
                "remaining": len(job.remaining_ids or []),
            },
        )

    def _log_job_failed(self, job: SyncJob) -> None:
        """Log job.failed event."""
        logger.error(
            "job.failed",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "error_code": job.error_code,
                "error_message": job.error_message,
                "attempts": job.attempts,
            },
        )

    def _log_job_dead_lettered(self, job: SyncJob) -> None:
        """Log job.dead_lettered event."""
        logger.error(
            "job.dead_lettered",
            extra={
                "job_id": job.job_id,
                "job_type": job.job_type,
                "error_code": job.error_code,
                "error_message": job.error_message,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
            },
        )

    async def execute_job(self, job: SyncJob) -> JobOutcome:
        """
        Execute a single claimed job and persist the result.

        Args:
            job: SyncJob in RUNNING status

        Returns:
            The outcome that was applied
        """
        state = job.to_state()
        self._log_job_started(job)

        try:
            handler = self._get_handler(job.job_type)
            outcome = await handler.handle(
                JobContext(
                    job_id=job.job_id,
                    job_type=job.job_type,
                    state=state,
                    db=self.db,
                )
            )
        except Exception as e:
            logger.error(
                "Unexpected error executing job",
                extra={
                    "job_id": job.job_id,
                    "job_type": job.job_type,
                    "error": str(e),
                },
                exc_info=True,
            )
            if not self.db.is_active:
                # A failed flush left the transaction unusable: discard the
                # handler's partial writes and fail the job from its claimed state
                job = self._reload_after_rollback(job)
                state = job.to_state()
            outcome = JobFailed(
                error_code=ErrorCategory.UNCLASSIFIED.value,
                message=f"Unexpected error: {str(e)[:500]}",
            )

        self._apply_outcome(job, state, outcome)
        return outcome

    def _reload_after_rollback(self, job: SyncJob) -> SyncJob:
        job_id = job.job_id
        self.db.rollback()
        reloaded = self.db.get(SyncJob, job_id, populate_existing=True)
        if reloaded is None:
            raise JobNotFoundError(f"Job {job_id} vanished after rollback")
        return reloaded

    def _apply_outcome(self, job: SyncJob, state: TaskState, outcome: JobOutcome) -> None:
        job.apply_state(state)

        if isinstance(outcome, JobCompleted):
            job.mark_success(metadata={"processed": outcome.processed})
            if job.batch_id:
                increment_completed_jobs(self.db, job.batch_id)
            self.db.flush()
            self._log_job_completed(job, outcome)

        elif isinstance(outcome, JobCancelled):
            job.mark_cancelled()
            self.db.flush()
            self._log_job_cancelled(job)

        elif isinstance(outcome, JobReleased):
            self._handle_release(job, state, outcome)

        elif isinstance(outcome, JobFailed):
            job.mark_failed(outcome.error_code, outcome.message)
            self.db.flush()
            self._log_job_failed(job)

        else:
            raise TypeError(f"Unsupported job outcome: {outcome!r}")

    def _handle_release(self, job: SyncJob, state: TaskState, outcome: JobReleased) -> None:
        """
        Requeue a released job or dead-letter it when out of attempts.

        The retry budget is the job's own max_attempts; the rest of the
        policy comes from the runner.
        """
        policy = RetryPolicy(
            max_attempts=job.max_attempts or self.retry_policy.max_attempts,
            outage_cooldown_seconds=self.retry_policy.outage_cooldown_seconds,
            throttle_counts_as_attempt=self.retry_policy.throttle_counts_as_attempt,
        )
        decision = should_retry(outcome, job.attempts or 0, policy)

        log_retry_decision(
            job_id=job.job_id,
            job_type=job.job_type,
            decision=decision,
            max_attempts=policy.max_attempts,
        )

        if decision.exhausted:
            job.attempts = decision.attempts
            job.mark_dead_letter(
                error_code=decision.reason,
                error_message=outcome.message or f"Attempts exhausted ({decision.attempts}/{policy.max_attempts})",
            )
            self.db.flush()
            self._log_job_dead_lettered(job)
            return

        self.dispatcher.release(
            job,
            state,
            delay_seconds=decision.delay_seconds,
            attempts=decision.attempts,
        )
        self._log_job_released(job, outcome)

    async def process_due_jobs(
        self,
        worker_id: str,
        limit: int = 10,
    ) -> int:
        """
        Claim and execute up to `limit` due jobs, committing after each.

        Args:
            worker_id: Identifier recorded on claimed jobs
            limit: Maximum jobs to process in this call

        Returns:
            Number of jobs processed
        """
        processed = 0
        job_types = list(self.handlers)

        for _ in range(limit):
            job = self.dispatcher.claim_next_job(worker_id, job_types=job_types)
            if job is None:
                break
            self.db.commit()

            await self.execute_job(job)
            self.db.commit()
            processed += 1

        if not processed:
            logger.debug("No due jobs to process")
        return processed


def build_default_handlers(
    client: EsiClient,
    store,
    settings: Optional[SyncSettings] = None,
) -> list[SyncJobHandler]:
    """
    Wire the market history and corporation medals handlers.

    Args:
        client: Shared ESI client
        store: Shared store implementing both counter and TTL ports
        settings: Sync settings (defaults if omitted)
    """
    settings = settings or SyncSettings()
    policy = RetryPolicy.from_settings(settings.retry)
    fetcher = FetchAttempt(client)

    return [
        MarketHistoryJob(
            fetcher=fetcher,
            rate_limiter=RateLimiter(store),
            bans=BanRegistry(store),
            settings=settings.market_history,
            retry_policy=policy,
        ),
        CorporationMedalsJob(fetcher=fetcher, retry_policy=policy),
    ]
