"""
Retry policy for released sync jobs.

A job that cannot make progress releases itself with a delay instead of
blocking. Each release is either counted against the job's attempt budget
or not:

- Upstream outage / error-limited / connection failure -> counted, fixed
  outage cooldown
- Rate-limit wait -> counted only when throttle_counts_as_attempt is set
- Counted releases reaching max_attempts -> dead letter queue

Uncounted releases never exhaust the budget.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Optional

from esisync.config.sync_settings import RetrySettings

if TYPE_CHECKING:
    from esisync.ingestion.jobs.base import JobReleased

logger = logging.getLogger(__name__)

# Retry configuration constants
MAX_ATTEMPTS = 100
OUTAGE_COOLDOWN_SECONDS = 120


class ErrorCategory(str, Enum):
    """Why a job was released or failed."""
    RATE_LIMITED = "rate_limited"  # Shared window full - wait for reset
    UPSTREAM_OUTAGE = "upstream_outage"  # 502/503/504 - cooldown
    ERROR_LIMITED = "error_limited"  # 420 or local error budget spent - cooldown
    CONNECTION = "connection"  # Timeouts, network errors - cooldown
    NOT_FOUND = "not_found"  # 404 - ban or fail, never retried
    UNCLASSIFIED = "unclassified"  # Unexpected exception - fail


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy configuration.

    Attributes:
        max_attempts: Counted releases before DLQ
        outage_cooldown_seconds: Delay after a transient upstream failure
        throttle_counts_as_attempt: Whether rate-limit waits use up attempts
    """
    max_attempts: int = MAX_ATTEMPTS
    outage_cooldown_seconds: float = OUTAGE_COOLDOWN_SECONDS
    throttle_counts_as_attempt: bool = True

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            outage_cooldown_seconds=settings.outage_cooldown_seconds,
            throttle_counts_as_attempt=settings.throttle_counts_as_attempt,
        )


@dataclass
class RetryDecision:
    """
    Result of retry evaluation.

    Attributes:
        should_retry: Whether the job goes back to the queue
        delay_seconds: Seconds to wait before the job is claimable again
        available_at: Absolute time the job becomes claimable
        exhausted: Whether the attempt budget is spent (move to DLQ)
        counts_as_attempt: Whether this release consumed an attempt
        attempts: Attempt count after this release
        reason: Error category that triggered the release
    """
    should_retry: bool
    delay_seconds: float
    available_at: Optional[datetime]
    exhausted: bool
    counts_as_attempt: bool
    attempts: int
    reason: str


def should_retry(
    outcome: "JobReleased",
    attempts: int,
    policy: RetryPolicy = RetryPolicy(),
    now: Optional[datetime] = None,
) -> RetryDecision:
    """
    Decide what happens to a released job.

    Args:
        outcome: The release returned by the job handler
        attempts: Counted attempts before this release
        policy: Retry policy configuration
        now: Current time (defaults to utcnow)

    Returns:
        RetryDecision with requeue/DLQ recommendation
    """
    reason = getattr(outcome.reason, "value", outcome.reason)
    counted = bool(outcome.counts_as_attempt)
    attempts_after = attempts + 1 if counted else attempts

    if counted and attempts_after >= policy.max_attempts:
        return RetryDecision(
            should_retry=False,
            delay_seconds=0,
            available_at=None,
            exhausted=True,
            counts_as_attempt=True,
            attempts=attempts_after,
            reason=reason,
        )

    delay = max(float(outcome.delay_seconds), 0.0)
    current = now or datetime.now(timezone.utc)

    return RetryDecision(
        should_retry=True,
        delay_seconds=delay,
        available_at=current + timedelta(seconds=delay),
        exhausted=False,
        counts_as_attempt=counted,
        attempts=attempts_after,
        reason=reason,
    )


def log_retry_decision(
    job_id: str,
    job_type: str,
    decision: RetryDecision,
    max_attempts: int,
) -> None:
    """
    Log retry decision for observability.

    Args:
        job_id: Job identifier
        job_type: Handler name
        decision: Retry decision made
        max_attempts: Attempt budget of the job
    """
    log_extra = {
        "job_id": job_id,
        "job_type": job_type,
        "reason": decision.reason,
        "should_retry": decision.should_retry,
        "delay_seconds": decision.delay_seconds,
        "counts_as_attempt": decision.counts_as_attempt,
        "attempts": decision.attempts,
        "max_attempts": max_attempts,
        "exhausted": decision.exhausted,
    }

    if decision.available_at:
        log_extra["available_at"] = decision.available_at.isoformat()

    if decision.exhausted:
        logger.warning("Job moved to dead letter queue", extra=log_extra)
    else:
        logger.info("Job scheduled for retry", extra=log_extra)
