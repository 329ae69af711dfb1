"""
Shared contract for sync job handlers.

A handler receives a JobContext and returns exactly one JobOutcome. It
never touches the job row itself: the runner turns the outcome into a
status transition, a release, or a dead-letter.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from esisync.ingestion.batch import is_batch_cancelled
from esisync.ingestion.jobs.models import TaskState
from esisync.ingestion.jobs.retry import ErrorCategory


@dataclass(frozen=True)
class JobCompleted:
    processed: int = 0


@dataclass(frozen=True)
class JobReleased:
    delay_seconds: float
    reason: ErrorCategory
    counts_as_attempt: bool = True
    message: str = ""


@dataclass(frozen=True)
class JobCancelled:
    pass


@dataclass(frozen=True)
class JobFailed:
    error_code: str
    message: str = ""


JobOutcome = Union[JobCompleted, JobReleased, JobCancelled, JobFailed]


@dataclass
class JobContext:
    """What a handler needs to run one task."""

    job_id: str
    job_type: str
    state: TaskState
    db: Session

    @property
    def batch_id(self) -> Optional[str]:
        return self.state.batch_id

    def is_batch_cancelled(self) -> bool:
        return is_batch_cancelled(self.db, self.state.batch_id)


class SyncJobHandler:
    """Base class for job handlers, registered by job_type."""

    job_type: str = ""

    async def handle(self, context: JobContext) -> JobOutcome:
        raise NotImplementedError
