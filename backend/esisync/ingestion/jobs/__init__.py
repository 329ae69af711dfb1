"""Job orchestration for sync pipelines."""

from esisync.ingestion.jobs.models import (
    SyncJob,
    JobStatus,
    TaskState,
)
from esisync.ingestion.jobs.base import (
    JobCancelled,
    JobCompleted,
    JobContext,
    JobFailed,
    JobReleased,
    SyncJobHandler,
)
from esisync.ingestion.jobs.dispatcher import (
    JobDispatcher,
    SyncJobError,
    UnknownJobTypeError,
    JobNotFoundError,
    BatchNotFoundError,
)
from esisync.ingestion.jobs.runner import JobRunner, build_default_handlers
from esisync.ingestion.jobs.retry import ErrorCategory, RetryPolicy, should_retry

__all__ = [
    "SyncJob",
    "JobStatus",
    "TaskState",
    "JobCancelled",
    "JobCompleted",
    "JobContext",
    "JobFailed",
    "JobReleased",
    "SyncJobHandler",
    "JobDispatcher",
    "SyncJobError",
    "UnknownJobTypeError",
    "JobNotFoundError",
    "BatchNotFoundError",
    "JobRunner",
    "build_default_handlers",
    "ErrorCategory",
    "RetryPolicy",
    "should_retry",
]
