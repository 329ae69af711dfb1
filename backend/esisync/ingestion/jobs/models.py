"""
Sync job model for the task queue.

Defines the SyncJob model that tracks one resumable unit of sync work:
- Status tracking (queued|running|success|cancelled|failed|dead_letter)
- Ordered queue of remaining resource identifiers, persisted across releases
- Attempt counting against a per-task budget
- Optional batch membership for cooperative cancellation
"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Column,
    String,
    Integer,
    Enum,
    DateTime,
    Text,
    Index,
    ForeignKey,
)

from esisync.db_base import Base
from esisync.models.base import TimestampMixin, JSONType


class JobStatus(str, enum.Enum):
    """Sync job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


def _dedupe(ids: List[Any]) -> List[Any]:
    seen = set()
    ordered = []
    for resource_id in ids:
        if resource_id not in seen:
            seen.add(resource_id)
            ordered.append(resource_id)
    return ordered


@dataclass
class TaskState:
    """
    In-flight view of a task handed to a job handler.

    The handler consumes remaining_ids from the head; whatever is left when
    it returns is written back to the row unchanged in order.
    """

    context: Dict[str, Any] = field(default_factory=dict)
    remaining_ids: List[Any] = field(default_factory=list)
    attempts: int = 0
    max_attempts: int = 100
    batch_id: Optional[str] = None

    def __post_init__(self):
        self.remaining_ids = _dedupe(list(self.remaining_ids))

    @property
    def head(self) -> Optional[Any]:
        return self.remaining_ids[0] if self.remaining_ids else None

    def drop_head(self) -> Any:
        return self.remaining_ids.pop(0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": dict(self.context),
            "remaining_ids": list(self.remaining_ids),
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "batch_id": self.batch_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskState":
        return cls(
            context=dict(data.get("context") or {}),
            remaining_ids=list(data.get("remaining_ids") or []),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 100)),
            batch_id=data.get("batch_id"),
        )


class SyncJob(Base, TimestampMixin):
    """
    A queued unit of sync work.

    Attributes:
        job_id: Primary key (UUID)
        job_type: Handler name (market_history, corporation_medals)
        status: Current job status
        context: Job parameters (region_id, corporation_id)
        remaining_ids: Identifiers still to process, in order
        attempts: Counted releases so far
        max_attempts: Budget after which the job is dead-lettered
        batch_id: Owning batch, if any
        available_at: Earliest time the job may be claimed
        claimed_by: Worker that claimed the job last
        started_at: When the current run started
        completed_at: When the job reached a terminal status
        error_code: Error classification for failed/dead_letter jobs
        error_message: Last error message
        job_metadata: Tags (public, market, batch_size:N, batch_current:i)
    """

    __tablename__ = "sync_jobs"

    job_id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )

    job_type = Column(
        String(100),
        nullable=False,
        index=True,
        comment="Handler name"
    )

    status = Column(
        Enum(JobStatus),
        default=JobStatus.QUEUED,
        nullable=False,
        index=True,
        comment="Job status: queued, running, success, cancelled, failed, dead_letter"
    )

    # Work description
    context = Column(JSONType, nullable=False, default=dict)
    remaining_ids = Column(JSONType, nullable=False, default=list)

    # Retry tracking
    attempts = Column(
        Integer,
        default=0,
        nullable=False,
        comment="Counted releases so far"
    )
    max_attempts = Column(
        Integer,
        default=100,
        nullable=False,
        comment="Attempts before moving to dead letter"
    )

    batch_id = Column(
        String(255),
        ForeignKey("sync_batches.batch_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Scheduling
    available_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        comment="Earliest time the job may be claimed"
    )
    claimed_by = Column(String(255), nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_code = Column(
        String(50),
        nullable=True,
        index=True,
        comment="Error classification (rate_limited, upstream_outage, not_found, unclassified)"
    )

    # Timestamps for lifecycle
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    job_metadata = Column(
        JSONType,
        nullable=True,
        default=dict,
        comment="Job tags"
    )

    __table_args__ = (
        Index("ix_sync_jobs_status_available", "status", "available_at"),
        Index("ix_sync_jobs_status_started", "status", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncJob("
            f"job_id={self.job_id}, "
            f"job_type={self.job_type}, "
            f"status={self.status.value if self.status else None}, "
            f"attempts={self.attempts}"
            f")>"
        )

    @property
    def tags(self) -> List[str]:
        return list((self.job_metadata or {}).get("tags", []))

    def to_state(self) -> TaskState:
        return TaskState(
            context=dict(self.context or {}),
            remaining_ids=list(self.remaining_ids or []),
            attempts=self.attempts or 0,
            max_attempts=self.max_attempts or 100,
            batch_id=self.batch_id,
        )

    def apply_state(self, state: TaskState) -> None:
        """Write the handler's progress back; JSON columns are reassigned, not mutated."""
        self.remaining_ids = list(state.remaining_ids)
        self.context = dict(state.context)

    def mark_released(self, available_at: datetime, attempts: int) -> None:
        """Return a running job to the queue."""
        self.status = JobStatus.QUEUED
        self.available_at = available_at
        self.attempts = attempts
        self.started_at = None
        self.claimed_by = None

    def mark_success(self, metadata: dict | None = None) -> None:
        self.status = JobStatus.SUCCESS
        self.completed_at = datetime.now(timezone.utc)
        self.error_code = None
        self.error_message = None
        if metadata:
            self.job_metadata = {**(self.job_metadata or {}), **metadata}

    def mark_cancelled(self) -> None:
        self.status = JobStatus.CANCELLED
        self.completed_at = datetime.now(timezone.utc)

    def mark_failed(self, error_code: str, error_message: str) -> None:
        """Mark job as failed; failed jobs are not retried automatically."""
        self.status = JobStatus.FAILED
        self.error_code = error_code
        self.error_message = error_message
        self.completed_at = datetime.now(timezone.utc)

    def mark_dead_letter(self, error_code: str, error_message: str) -> None:
        """Move job to dead letter queue after exhausting its attempts."""
        self.status = JobStatus.DEAD_LETTER
        self.error_code = error_code
        self.error_message = error_message
        self.completed_at = datetime.now(timezone.utc)
