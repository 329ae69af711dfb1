"""
Batch state shared by every task spawned from one sync run.

A batch only carries what all of its tasks need to see: whether the run
was cancelled, and how far it has got. The cancelled flag is one-way.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Integer, String
from sqlalchemy.orm import Session

from esisync.db_base import Base
from esisync.models.base import TimestampMixin


class SyncBatch(Base, TimestampMixin):
    """
    Groups the tasks of one logical sync run.

    Attributes:
        batch_id: Primary key (UUID)
        name: Human-readable label, e.g. "market_history:10000002"
        total_jobs: Number of tasks dispatched into the batch
        completed_jobs: Number of tasks that finished successfully
        cancelled: Set once by cancel(), never cleared
        cancelled_at: When the batch was cancelled
    """

    __tablename__ = "sync_batches"

    batch_id = Column(
        String(255),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="Primary key (UUID)"
    )
    name = Column(String(255), nullable=False, default="", comment="Batch label")
    total_jobs = Column(Integer, nullable=False, default=0)
    completed_jobs = Column(Integer, nullable=False, default=0)
    cancelled = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Cooperative cancellation flag (monotonic)"
    )
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<SyncBatch(batch_id={self.batch_id}, name={self.name}, "
            f"completed={self.completed_jobs}/{self.total_jobs}, "
            f"cancelled={self.cancelled})>"
        )

    @property
    def is_cancelled(self) -> bool:
        return bool(self.cancelled)

    @property
    def is_finished(self) -> bool:
        return self.total_jobs > 0 and self.completed_jobs >= self.total_jobs

    def cancel(self) -> bool:
        """
        Mark the batch cancelled.

        Returns:
            True if this call flipped the flag, False if it was already set
        """
        if self.cancelled:
            return False
        self.cancelled = True
        self.cancelled_at = datetime.now(timezone.utc)
        return True


def is_batch_cancelled(db_session: Session, batch_id: Optional[str]) -> bool:
    """
    Read the cancelled flag straight from the database.

    Tasks without a batch can never be cancelled this way.
    """
    if not batch_id:
        return False
    cancelled = (
        db_session.query(SyncBatch.cancelled)
        .filter(SyncBatch.batch_id == batch_id)
        .scalar()
    )
    return bool(cancelled)


def increment_completed_jobs(db_session: Session, batch_id: str) -> None:
    """Atomically bump completed_jobs by one."""
    (
        db_session.query(SyncBatch)
        .filter(SyncBatch.batch_id == batch_id)
        .update(
            {SyncBatch.completed_jobs: SyncBatch.completed_jobs + 1},
            synchronize_session=False,
        )
    )
