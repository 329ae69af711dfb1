"""
Sync worker - long-running background process executing queued sync jobs.

Each cycle:
1. Recovers stale RUNNING jobs (crash recovery)
2. Claims and executes due jobs, committing after each one

CONSTRAINTS:
- Driven by Postgres job state, any number of workers may run side by side
- Rate limit windows and bans are shared through Redis (REDIS_URL)
- Graceful shutdown on SIGTERM/SIGINT
- Survives worker restarts (progress persisted in DB)

Usage:
    python -m esisync.workers.sync_worker
"""

import os
import sys
import signal
import socket
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from esisync.config.sync_settings import SyncSettings, get_sync_settings
from esisync.database.session import session_scope
from esisync.ingestion.jobs.dispatcher import JobDispatcher
from esisync.ingestion.jobs.retry import RetryPolicy
from esisync.ingestion.jobs.runner import JobRunner, build_default_handlers
from esisync.ingestion.shared_store import get_shared_store
from esisync.integrations.esi.client import EsiClient, get_esi_client

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class WorkerStats:
    """Cumulative statistics for the worker process lifetime."""

    cycles: int = 0
    jobs_executed: int = 0
    jobs_recovered: int = 0
    errors: int = 0
    started_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    def to_dict(self) -> dict:
        uptime = (
            datetime.now(timezone.utc) - self.started_at
        ).total_seconds()
        return {
            "cycles": self.cycles,
            "jobs_executed": self.jobs_executed,
            "jobs_recovered": self.jobs_recovered,
            "errors": self.errors,
            "uptime_seconds": round(uptime, 2),
        }


def default_worker_id() -> str:
    return os.getenv("ESISYNC_WORKER_ID") or f"{socket.gethostname()}:{os.getpid()}"


async def run_cycle(
    db_session: Session,
    client: EsiClient,
    settings: SyncSettings,
    stats: WorkerStats,
    worker_id: str,
) -> None:
    """
    Run one worker cycle: recover stale jobs, execute due jobs.
    """
    try:
        # Phase 1: Recover stale RUNNING jobs (crash recovery)
        recovered = JobDispatcher(db_session, settings).recover_stale_jobs()
        db_session.commit()
        stats.jobs_recovered += recovered

        # Phase 2: Execute due jobs
        runner = JobRunner(
            db_session,
            handlers=build_default_handlers(client, get_shared_store(), settings),
            retry_policy=RetryPolicy.from_settings(settings.retry),
            settings=settings,
        )
        executed = await runner.process_due_jobs(
            worker_id=worker_id,
            limit=settings.worker.max_jobs_per_cycle,
        )
        stats.jobs_executed += executed
        stats.cycles += 1

        if executed > 0 or recovered > 0:
            logger.info(
                "sync_worker.cycle_completed",
                extra={
                    "cycle": stats.cycles,
                    "jobs_executed": executed,
                    "jobs_recovered": recovered,
                },
            )

    except Exception:
        stats.errors += 1
        db_session.rollback()
        logger.exception(
            "sync_worker.cycle_error",
            extra={"cycle": stats.cycles},
        )


async def run_worker(settings: SyncSettings | None = None) -> None:
    """
    Main worker loop. Runs until SIGTERM/SIGINT.

    Creates a fresh DB session each cycle for connection health. One ESI
    client is shared by every cycle so its error budget tracking persists.
    """
    settings = settings or get_sync_settings()
    stats = WorkerStats()
    worker_id = default_worker_id()
    shutdown_event = asyncio.Event()

    def _handle_signal(sig, _frame):
        logger.info("Received signal %s, shutting down gracefully", sig)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    poll_interval = settings.worker.poll_interval_seconds
    logger.info(
        "Sync worker starting",
        extra={
            "worker_id": worker_id,
            "poll_interval_seconds": poll_interval,
            "max_jobs_per_cycle": settings.worker.max_jobs_per_cycle,
        },
    )

    client = get_esi_client(
        base_url=os.getenv("ESI_BASE_URL") or settings.esi.base_url,
        datasource=settings.esi.datasource,
        timeout=settings.esi.timeout_seconds,
        connect_timeout=settings.esi.connect_timeout_seconds,
        error_limit_floor=settings.esi.error_limit_floor,
    )

    try:
        while not shutdown_event.is_set():
            with session_scope() as session:
                await run_cycle(session, client, settings, stats, worker_id)

            try:
                await asyncio.wait_for(
                    shutdown_event.wait(),
                    timeout=poll_interval,
                )
            except asyncio.TimeoutError:
                pass  # Normal: timeout = no shutdown, continue loop
    finally:
        await client.close()

    logger.info("Sync worker stopped", extra=stats.to_dict())


def main():
    """Entry point for running worker from command line."""
    try:
        asyncio.run(run_worker())
        sys.exit(0)
    except Exception as e:
        logger.error("Sync worker crashed", extra={"error": str(e)})
        sys.exit(1)


if __name__ == "__main__":
    main()
