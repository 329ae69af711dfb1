"""
Tests for dispatching, claiming, running and retiring sync jobs.

Validates:
- Dispatch splits type ids into tagged jobs under one batch
- Claiming is exclusive and honours available_at
- Runner outcome mapping: success, release, cancel, fail, dead letter
- Stale RUNNING jobs are recovered
- DLQ requeue resets the attempt budget
"""

from datetime import datetime, timezone, timedelta

import pytest
from unittest.mock import AsyncMock, MagicMock

from esisync.config.sync_settings import MarketHistorySettings, SyncSettings
from esisync.ingestion.bans import BanRegistry
from esisync.ingestion.fetch import FetchSucceeded, PageResult, RetryableFailure
from esisync.ingestion.jobs.base import (
    JobCompleted,
    JobFailed,
    JobReleased,
    SyncJobHandler,
)
from esisync.ingestion.jobs.corporation_medals import CorporationMedalsJob
from esisync.ingestion.jobs.dispatcher import (
    STALE_ERROR_CODE,
    BatchNotFoundError,
    JobDispatcher,
    JobNotFoundError,
    UnknownJobTypeError,
)
from esisync.ingestion.jobs.market_history import MarketHistoryJob
from esisync.ingestion.jobs.models import JobStatus, SyncJob, TaskState
from esisync.ingestion.jobs.retry import ErrorCategory, RetryPolicy
from esisync.ingestion.jobs.runner import JobRunner, build_default_handlers
from esisync.ingestion.rate_limiter import RateLimiter
from esisync.models import CorporationMedal, MarketPrice


def _ok(items=None):
    return FetchSucceeded(PageResult(items=items or [], page=1, total_pages=1))


def _fetcher(outcome_for):
    fetcher = MagicMock()

    async def fetch(endpoint, path_params=None, query=None, page=1):
        return outcome_for(query["type_id"])

    fetcher.fetch = AsyncMock(side_effect=fetch)
    return fetcher


class _StaticHandler(SyncJobHandler):
    """Handler returning a fixed outcome, or raising."""

    def __init__(self, job_type, outcome=None, error=None):
        self.job_type = job_type
        self.outcome = outcome
        self.error = error
        self.calls = 0

    async def handle(self, context):
        self.calls += 1
        if self.error:
            raise self.error
        return self.outcome


@pytest.fixture
def dispatcher(db_session):
    return JobDispatcher(db_session)


def _make_due(db_session, job):
    job.available_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    db_session.flush()


class TestDispatch:

    def test_enqueue_defaults(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [3, 1, 3, 2])

        assert job.status == JobStatus.QUEUED
        assert job.remaining_ids == [3, 1, 2]
        assert job.attempts == 0
        assert job.max_attempts == 100

    def test_dispatch_market_history_chunks_and_tags(self, db_session, dispatcher):
        batch = dispatcher.dispatch_market_history(list(range(1, 251)), chunk_size=100)

        jobs = (
            db_session.query(SyncJob)
            .filter(SyncJob.batch_id == batch.batch_id)
            .all()
        )
        jobs.sort(key=lambda j: j.remaining_ids[0])

        assert batch.total_jobs == 3
        assert [len(j.remaining_ids) for j in jobs] == [100, 100, 50]
        assert all(j.context == {"region_id": 10000002} for j in jobs)
        assert jobs[0].tags == ["public", "market", "batch_size:3", "batch_current:1"]
        assert jobs[2].tags[-1] == "batch_current:3"

    def test_dispatch_uses_settings_region(self, db_session):
        settings = SyncSettings(market_history=MarketHistorySettings(region_id=10000043))
        batch = JobDispatcher(db_session, settings).dispatch_market_history([1])

        job = db_session.query(SyncJob).filter_by(batch_id=batch.batch_id).one()
        assert job.context == {"region_id": 10000043}

    def test_dispatch_rejects_bad_chunk_size(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.dispatch_market_history([1], chunk_size=-5)

    def test_dispatch_corporation_medals(self, dispatcher):
        job = dispatcher.dispatch_corporation_medals(98000001)
        assert job.job_type == "corporation_medals"
        assert job.context == {"corporation_id": 98000001}
        assert job.remaining_ids == []


class TestClaim:

    def test_claim_moves_job_to_running(self, db_session, dispatcher):
        queued = dispatcher.enqueue("market_history", {"region_id": 1}, [1])
        _make_due(db_session, queued)

        claimed = dispatcher.claim_next_job("worker-a")

        assert claimed.job_id == queued.job_id
        assert claimed.status == JobStatus.RUNNING
        assert claimed.claimed_by == "worker-a"
        assert claimed.started_at is not None

    def test_job_is_claimed_only_once(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [1])
        _make_due(db_session, job)

        assert dispatcher.claim_next_job("worker-a") is not None
        assert dispatcher.claim_next_job("worker-b") is None

    def test_delayed_job_is_not_claimed(self, dispatcher):
        dispatcher.enqueue("market_history", {"region_id": 1}, [1], delay_seconds=600)
        assert dispatcher.claim_next_job("worker-a") is None

    def test_claim_filters_job_types(self, db_session, dispatcher):
        job = dispatcher.enqueue("corporation_medals", {"corporation_id": 1})
        _make_due(db_session, job)

        assert dispatcher.claim_next_job("w", job_types=["market_history"]) is None
        assert dispatcher.claim_next_job("w", job_types=["corporation_medals"]) is not None


class TestBatchCancellation:

    def test_cancel_is_idempotent(self, dispatcher):
        batch = dispatcher.dispatch_market_history([1, 2])

        first = dispatcher.cancel_batch(batch.batch_id)
        cancelled_at = first.cancelled_at
        second = dispatcher.cancel_batch(batch.batch_id)

        assert second.is_cancelled is True
        assert second.cancelled_at == cancelled_at

    def test_cancel_unknown_batch(self, dispatcher):
        with pytest.raises(BatchNotFoundError):
            dispatcher.cancel_batch("missing")

    @pytest.mark.asyncio
    async def test_cancelled_batch_jobs_end_cancelled(self, db_session, dispatcher, memory_store):
        batch = dispatcher.dispatch_market_history([1, 2, 3])
        dispatcher.cancel_batch(batch.batch_id)
        job = db_session.query(SyncJob).filter_by(batch_id=batch.batch_id).one()
        _make_due(db_session, job)

        fetcher = _fetcher(lambda type_id: _ok())
        handler = MarketHistoryJob(fetcher, RateLimiter(memory_store), BanRegistry(memory_store))
        runner = JobRunner(db_session, [handler])

        processed = await runner.process_due_jobs("worker-a")

        db_session.refresh(job)
        assert processed == 1
        assert job.status == JobStatus.CANCELLED
        assert job.remaining_ids == [1, 2, 3]
        assert fetcher.fetch.await_count == 0


class TestRunnerOutcomes:

    @pytest.mark.asyncio
    async def test_completed_job_marks_success_and_counts_batch(self, db_session, dispatcher, memory_store):
        batch = dispatcher.dispatch_market_history([1, 2])
        job = db_session.query(SyncJob).filter_by(batch_id=batch.batch_id).one()
        _make_due(db_session, job)

        fetcher = _fetcher(lambda type_id: _ok([{
            "date": "2026-10-16", "average": 1.0, "highest": 1.0, "lowest": 1.0,
            "order_count": 1, "volume": 1,
        }]))
        handler = MarketHistoryJob(fetcher, RateLimiter(memory_store), BanRegistry(memory_store))

        await JobRunner(db_session, [handler]).process_due_jobs("worker-a")

        db_session.refresh(job)
        db_session.refresh(batch)
        assert job.status == JobStatus.SUCCESS
        assert job.remaining_ids == []
        assert job.job_metadata["processed"] == 2
        assert batch.completed_jobs == 1
        assert batch.is_finished
        assert db_session.query(MarketPrice).count() == 2

    @pytest.mark.asyncio
    async def test_throttled_job_is_requeued_with_its_queue(self, db_session, dispatcher, memory_store):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [7, 8])
        _make_due(db_session, job)
        limiter = RateLimiter(memory_store)
        limiter.try_acquire("market-history", 100, 60)

        handler = MarketHistoryJob(
            _fetcher(lambda type_id: _ok()),
            limiter,
            BanRegistry(memory_store),
            settings=MarketHistorySettings(rate_limit_calls=1),
        )
        await JobRunner(db_session, [handler]).process_due_jobs("worker-a")

        db_session.refresh(job)
        assert job.status == JobStatus.QUEUED
        assert job.remaining_ids == [7, 8]
        assert job.attempts == 1
        assert job.claimed_by is None
        assert dispatcher.claim_next_job("worker-b") is None  # delayed until window reset

    @pytest.mark.asyncio
    async def test_uncounted_throttle_keeps_attempts(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [1])
        handler = _StaticHandler(
            "market_history",
            JobReleased(delay_seconds=30, reason=ErrorCategory.RATE_LIMITED, counts_as_attempt=False),
        )
        job.status = JobStatus.RUNNING
        db_session.flush()

        await JobRunner(db_session, [handler]).execute_job(job)

        assert job.status == JobStatus.QUEUED
        assert job.attempts == 0

    @pytest.mark.asyncio
    async def test_persistent_outage_dead_letters_with_queue_intact(self, db_session, dispatcher, memory_store):
        """Queue [9] failing every time: dead-lettered after max attempts, 9 still queued."""
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [9], max_attempts=3)
        fetcher = _fetcher(lambda type_id: RetryableFailure(reason="upstream_outage", status_code=503))
        handler = MarketHistoryJob(fetcher, RateLimiter(memory_store), BanRegistry(memory_store))
        runner = JobRunner(db_session, [handler])

        for _ in range(3):
            _make_due(db_session, job)
            claimed = dispatcher.claim_next_job("worker-a")
            assert claimed is not None
            await runner.execute_job(claimed)

        db_session.refresh(job)
        assert job.status == JobStatus.DEAD_LETTER
        assert job.error_code == "upstream_outage"
        assert job.attempts == 3
        assert job.remaining_ids == [9]
        assert fetcher.fetch.await_count == 3
        assert dispatcher.get_dead_letter_jobs() == [job]

    @pytest.mark.asyncio
    async def test_handler_exception_fails_unclassified(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [1])
        handler = _StaticHandler("market_history", error=RuntimeError("kaboom"))

        outcome = await JobRunner(db_session, [handler]).execute_job(job)

        assert isinstance(outcome, JobFailed)
        assert job.status == JobStatus.FAILED
        assert job.error_code == "unclassified"
        assert "kaboom" in job.error_message

    @pytest.mark.asyncio
    async def test_job_failed_outcome(self, db_session, dispatcher):
        job = dispatcher.dispatch_corporation_medals(1)
        handler = _StaticHandler("corporation_medals", JobFailed("not_found", "gone"))

        await JobRunner(db_session, [handler]).execute_job(job)

        assert job.status == JobStatus.FAILED
        assert job.error_code == "not_found"
        assert job.completed_at is not None

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_orders", {}, [1])

        await JobRunner(db_session, []).execute_job(job)

        assert job.status == JobStatus.FAILED
        assert job.error_code == "unclassified"
        assert "market_orders" in job.error_message

    def test_unknown_job_type_error(self, db_session):
        runner = JobRunner(db_session, [])
        with pytest.raises(UnknownJobTypeError):
            runner._get_handler("nope")

    @pytest.mark.asyncio
    async def test_process_due_jobs_respects_limit(self, db_session, dispatcher):
        for _ in range(3):
            _make_due(db_session, dispatcher.enqueue("corporation_medals", {"corporation_id": 1}))
        handler = _StaticHandler("corporation_medals", JobCompleted(processed=0))

        processed = await JobRunner(db_session, [handler]).process_due_jobs("w", limit=2)

        assert processed == 2
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_process_due_jobs_with_nothing_due(self, db_session):
        assert await JobRunner(db_session, []).process_due_jobs("w") == 0

    @pytest.mark.asyncio
    async def test_failed_flush_in_handler_marks_job_failed(self, db_session, dispatcher):
        """A write error inside the handler must still end in FAILED, not stuck RUNNING."""
        corporation_id = 98000001
        db_session.add(CorporationMedal(
            corporation_id=corporation_id,
            medal_id=1,
            title="Old",
            description="",
            creator_id=90000001,
        ))
        job = dispatcher.dispatch_corporation_medals(corporation_id)
        _make_due(db_session, job)

        fetcher = MagicMock()
        fetcher.fetch = AsyncMock(return_value=FetchSucceeded(PageResult(
            items=[{"medal_id": 1, "title": None, "description": "", "creator_id": 90000001}],
            page=1,
            total_pages=1,
        )))

        processed = await JobRunner(db_session, [CorporationMedalsJob(fetcher)]).process_due_jobs("worker-a")

        db_session.refresh(job)
        assert processed == 1
        assert job.status == JobStatus.FAILED
        assert job.error_code == "unclassified"
        assert job.completed_at is not None
        medal = db_session.get(CorporationMedal, {"corporation_id": corporation_id, "medal_id": 1})
        assert medal.title == "Old"


class TestRecoveryAndRequeue:

    def test_stale_running_jobs_are_requeued(self, db_session, dispatcher):
        stale = dispatcher.enqueue("corporation_medals", {"corporation_id": 1})
        fresh = dispatcher.enqueue("corporation_medals", {"corporation_id": 2})
        now = datetime.now(timezone.utc)
        stale.status = JobStatus.RUNNING
        stale.started_at = now - timedelta(hours=2)
        fresh.status = JobStatus.RUNNING
        fresh.started_at = now - timedelta(minutes=5)
        db_session.flush()

        recovered = dispatcher.recover_stale_jobs()

        db_session.refresh(stale)
        db_session.refresh(fresh)
        assert recovered == 1
        assert stale.status == JobStatus.QUEUED
        assert stale.attempts == 1
        assert stale.claimed_by is None
        assert fresh.status == JobStatus.RUNNING

    def test_market_history_gets_one_day_timeout(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [1])
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db_session.flush()

        assert dispatcher.recover_stale_jobs() == 0

        job.started_at = datetime.now(timezone.utc) - timedelta(hours=25)
        db_session.flush()
        assert dispatcher.recover_stale_jobs() == 1

    def test_repeatedly_stale_job_is_dead_lettered(self, db_session, dispatcher):
        job = dispatcher.enqueue("corporation_medals", {"corporation_id": 1}, max_attempts=2)
        job.attempts = 1
        job.status = JobStatus.RUNNING
        job.started_at = datetime.now(timezone.utc) - timedelta(hours=2)
        db_session.flush()

        assert dispatcher.recover_stale_jobs() == 1

        db_session.refresh(job)
        assert job.status == JobStatus.DEAD_LETTER
        assert job.error_code == STALE_ERROR_CODE
        assert job.attempts == 2
        assert job.completed_at is not None
        assert dispatcher.get_dead_letter_jobs() == [job]

    def test_requeue_from_dlq_resets_attempts(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [9])
        job.attempts = 100
        job.mark_dead_letter("upstream_outage", "Attempts exhausted")
        db_session.flush()

        requeued = dispatcher.requeue_from_dlq(job.job_id)

        assert requeued.status == JobStatus.QUEUED
        assert requeued.attempts == 0
        assert requeued.remaining_ids == [9]
        assert requeued.job_metadata["original_error"] == "Attempts exhausted"

    def test_requeue_requires_dead_letter(self, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [9])
        with pytest.raises(ValueError):
            dispatcher.requeue_from_dlq(job.job_id)

    def test_requeue_unknown_job(self, dispatcher):
        with pytest.raises(JobNotFoundError):
            dispatcher.requeue_from_dlq("missing")


class TestTaskState:

    def test_dedupes_preserving_order(self):
        assert TaskState(remaining_ids=[5, 3, 5, 1, 3]).remaining_ids == [5, 3, 1]

    def test_round_trip_through_job_row(self, db_session, dispatcher):
        job = dispatcher.enqueue("market_history", {"region_id": 1}, [4, 5, 6])
        state = job.to_state()
        state.drop_head()
        job.apply_state(state)
        db_session.flush()
        db_session.expire(job)

        assert job.remaining_ids == [5, 6]


class TestDefaultHandlers:

    def test_build_default_handlers(self, memory_store):
        handlers = build_default_handlers(MagicMock(), memory_store, SyncSettings())
        assert sorted(h.job_type for h in handlers) == ["corporation_medals", "market_history"]
