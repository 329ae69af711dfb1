"""
Market history sync: latest traded-day prices per market type.

One task owns an ordered queue of type ids for a region. Every request
goes through the shared "market-history" rate limit window; when the
window is full the task releases itself with its queue untouched.

Type ids ESI answers 404 for (items removed from the market) are banned
for a month so later runs skip them without a request.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from esisync.config.sync_settings import MarketHistorySettings
from esisync.ingestion.bans import BanRegistry
from esisync.ingestion.fetch import (
    FetchAttempt,
    RetryableFailure,
    PermanentFailure,
)
from esisync.ingestion.jobs.base import (
    JobCancelled,
    JobCompleted,
    JobContext,
    JobOutcome,
    JobReleased,
    SyncJobHandler,
)
from esisync.ingestion.jobs.retry import ErrorCategory, RetryPolicy
from esisync.ingestion.persister import upsert
from esisync.ingestion.rate_limiter import RateLimiter, Throttled
from esisync.integrations.esi.models import MarketHistoryEntry
from esisync.models.market_price import MarketPrice

logger = logging.getLogger(__name__)

JOB_TYPE = "market_history"
ENDPOINT = "/markets/{region_id}/history/"
TAGS = ["public", "market"]

NEUTRAL_PRICE: Dict[str, Any] = {
    "average": 0.0,
    "highest": 0.0,
    "lowest": 0.0,
    "order_count": 0,
    "volume": 0,
}


def select_price(entries: Iterable[MarketHistoryEntry]) -> Dict[str, Any]:
    """
    Pick the most recent day that saw at least one order.

    Returns the neutral (all-zero) price when no day qualifies. Ties on
    date keep the first entry returned by ESI.
    """
    best: Optional[MarketHistoryEntry] = None
    for entry in entries:
        if entry.order_count <= 0:
            continue
        if best is None or entry.date > best.date:
            best = entry

    if best is None:
        return dict(NEUTRAL_PRICE)

    return {
        "average": best.average,
        "highest": best.highest,
        "lowest": best.lowest,
        "order_count": best.order_count,
        "volume": best.volume,
    }


def build_tags(batch_size: Optional[int] = None, batch_current: Optional[int] = None) -> List[str]:
    tags = list(TAGS)
    if batch_size is not None:
        tags.append(f"batch_size:{batch_size}")
    if batch_current is not None:
        tags.append(f"batch_current:{batch_current}")
    return tags


class MarketHistoryJob(SyncJobHandler):
    """Rate-limited per-type sweep of /markets/{region_id}/history/."""

    job_type = JOB_TYPE

    def __init__(
        self,
        fetcher: FetchAttempt,
        rate_limiter: RateLimiter,
        bans: BanRegistry,
        settings: MarketHistorySettings = MarketHistorySettings(),
        retry_policy: RetryPolicy = RetryPolicy(),
    ):
        self.fetcher = fetcher
        self.rate_limiter = rate_limiter
        self.bans = bans
        self.settings = settings
        self.retry_policy = retry_policy

    def _cancelled(self, context: JobContext) -> JobCancelled:
        logger.info(
            "market_history.cancelled",
            extra={
                "job_id": context.job_id,
                "batch_id": context.batch_id,
                "remaining": len(context.state.remaining_ids),
            },
        )
        return JobCancelled()

    async def handle(self, context: JobContext) -> JobOutcome:
        if context.is_batch_cancelled():
            return self._cancelled(context)

        state = context.state
        region_id = int(state.context.get("region_id") or self.settings.region_id)
        processed = 0

        while state.remaining_ids:
            acquired = self.rate_limiter.try_acquire(
                self.settings.resource_class,
                self.settings.rate_limit_calls,
                self.settings.rate_limit_window_seconds,
            )
            if isinstance(acquired, Throttled):
                if context.is_batch_cancelled():
                    return self._cancelled(context)

                logger.debug(
                    "market_history.throttled",
                    extra={
                        "job_id": context.job_id,
                        "remaining": len(state.remaining_ids),
                        "retry_after": acquired.retry_after,
                    },
                )
                return JobReleased(
                    delay_seconds=acquired.retry_after,
                    reason=ErrorCategory.RATE_LIMITED,
                    counts_as_attempt=self.retry_policy.throttle_counts_as_attempt,
                    message=f"Rate limit window full, {len(state.remaining_ids)} types remaining",
                )

            type_id = state.head

            if self.bans.is_banned(type_id):
                logger.debug(
                    "Skipping banned market type",
                    extra={"job_id": context.job_id, "type_id": type_id},
                )
                state.drop_head()
                continue

            outcome = await self.fetcher.fetch(
                ENDPOINT,
                path_params={"region_id": region_id},
                query={"type_id": type_id},
            )

            if isinstance(outcome, RetryableFailure):
                if context.is_batch_cancelled():
                    return self._cancelled(context)

                logger.error(
                    "ESI is temporarily unavailable - retry in %s seconds",
                    self.retry_policy.outage_cooldown_seconds,
                    extra={
                        "job_id": context.job_id,
                        "type_id": type_id,
                        "reason": outcome.reason,
                        "error_limit_remain": outcome.error_limit_remain,
                    },
                )
                return JobReleased(
                    delay_seconds=self.retry_policy.outage_cooldown_seconds,
                    reason=ErrorCategory(outcome.reason),
                    counts_as_attempt=True,
                    message=outcome.message,
                )

            if isinstance(outcome, PermanentFailure):
                self.bans.ban(
                    type_id,
                    self.settings.ban_duration_seconds,
                    reason=outcome.code,
                )
                logger.warning(
                    "market_history.type_banned",
                    extra={
                        "job_id": context.job_id,
                        "type_id": type_id,
                        "region_id": region_id,
                        "duration_seconds": self.settings.ban_duration_seconds,
                    },
                )
                state.drop_head()
                continue

            entries = [MarketHistoryEntry.from_dict(item) for item in outcome.result.items]
            upsert(
                context.db,
                MarketPrice,
                {"type_id": type_id, "region_id": region_id},
                select_price(entries),
            )
            state.drop_head()
            processed += 1

        return JobCompleted(processed=processed)
