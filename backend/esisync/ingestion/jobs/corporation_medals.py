"""
Corporation medals sync: full pagination sweep.

Every page of /corporations/{corporation_id}/medals/ is upserted keyed by
(corporation_id, medal_id). The sweep keeps no cursor: after a transient
failure the next run starts again at page 1, which is safe because every
write is an upsert.
"""

import logging

from esisync.ingestion.fetch import FetchAttempt, PermanentFailure, RetryableFailure
from esisync.ingestion.jobs.base import (
    JobCancelled,
    JobCompleted,
    JobContext,
    JobFailed,
    JobOutcome,
    JobReleased,
    SyncJobHandler,
)
from esisync.ingestion.jobs.retry import ErrorCategory, RetryPolicy
from esisync.ingestion.persister import upsert
from esisync.integrations.esi.models import CorporationMedalEntry
from esisync.models.corporation_medal import CorporationMedal

logger = logging.getLogger(__name__)

JOB_TYPE = "corporation_medals"
ENDPOINT = "/corporations/{corporation_id}/medals/"


class CorporationMedalsJob(SyncJobHandler):
    job_type = JOB_TYPE

    def __init__(self, fetcher: FetchAttempt, retry_policy: RetryPolicy = RetryPolicy()):
        self.fetcher = fetcher
        self.retry_policy = retry_policy

    def _cancelled(self, context: JobContext) -> JobCancelled:
        logger.info(
            "corporation_medals.cancelled",
            extra={"job_id": context.job_id, "batch_id": context.batch_id},
        )
        return JobCancelled()

    async def handle(self, context: JobContext) -> JobOutcome:
        if context.is_batch_cancelled():
            return self._cancelled(context)

        corporation_id = int(context.state.context["corporation_id"])
        processed = 0
        page = 1

        while True:
            outcome = await self.fetcher.fetch(
                ENDPOINT,
                path_params={"corporation_id": corporation_id},
                page=page,
            )

            if isinstance(outcome, RetryableFailure):
                if context.is_batch_cancelled():
                    return self._cancelled(context)

                logger.error(
                    "ESI is temporarily unavailable - retry in %s seconds",
                    self.retry_policy.outage_cooldown_seconds,
                    extra={
                        "job_id": context.job_id,
                        "corporation_id": corporation_id,
                        "page": page,
                        "reason": outcome.reason,
                    },
                )
                return JobReleased(
                    delay_seconds=self.retry_policy.outage_cooldown_seconds,
                    reason=ErrorCategory(outcome.reason),
                    counts_as_attempt=True,
                    message=outcome.message,
                )

            if isinstance(outcome, PermanentFailure):
                return JobFailed(
                    error_code=ErrorCategory.NOT_FOUND.value,
                    message=f"Corporation {corporation_id} medals not found",
                )

            for item in outcome.result.items:
                medal = CorporationMedalEntry.from_dict(item)
                upsert(
                    context.db,
                    CorporationMedal,
                    {"corporation_id": corporation_id, "medal_id": medal.medal_id},
                    {
                        "title": medal.title,
                        "description": medal.description,
                        "creator_id": medal.creator_id,
                        "medal_created_at": medal.created_at,
                    },
                )
                processed += 1

            if outcome.result.is_last_page:
                break
            page += 1

        logger.debug(
            "Corporation medals swept",
            extra={"job_id": context.job_id, "corporation_id": corporation_id, "pages": page},
        )
        return JobCompleted(processed=processed)
