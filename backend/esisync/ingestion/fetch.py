"""
Single upstream fetch with failure classification.

FetchAttempt turns one ESI call into a tagged outcome so jobs can route it
without try/except:

- FetchSucceeded: the page plus the total page count
- RetryableFailure: transient outage, error-limited, or network trouble
- PermanentFailure: the requested resource does not exist (404)

Anything else (authentication failures, other 4xx/5xx, malformed bodies)
is raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from esisync.integrations.esi.client import EsiClient
from esisync.integrations.esi.exceptions import (
    EsiError,
    EsiNotFoundError,
    EsiTemporaryOutageError,
    EsiErrorLimitedError,
    EsiConnectionError,
)

logger = logging.getLogger(__name__)

# Values line up with esisync.ingestion.jobs.retry.ErrorCategory
UPSTREAM_OUTAGE = "upstream_outage"
ERROR_LIMITED = "error_limited"
CONNECTION = "connection"
NOT_FOUND = "not_found"


@dataclass(frozen=True)
class PageResult:
    items: List[Any] = field(default_factory=list)
    page: int = 1
    total_pages: int = 1

    @property
    def is_last_page(self) -> bool:
        return self.page >= self.total_pages


@dataclass(frozen=True)
class FetchSucceeded:
    result: PageResult


@dataclass(frozen=True)
class RetryableFailure:
    reason: str
    message: str = ""
    status_code: Optional[int] = None
    error_limit_remain: Optional[int] = None


@dataclass(frozen=True)
class PermanentFailure:
    code: str
    status_code: Optional[int] = None


FetchOutcome = Union[FetchSucceeded, RetryableFailure, PermanentFailure]


class FetchAttempt:
    """Performs one classified GET against ESI."""

    def __init__(self, client: EsiClient, version: str = "v1"):
        self.client = client
        self.version = version

    async def fetch(
        self,
        endpoint: str,
        path_params: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, Any]] = None,
        page: int = 1,
    ) -> FetchOutcome:
        """
        Fetch one page of a list endpoint.

        Raises:
            EsiError: For failures that are neither transient nor not-found,
                including a body that is not a JSON list
        """
        try:
            response = await self.client.retrieve(
                endpoint,
                path_params=path_params,
                query=query,
                page=page,
                version=self.version,
            )
        except EsiNotFoundError:
            logger.debug(
                "ESI resource not found",
                extra={"endpoint": endpoint, "path_params": path_params, "query": query},
            )
            return PermanentFailure(code=NOT_FOUND, status_code=404)
        except EsiTemporaryOutageError as e:
            if isinstance(e, EsiErrorLimitedError):
                reason = ERROR_LIMITED
            elif isinstance(e, EsiConnectionError):
                reason = CONNECTION
            else:
                reason = UPSTREAM_OUTAGE
            return RetryableFailure(
                reason=reason,
                message=e.message,
                status_code=e.status_code,
                error_limit_remain=e.error_limit,
            )

        if not isinstance(response.body, list):
            raise EsiError(
                message=f"Malformed ESI response for {endpoint}: expected a list",
                status_code=response.status_code,
            )

        return FetchSucceeded(
            PageResult(
                items=response.body,
                page=page,
                total_pages=response.pages,
            )
        )
