"""
ESI (EVE Swagger Interface) API client.

This client handles:
- Versioned GET requests with path parameter substitution
- Pagination metadata (X-Pages)
- Error budget tracking (X-ESI-Error-Limit-Remain / -Reset)
- Mapping HTTP failures onto the EsiError hierarchy

Authentication is the caller's concern: an access token, when given, is
sent as a bearer header and never inspected.

Documentation: https://esi.evetech.net/ui/
"""

import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import httpx

from esisync.integrations.esi.exceptions import (
    EsiError,
    EsiAuthenticationError,
    EsiNotFoundError,
    EsiTemporaryOutageError,
    EsiErrorLimitedError,
    EsiConnectionError,
)
from esisync.integrations.esi.models import EsiResponse

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_BASE_URL = "https://esi.evetech.net"
DEFAULT_DATASOURCE = "tranquility"
DEFAULT_VERSION = "v1"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_ERROR_LIMIT_FLOOR = 10
DEFAULT_USER_AGENT = "esisync"

OUTAGE_STATUS_CODES = (502, 503, 504)


class EsiClient:
    """
    Async client for the ESI REST API.

    All methods are async and should be used with async/await. One client
    instance is meant to be shared by every job a worker runs so the error
    budget it tracks reflects all calls made from that process.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        datasource: str = DEFAULT_DATASOURCE,
        access_token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        error_limit_floor: int = DEFAULT_ERROR_LIMIT_FLOOR,
        user_agent: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize ESI client.

        Args:
            base_url: ESI base URL (default: from env or public ESI)
            datasource: ESI datasource query value
            access_token: Optional bearer token for authenticated endpoints
            timeout: Request timeout in seconds
            connect_timeout: Connection timeout in seconds
            error_limit_floor: Refuse to call while fewer errors remain than this
            user_agent: User-Agent header (default: from env or "esisync")
            clock: Monotonic clock, injectable for tests
        """
        self.base_url = (
            base_url or os.getenv("ESI_BASE_URL") or DEFAULT_BASE_URL
        ).rstrip("/")
        self.datasource = datasource
        self.error_limit_floor = error_limit_floor
        self._clock = clock

        self.error_limit_remain: Optional[int] = None
        self._error_limit_reset_at: Optional[float] = None

        headers = {
            "Accept": "application/json",
            "User-Agent": user_agent or os.getenv("ESI_USER_AGENT") or DEFAULT_USER_AGENT,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"

        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=connect_timeout),
            headers=headers,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "EsiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _error_budget_reset_in(self) -> float:
        if self._error_limit_reset_at is None:
            return 0.0
        return max(self._error_limit_reset_at - self._clock(), 0.0)

    def _check_error_budget(self, endpoint: str) -> None:
        """
        Raise before calling when the tracked error budget is under the floor.

        The budget is considered restored once the reset window announced by
        ESI has elapsed.
        """
        if self.error_limit_remain is None:
            return

        reset_in = self._error_budget_reset_in()
        if reset_in <= 0:
            self.error_limit_remain = None
            self._error_limit_reset_at = None
            return

        if self.error_limit_remain < self.error_limit_floor:
            logger.warning(
                "ESI error budget below floor, refusing request",
                extra={
                    "endpoint": endpoint,
                    "error_limit_remain": self.error_limit_remain,
                    "reset_in": reset_in,
                },
            )
            raise EsiErrorLimitedError(
                error_limit=self.error_limit_remain,
                reset_in=reset_in,
            )

    def _track_error_budget(self, headers: Any) -> None:
        remain = headers.get("X-ESI-Error-Limit-Remain")
        reset = headers.get("X-ESI-Error-Limit-Reset")
        if remain is None:
            return
        try:
            self.error_limit_remain = int(remain)
            self._error_limit_reset_at = self._clock() + int(reset or 0)
        except (TypeError, ValueError):
            logger.debug(
                "Ignoring malformed ESI error limit headers",
                extra={"remain": remain, "reset": reset},
            )

    def build_url(
        self,
        endpoint: str,
        path_params: Optional[Dict[str, Any]] = None,
        version: str = DEFAULT_VERSION,
    ) -> str:
        """Substitute path parameters and prefix base URL and version."""
        path = endpoint.format(**(path_params or {}))
        return f"{self.base_url}/{version.strip('/')}/{path.lstrip('/')}"

    async def retrieve(
        self,
        endpoint: str,
        path_params: Optional[Dict[str, Any]] = None,
        query: Optional[Dict[str, Any]] = None,
        page: Optional[int] = None,
        version: str = DEFAULT_VERSION,
    ) -> EsiResponse:
        """
        GET an ESI endpoint.

        Args:
            endpoint: Endpoint template, e.g. "/markets/{region_id}/history/"
            path_params: Values substituted into the template
            query: Extra query string parameters
            page: Page number for paginated endpoints
            version: Endpoint version segment

        Returns:
            EsiResponse with decoded body and pagination metadata

        Raises:
            EsiAuthenticationError: On 401/403
            EsiNotFoundError: On 404
            EsiErrorLimitedError: On 420 or when the error budget is spent
            EsiTemporaryOutageError: On 502/503/504
            EsiConnectionError: On timeouts and network errors
            EsiError: On any other error status
        """
        self._check_error_budget(endpoint)

        url = self.build_url(endpoint, path_params, version)
        params: Dict[str, Any] = {"datasource": self.datasource}
        if query:
            params.update(query)
        if page is not None:
            params["page"] = page

        try:
            response = await self._client.request(
                method="GET",
                url=url,
                params=params,
            )
        except httpx.TimeoutException as e:
            logger.error(
                "ESI request timeout",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise EsiConnectionError(f"Request timeout: {e}")
        except httpx.RequestError as e:
            logger.error(
                "ESI connection error",
                extra={"endpoint": endpoint, "error": str(e)},
            )
            raise EsiConnectionError(f"Connection error: {e}")

        self._track_error_budget(response.headers)
        status_code = response.status_code

        if status_code in (401, 403):
            logger.error(
                "ESI authentication failed",
                extra={"status_code": status_code, "endpoint": endpoint},
            )
            raise EsiAuthenticationError(status_code=status_code)

        if status_code == 404:
            raise EsiNotFoundError(
                message=f"Resource not found: {url}",
                endpoint=endpoint,
            )

        if status_code == 420:
            logger.warning(
                "ESI error limited",
                extra={
                    "endpoint": endpoint,
                    "error_limit_remain": self.error_limit_remain,
                },
            )
            raise EsiErrorLimitedError(
                error_limit=self.error_limit_remain,
                reset_in=self._error_budget_reset_in(),
            )

        if status_code in OUTAGE_STATUS_CODES:
            logger.warning(
                "ESI temporarily unavailable",
                extra={
                    "status_code": status_code,
                    "endpoint": endpoint,
                    "error_limit_remain": self.error_limit_remain,
                },
            )
            raise EsiTemporaryOutageError(
                message=f"ESI temporarily unavailable: {status_code}",
                status_code=status_code,
                error_limit=self.error_limit_remain,
            )

        if status_code >= 400:
            error_body: Dict[str, Any] = {}
            try:
                error_body = response.json()
            except ValueError:
                pass

            logger.error(
                "ESI API error",
                extra={
                    "status_code": status_code,
                    "endpoint": endpoint,
                    "response": str(error_body)[:500],
                },
            )
            raise EsiError(
                message=f"ESI API error: {status_code}",
                status_code=status_code,
                response=error_body,
            )

        return EsiResponse.from_headers(
            body=response.json(),
            status_code=status_code,
            headers=response.headers,
        )


def get_esi_client(
    base_url: Optional[str] = None,
    datasource: str = DEFAULT_DATASOURCE,
    access_token: Optional[str] = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    error_limit_floor: int = DEFAULT_ERROR_LIMIT_FLOOR,
) -> EsiClient:
    """
    Factory function to create an ESI client.

    Reads the access token from ESI_ACCESS_TOKEN when not passed.
    """
    return EsiClient(
        base_url=base_url,
        datasource=datasource,
        access_token=access_token or os.getenv("ESI_ACCESS_TOKEN"),
        timeout=timeout,
        connect_timeout=connect_timeout,
        error_limit_floor=error_limit_floor,
    )
