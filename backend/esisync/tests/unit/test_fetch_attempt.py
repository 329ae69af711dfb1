"""Tests for fetch outcome classification."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from esisync.ingestion.fetch import (
    FetchAttempt,
    FetchSucceeded,
    PageResult,
    PermanentFailure,
    RetryableFailure,
)
from esisync.integrations.esi.exceptions import (
    EsiAuthenticationError,
    EsiConnectionError,
    EsiError,
    EsiErrorLimitedError,
    EsiNotFoundError,
    EsiTemporaryOutageError,
)
from esisync.integrations.esi.models import EsiResponse


@pytest.fixture
def esi_client():
    client = MagicMock()
    client.retrieve = AsyncMock()
    return client


@pytest.fixture
def fetcher(esi_client):
    return FetchAttempt(esi_client)


class TestFetchAttempt:

    @pytest.mark.asyncio
    async def test_success_carries_page_and_total(self, fetcher, esi_client):
        esi_client.retrieve.return_value = EsiResponse(body=[{"medal_id": 1}], pages=4)

        outcome = await fetcher.fetch("/corporations/{corporation_id}/medals/", {"corporation_id": 1}, page=2)

        assert outcome == FetchSucceeded(PageResult(items=[{"medal_id": 1}], page=2, total_pages=4))
        assert outcome.result.is_last_page is False
        esi_client.retrieve.assert_awaited_once_with(
            "/corporations/{corporation_id}/medals/",
            path_params={"corporation_id": 1},
            query=None,
            page=2,
            version="v1",
        )

    @pytest.mark.asyncio
    async def test_last_page(self, fetcher, esi_client):
        esi_client.retrieve.return_value = EsiResponse(body=[], pages=2)
        outcome = await fetcher.fetch("/x/", page=2)
        assert outcome.result.is_last_page is True

    @pytest.mark.asyncio
    async def test_not_found_is_permanent(self, fetcher, esi_client):
        esi_client.retrieve.side_effect = EsiNotFoundError()
        outcome = await fetcher.fetch("/markets/{region_id}/history/", {"region_id": 1}, {"type_id": 2})
        assert outcome == PermanentFailure(code="not_found", status_code=404)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,reason",
        [
            (EsiTemporaryOutageError(status_code=503, error_limit=80), "upstream_outage"),
            (EsiErrorLimitedError(error_limit=0, reset_in=20), "error_limited"),
            (EsiConnectionError(), "connection"),
        ],
    )
    async def test_transient_errors_are_retryable(self, fetcher, esi_client, error, reason):
        esi_client.retrieve.side_effect = error

        outcome = await fetcher.fetch("/x/")

        assert isinstance(outcome, RetryableFailure)
        assert outcome.reason == reason
        assert outcome.error_limit_remain == error.error_limit

    @pytest.mark.asyncio
    async def test_auth_error_propagates(self, fetcher, esi_client):
        esi_client.retrieve.side_effect = EsiAuthenticationError()
        with pytest.raises(EsiAuthenticationError):
            await fetcher.fetch("/x/")

    @pytest.mark.asyncio
    async def test_unmapped_status_propagates(self, fetcher, esi_client):
        esi_client.retrieve.side_effect = EsiError("ESI API error: 500", status_code=500)
        with pytest.raises(EsiError):
            await fetcher.fetch("/x/")

    @pytest.mark.asyncio
    async def test_non_list_body_is_malformed(self, fetcher, esi_client):
        esi_client.retrieve.return_value = EsiResponse(body={"error": "unexpected"})
        with pytest.raises(EsiError, match="Malformed"):
            await fetcher.fetch("/x/")
