"""
Tests for the partner feed client.

Tests:
- Pagination until total_pages is exhausted
- Credential header and query parameters
- Error classification: HTTP, timeout, network, malformed body
- Connectivity probe
"""

import httpx
import pytest

from app.core.exceptions import (
    ErrorCode,
    UpstreamHttpError,
    UpstreamMalformedResponseError,
    UpstreamNetworkError,
    UpstreamTimeoutError,
)
from app.services.feed_client import FeedClient

from conftest import FEED_BASE_URL, PARTNER_API_KEY, FakeFeed, make_vehicle


def _vins(count: int) -> list[str]:
    return [f"1FTFW1E50MFA{index:05d}" for index in range(count)]


class TestFetchAll:
    """Tests for FeedClient.fetch_all."""

    @pytest.mark.asyncio
    async def test_fetches_every_page_in_order(self):
        feed = FakeFeed([make_vehicle(vin) for vin in _vins(5)])
        async with FeedClient(FEED_BASE_URL, PARTNER_API_KEY, page_size=2, transport=feed.transport) as client:
            snapshot = await client.fetch_all()

        assert [row["vin"] for row in snapshot.vehicles] == _vins(5)
        assert snapshot.pages_fetched == 3
        assert snapshot.pagination.total == 5
        assert [request.url.params["page"] for request in feed.requests] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_sends_credential_header_and_limit(self):
        feed = FakeFeed([make_vehicle(_vins(1)[0])])
        async with FeedClient(FEED_BASE_URL + "/", PARTNER_API_KEY, page_size=50, transport=feed.transport) as client:
            await client.fetch_all()

        request = feed.requests[0]
        assert request.headers["X-API-Key"] == PARTNER_API_KEY
        assert request.url.path == "/inventory"
        assert request.url.params["limit"] == "50"

    @pytest.mark.asyncio
    async def test_empty_feed_returns_no_vehicles(self):
        feed = FakeFeed([])
        async with FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=feed.transport) as client:
            snapshot = await client.fetch_all()

        assert snapshot.vehicles == []
        assert snapshot.pages_fetched == 1

    @pytest.mark.asyncio
    async def test_non_object_rows_are_kept_raw(self):
        vins = _vins(2)
        feed = FakeFeed([make_vehicle(vins[0]), None, "junk", make_vehicle(vins[1])])
        async with FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=feed.transport) as client:
            snapshot = await client.fetch_all()

        assert len(snapshot.vehicles) == 4
        assert snapshot.vehicles[1] is None
        assert snapshot.vehicles[2] == "junk"

    @pytest.mark.asyncio
    async def test_error_on_later_page_aborts_whole_fetch(self):
        feed = FakeFeed([make_vehicle(vin) for vin in _vins(6)])
        feed.fail_on_page[2] = 500

        async with FeedClient(FEED_BASE_URL, PARTNER_API_KEY, page_size=2, transport=feed.transport) as client:
            with pytest.raises(UpstreamHttpError) as exc_info:
                await client.fetch_all()

        error = exc_info.value
        assert error.details["upstream_status"] == 500
        assert "upstream exploded" in error.details["body_preview"]
        assert error.step == "fetch_feed"
        assert error.status_code == 502
        # page 3 is never requested
        assert len(feed.requests) == 2


class TestErrorClassification:
    """Tests for how transport and payload failures are classified."""

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, text="bad key")

        client = FeedClient(FEED_BASE_URL, "wrong", connect_attempts=3, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamHttpError):
            await client.fetch_page(1)
        await client.close()

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_timeout_is_distinct_from_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamTimeoutError) as exc_info:
            await client.fetch_page(1)
        await client.close()

        assert exc_info.value.code == ErrorCode.UPSTREAM_TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_failure_is_retried_then_network_error(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        client = FeedClient(FEED_BASE_URL, PARTNER_API_KEY, connect_attempts=2, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamNetworkError):
            await client.fetch_page(1)
        await client.close()

        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalid_json_is_malformed_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text="<html>maintenance</html>")

        client = FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamMalformedResponseError) as exc_info:
            await client.fetch_page(1)
        await client.close()

        assert exc_info.value.code == ErrorCode.UPSTREAM_MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_missing_pagination_is_malformed_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"vehicles": []})

        client = FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamMalformedResponseError):
            await client.fetch_page(1)
        await client.close()

    @pytest.mark.asyncio
    async def test_error_url_does_not_leak_credential(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="down")

        client = FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamHttpError) as exc_info:
            await client.fetch_page(1, extra_params={"api_key": "leaky"})
        await client.close()

        assert "leaky" not in exc_info.value.details["url"]
        assert PARTNER_API_KEY not in str(exc_info.value.to_dict())


class TestProbe:
    """Tests for the connectivity probe."""

    @pytest.mark.asyncio
    async def test_probe_fetches_single_sorted_record(self):
        feed = FakeFeed([make_vehicle(vin) for vin in _vins(7)])
        async with FeedClient(FEED_BASE_URL, PARTNER_API_KEY, transport=feed.transport) as client:
            result = await client.probe()

        assert result["success"] is True
        assert result["vehicle_count"] == 7
        assert result["pagination"]["total"] == 7

        params = feed.requests[0].url.params
        assert params["limit"] == "1"
        assert params["page"] == "1"
        assert params["sort_by"] == "created_at"
        assert params["sort_order"] == "desc"
        assert len(feed.requests) == 1
