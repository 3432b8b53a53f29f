"""
Tests for the DataForSEO client: date window, response parsing, retries.
"""

import base64
from datetime import datetime
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from src.common.dataforseo_client import (
    DataForSEOClient,
    DataForSEOError,
    build_date_param,
    parse_serp_items,
)


def _response(items, task_status=20000):
    return {
        "status_code": 20000,
        "tasks": [{"status_code": task_status, "status_message": "Ok.", "result": [{"items": items}]}],
    }


RAW_ITEMS = [
    {"type": "organic", "rank_absolute": 1, "url": "https://www.news.it/a", "title": "A",
     "description": "first", "domain": "www.news.it", "timestamp": "2026-09-30 08:15:00 +02:00"},
    {"type": "people_also_ask", "rank_absolute": 2},
    {"type": "news_search", "rank_absolute": 3, "url": "https://blog.it/b", "title": "B", "snippet": "second"},
    {"type": "organic", "rank_absolute": 4, "url": "", "title": "no url"},
    {"type": "organic", "rank_absolute": 5, "url": "https://c.it/c", "title": "C"},
]


def _client(handler):
    client = DataForSEOClient(transport=httpx.MockTransport(handler))
    client.login = "user"
    client.password = "secret"
    client.backoff_base = 1.0
    return client


class TestBuildDateParam:

    def test_first_scan(self):
        assert build_date_param(None, datetime(2026, 10, 1)) == "cdr:1,cd_max:10/1/2026"

    def test_incremental(self):
        assert build_date_param(datetime(2026, 9, 3), datetime(2026, 10, 1)) == "cdr:1,cd_min:9/3/2026,cd_max:10/1/2026"

    def test_no_window(self):
        assert build_date_param(None, None) is None


class TestParseSerpItems:
    """Only organic/news items with a URL survive, up to depth."""

    def test_parse(self):
        items = parse_serp_items(_response(RAW_ITEMS), depth=30)

        assert [i.position for i in items] == [1, 3, 5]
        assert items[0].domain == "news.it"
        assert items[0].published_at == datetime(2026, 9, 30, 6, 15)
        assert items[1].snippet == "second"
        assert items[1].domain == "blog.it"
        assert items[2].published_at is None

    def test_depth(self):
        assert len(parse_serp_items(_response(RAW_ITEMS), depth=2)) == 2

    def test_task_error(self):
        with pytest.raises(DataForSEOError):
            parse_serp_items(_response([], task_status=40501), depth=30)

    def test_empty(self):
        assert parse_serp_items({"tasks": []}, depth=30) == []
        assert parse_serp_items({"tasks": [{"status_code": 20000, "result": None}]}, depth=30) == []


class TestFetchSerp:

    @pytest.mark.asyncio
    async def test_request_payload(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            captured["body"] = request.read()
            captured["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=_response(RAW_ITEMS))

        client = _client(handler)
        items = await client.fetch_serp(
            keyword="acme",
            source="google_news",
            language="it",
            location_code=2380,
            depth=10,
            date_from=datetime(2026, 9, 3),
            date_to=datetime(2026, 10, 1),
        )
        await client.close()

        assert len(items) == 3
        assert captured["path"].endswith("/serp/google/news/live/advanced")
        assert captured["auth"] == "Basic " + base64.b64encode(b"user:secret").decode()
        body = captured["body"].decode()
        assert '"keyword":"acme"' in body.replace(" ", "")
        assert "cd_min:9/3/2026" in body
        assert "sbd:1" in body

    @pytest.mark.asyncio
    async def test_unknown_source(self):
        client = _client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(DataForSEOError):
            await client.fetch_serp("acme", "bing", "it", 2380)

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        client = DataForSEOClient()
        client.login = ""
        with pytest.raises(DataForSEOError):
            await client.request("/serp/google/organic/live/advanced", [{}])


class TestRetries:
    """5xx and 429 are retried, 4xx is not, exhaustion raises."""

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        responses = iter([httpx.Response(502), httpx.Response(200, json=_response(RAW_ITEMS))])
        client = _client(lambda request: next(responses))

        with patch("src.common.dataforseo_client.asyncio.sleep", new=AsyncMock()) as sleep:
            data = await client.request("/x", [{}])

        assert data["status_code"] == 20000
        sleep.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_rate_limit_uses_retry_after(self):
        responses = iter([
            httpx.Response(429, headers={"Retry-After": "7"}),
            httpx.Response(200, json=_response([])),
        ])
        client = _client(lambda request: next(responses))

        with patch("src.common.dataforseo_client.asyncio.sleep", new=AsyncMock()) as sleep:
            await client.request("/x", [{}])

        sleep.assert_awaited_once_with(7)

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(401)

        client = _client(handler)
        with pytest.raises(DataForSEOError, match="client error: 401"):
            await client.request("/x", [{}])
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted(self):
        client = _client(lambda request: httpx.Response(503))

        with patch("src.common.dataforseo_client.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(DataForSEOError, match="after 3 attempts"):
                await client.request("/x", [{}])

    @pytest.mark.asyncio
    async def test_provider_status_error(self):
        client = _client(lambda request: httpx.Response(200, json={"status_code": 40100, "status_message": "auth"}))
        with pytest.raises(DataForSEOError, match="40100"):
            await client.request("/x", [{}])
