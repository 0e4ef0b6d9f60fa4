"""Tests for the budgeted NewsData.io client."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from news_pipeline.cache.newsdata_cache import BudgetCache, JsonFileStore
from news_pipeline.crawler.crawl_engine import PipelineState
from news_pipeline.crawler.newsdata_client import NewsDataClient
from news_pipeline.errors import (
    AuthError,
    BudgetExceededError,
    NetworkError,
    ParameterError,
    RateLimitError,
)
from news_pipeline.models import Category

TODAY = date(2026, 10, 18)


def _result(i: int) -> dict:
    return {
        "article_id": f"nd-{i}",
        "title": f"Jakarta story number {i} develops",
        "link": f"https://antaranews.com/story/{i}",
        "description": "A detailed account of events unfolding in the capital.",
        "pubDate": "2026-10-18 08:30:00",
        "creator": ["Reporter One"],
        "source_name": "Antara News",
        "source_url": "https://antaranews.com",
        "image_url": "https://antaranews.com/img.jpg",
    }


def _success(count: int = 3, next_page: str | None = None) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "status": "success",
            "totalResults": 120,
            "results": [_result(i) for i in range(count)],
            "nextPage": next_page,
        },
    )


class _Harness:
    """Client wired to a MockTransport that records every request."""

    def __init__(self, tmp_path, responder, max_daily_credits: int = 200) -> None:
        self.requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return responder(request)

        self.now = 1000.0
        self.cache = BudgetCache(
            JsonFileStore(tmp_path / "budget.json"),
            max_daily_credits=max_daily_credits,
            today=lambda: TODAY,
        )
        self.sleep = AsyncMock()
        self.client = NewsDataClient(
            self.cache,
            api_key="test-key",
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=self.sleep,
            clock=lambda: self.now,
        )


class TestFetchArticles:
    """Happy path and cache interaction."""

    def test_fetch_converts_and_caches(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(3, next_page="p2"))

        response = asyncio.run(h.client.fetch_articles(Category.INDONESIA, limit=10))

        assert len(response.articles) == 3
        assert response.total_results == 120
        assert response.next_page == "p2"
        assert response.from_cache is False

        article = response.articles[0]
        assert article.source == "Antara News (NewsData.io)"
        assert article.author == "Reporter One"
        assert article.category is Category.INDONESIA
        assert article.pub_date == datetime(2026, 10, 18, 8, 30, tzinfo=timezone.utc)

        params = h.requests[0].url.params
        assert params["apikey"] == "test-key"
        assert params["size"] == "10"
        assert params["country"] == "id"
        assert params["language"] == "id,en"
        assert h.cache.ledger.credits_used == 1

    def test_second_fetch_served_from_cache(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(2))

        async def run():
            await h.client.fetch_articles(Category.BRICS)
            return await h.client.fetch_articles(Category.BRICS)

        response = asyncio.run(run())
        assert response.from_cache is True
        assert len(response.articles) == 2
        assert len(h.requests) == 1
        assert h.cache.ledger.credits_used == 1

    def test_brics_uses_language_only(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(1))
        asyncio.run(h.client.fetch_articles(Category.BRICS))
        params = h.requests[0].url.params
        assert params["language"] == "en"
        assert "country" not in params

    def test_page_size_capped_and_excess_credits_refunded(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(10))
        asyncio.run(h.client.fetch_articles(Category.BALI, limit=35))
        assert h.requests[0].url.params["size"] == "10"
        assert h.cache.ledger.credits_used == 1

    def test_paged_request_bypasses_cache(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(2))

        async def run():
            await h.client.fetch_articles(Category.BALI)
            return await h.client.fetch_articles(Category.BALI, page="p2")

        response = asyncio.run(run())
        assert response.from_cache is False
        assert h.requests[1].url.params["page"] == "p2"

    def test_minimum_delay_between_requests(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(1))

        async def run():
            await h.client.fetch_articles(Category.BALI)
            h.now += 0.25
            await h.client.fetch_articles(Category.BRICS)

        asyncio.run(run())
        h.sleep.assert_awaited_once()
        assert h.sleep.await_args.args[0] == pytest.approx(0.75)

    def test_sparse_result_converted_with_empty_fields(self, tmp_path):
        def responder(req):
            sparse = {"title": None, "link": None, "source_id": "kompas"}
            return httpx.Response(
                200,
                json={"status": "success", "totalResults": 2, "results": [_result(0), sparse]},
            )

        h = _Harness(tmp_path, responder)
        response = asyncio.run(h.client.fetch_articles(Category.BALI))
        sparse_article = response.articles[1]
        assert sparse_article.title == ""
        assert sparse_article.pub_date is None
        assert sparse_article.source == "kompas (NewsData.io)"

    def test_malformed_result_dropped(self, tmp_path):
        def responder(req):
            broken = {**_result(1), "creator": [{"name": "Not a string"}]}
            return httpx.Response(
                200,
                json={"status": "success", "totalResults": 2, "results": [_result(0), broken]},
            )

        h = _Harness(tmp_path, responder)
        response = asyncio.run(h.client.fetch_articles(Category.BALI))
        assert [a.id for a in response.articles] == ["nd-0"]


class TestBudget:
    def test_exhausted_budget_raises_without_request(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(1), max_daily_credits=1)
        h.cache.ledger.credits_used = 1

        with pytest.raises(BudgetExceededError):
            asyncio.run(h.client.fetch_articles(Category.BALI))
        assert h.requests == []

    def test_cache_served_even_when_budget_exhausted(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(2), max_daily_credits=1)

        async def run():
            await h.client.fetch_articles(Category.BALI)
            return await h.client.fetch_articles(Category.BALI)

        assert asyncio.run(run()).from_cache is True
        assert h.client.is_available() is False

    @pytest.mark.parametrize("limit", [0, -5])
    def test_non_positive_limit_refused_without_request(self, tmp_path, limit):
        h = _Harness(tmp_path, lambda req: _success(1), max_daily_credits=5)
        h.cache.ledger.credits_used = 5

        with pytest.raises(ParameterError, match="limit"):
            asyncio.run(h.client.fetch_articles(Category.BALI, limit=limit))
        with pytest.raises(ParameterError, match="limit"):
            asyncio.run(h.client.search_articles("Nyepi", limit=limit))
        assert h.requests == []
        assert h.cache.ledger.credits_used == 5

    def test_failed_request_refunds_credits(self, tmp_path):
        h = _Harness(tmp_path, lambda req: httpx.Response(500, text="boom"))
        with pytest.raises(NetworkError):
            asyncio.run(h.client.fetch_articles(Category.BALI, limit=30))
        assert h.cache.ledger.credits_used == 0


class TestErrorMapping:
    """HTTP status to error taxonomy."""

    def test_401_disables_client(self, tmp_path):
        h = _Harness(tmp_path, lambda req: httpx.Response(401, json={"status": "error"}))

        with pytest.raises(AuthError):
            asyncio.run(h.client.fetch_articles(Category.BALI))
        assert h.client.disabled is True

        with pytest.raises(AuthError):
            asyncio.run(h.client.fetch_articles(Category.BRICS))
        assert len(h.requests) == 1

    def test_429_pauses_client(self, tmp_path):
        h = _Harness(tmp_path, lambda req: httpx.Response(429, json={"status": "error"}))

        with pytest.raises(RateLimitError):
            asyncio.run(h.client.fetch_articles(Category.BALI))
        assert h.client.is_rate_limited()

        with pytest.raises(RateLimitError):
            asyncio.run(h.client.fetch_articles(Category.BRICS))
        assert len(h.requests) == 1

        h.now += 61
        assert not h.client.is_rate_limited()

    def test_422_is_parameter_error(self, tmp_path):
        h = _Harness(
            tmp_path,
            lambda req: httpx.Response(
                422, json={"status": "error", "results": {"message": "size too large"}}
            ),
        )
        with pytest.raises(ParameterError, match="size too large"):
            asyncio.run(h.client.fetch_articles(Category.BALI))

    def test_api_error_status_is_parameter_error(self, tmp_path):
        h = _Harness(tmp_path, lambda req: httpx.Response(200, json={"status": "error"}))
        with pytest.raises(ParameterError):
            asyncio.run(h.client.fetch_articles(Category.BALI))

    def test_transport_error_is_network_error(self, tmp_path):
        def responder(req):
            raise httpx.ConnectError("connection refused", request=req)

        h = _Harness(tmp_path, responder)
        with pytest.raises(NetworkError):
            asyncio.run(h.client.fetch_articles(Category.BALI))

    def test_missing_key_is_auth_error(self, tmp_path):
        cache = BudgetCache(JsonFileStore(tmp_path / "b.json"), today=lambda: TODAY)
        client = NewsDataClient(cache, api_key="")
        assert client.is_configured() is False
        with pytest.raises(AuthError):
            asyncio.run(client.fetch_articles(Category.BALI))

    def test_environment_not_consulted_for_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("NEWSDATA_API_KEY", "from-env")
        cache = BudgetCache(JsonFileStore(tmp_path / "b.json"), today=lambda: TODAY)
        client = NewsDataClient(cache)
        assert client.api_key == ""
        assert client.is_configured() is False

    def test_key_injected_from_settings(self, settings):
        configured = settings.model_copy(update={"newsdata_api_key": "settings-key"})
        state = PipelineState.from_settings(configured)
        assert state.api_client.api_key == "settings-key"
        assert state.api_client.is_configured() is True


class TestExtras:
    def test_fetch_all_categories_isolates_failures(self, tmp_path):
        def responder(req):
            if req.url.params.get("language") == "en":
                return httpx.Response(503, text="unavailable")
            return _success(2)

        h = _Harness(tmp_path, responder)
        articles = asyncio.run(h.client.fetch_all_categories(limit=5))

        # BRICS failed, Indonesia and Bali succeeded
        assert len(articles) == 4
        assert [c.args[0] for c in h.sleep.await_args_list].count(0.5) == 2

    def test_search_articles(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(3))
        response = asyncio.run(h.client.search_articles("volcano", Category.BALI, limit=40))
        params = h.requests[0].url.params
        assert params["q"] == "volcano"
        assert params["size"] == "40"
        assert params["removeduplicate"] == "1"
        assert len(response.articles) == 3
        assert h.cache.ledger.credits_used == 4

    def test_usage_stats_and_reset(self, tmp_path):
        h = _Harness(tmp_path, lambda req: _success(1))

        async def run():
            await h.client.fetch_articles(Category.BALI)
            before = h.client.get_usage_stats()
            await h.client.reset_usage_counter()
            return before, h.client.get_usage_stats()

        before, after = asyncio.run(run())
        assert before["credits_used"] == 1
        assert before["remaining_credits"] == 199
        assert before["last_request_time"] is not None
        assert after["credits_used"] == 0
        assert after["is_available"] is True
