"""
NewsData.io budgeted API client.

Order of operations per fetch:
  1. Serve Tier B (BudgetCache) if it holds a usable entry.
  2. Reserve ceil(limit / articles_per_credit) credits; refuse with
     BudgetExceededError when the daily ledger has no room.
  3. Send the request behind a minimum inter-request delay.
  4. Convert results to Articles, settle the reservation to the credits the
     request actually consumed, and cache with the category TTL.

Status mapping: 401 -> AuthError (client disabled for the process),
429 -> RateLimitError (client paused), 422 -> ParameterError,
transport errors and 5xx -> NetworkError.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable

import httpx

from news_pipeline.cache.newsdata_cache import BudgetCache
from news_pipeline.errors import (
    AuthError,
    BudgetExceededError,
    NetworkError,
    ParameterError,
    RateLimitError,
    ValidationError,
)
from news_pipeline.models import (
    API_SOURCE_SUFFIX,
    Article,
    Category,
    FetchResponse,
)
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_NEWSDATA_BASE_URL = "https://newsdata.io/api/1/news"

_API_TIMEOUT: float = 15.0

# Minimum seconds between two requests
_RATE_LIMIT_DELAY: float = 1.0

# Free tier page size cap
_MAX_PAGE_SIZE = 10

# Search allows larger pages
_MAX_SEARCH_SIZE = 50

# Pause after a 429 before the client tries again (seconds)
_RATE_LIMIT_PAUSE: float = 60.0

# Pause between categories in fetch_all_categories (seconds)
_CATEGORY_PAUSE: float = 0.5

_REQUEST_HEADERS = {
    "User-Agent": "NewsPipeline/1.0 (News Aggregator)",
    "Accept": "application/json",
}

# Per-category query parameters
_CATEGORY_PARAMS: dict[Category, dict[str, str]] = {
    Category.BRICS: {"language": "en"},
    Category.INDONESIA: {"country": "id", "language": "id,en"},
    Category.BALI: {"country": "id", "language": "id,en"},
}


class NewsDataClient:
    """Rate-limited, credit-budgeted client for the NewsData.io news endpoint.

    Attributes:
        cache: Tier B cache that also owns the credit ledger.
        disabled: True after an authentication failure.
    """

    def __init__(
        self,
        cache: BudgetCache,
        api_key: str = "",
        base_url: str = _NEWSDATA_BASE_URL,
        rate_limit_delay: float = _RATE_LIMIT_DELAY,
        max_page_size: int = _MAX_PAGE_SIZE,
        timeout: float = _API_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.api_key = api_key
        self.base_url = base_url
        self.rate_limit_delay = rate_limit_delay
        self.max_page_size = max_page_size
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._clock = clock
        self._request_lock = asyncio.Lock()
        self._last_request_time: float | None = None
        self._last_request_wallclock: datetime | None = None
        self._paused_until: float = 0.0
        self.disabled = False
        self.request_count = 0

        if not self.api_key:
            logger.warning("NEWSDATA_API_KEY not set -- API stage will be skipped")

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def is_rate_limited(self) -> bool:
        return self._clock() < self._paused_until

    def is_available(self) -> bool:
        """True if a new request could be issued right now."""
        return (
            self.is_configured()
            and not self.disabled
            and not self.is_rate_limited()
            and not self.cache.has_exceeded_limit()
        )

    def _check_usable(self) -> None:
        if not self.is_configured():
            raise AuthError("NewsData API key is not configured")
        if self.disabled:
            raise AuthError("NewsData client disabled after authentication failure")
        if self.is_rate_limited():
            raise RateLimitError("NewsData client paused after HTTP 429")

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_articles(
        self,
        category: Category,
        limit: int = 10,
        page: str | None = None,
    ) -> FetchResponse:
        """Fetch one page of articles for ``category``.

        Raises:
            AuthError: Missing or rejected API key.
            RateLimitError: HTTP 429, or the client is paused.
            ParameterError: HTTP 422 or an API-reported error.
            NetworkError: Transport failure or 5xx.
            BudgetExceededError: The daily ledger cannot cover the request.
        """
        if limit < 1:
            raise ParameterError(f"limit must be at least 1, got {limit}", source="NewsData.io")
        if page is None:
            cached = await self.cache.get(category)
            if cached is not None:
                return FetchResponse(
                    articles=cached, total_results=len(cached), from_cache=True
                )

        self._check_usable()

        reserved = self.cache.credits_needed(limit)
        if not await self.cache.reserve_credits(reserved):
            raise BudgetExceededError(
                f"Daily credit budget exhausted ({self.cache.ledger.credits_used}/"
                f"{self.cache.ledger.limit}), need {reserved}",
                source="NewsData.io",
            )

        size = max(1, min(limit, self.max_page_size))
        params = {"apikey": self.api_key, "size": str(size), **_CATEGORY_PARAMS[category]}
        if page:
            params["page"] = page

        try:
            data = await self._throttled_request(params)
        except Exception:
            await self.cache.refund_credits(reserved)
            raise

        consumed = self.cache.credits_needed(size)
        if consumed < reserved:
            await self.cache.refund_credits(reserved - consumed)

        articles = self._convert_results(data.get("results") or [], category)
        logger.info(
            "[NewsData.io] %d %s articles received (%s total available)",
            len(articles), category.value, data.get("totalResults", "?"),
        )
        if page is None:
            await self.cache.set(category, articles)

        return FetchResponse(
            articles=articles,
            total_results=int(data.get("totalResults") or 0),
            next_page=data.get("nextPage"),
        )

    async def fetch_all_categories(self, limit: int = 10) -> list[Article]:
        """Fetch every category; one category's failure does not stop the rest."""
        articles: list[Article] = []
        for index, category in enumerate(Category):
            if index:
                await self._sleep(_CATEGORY_PAUSE)
            try:
                response = await self.fetch_articles(category, limit)
            except (AuthError, BudgetExceededError) as e:
                logger.error("[NewsData.io] Stopping category loop: %s", e)
                break
            except Exception as e:
                logger.error("[NewsData.io] Failed to fetch %s: %s", category.value, e)
                continue
            articles.extend(response.articles)
        return articles

    async def search_articles(
        self,
        query: str,
        category: Category = Category.BRICS,
        limit: int = 10,
    ) -> FetchResponse:
        """Keyword search. Charged against the ledger, never cached."""
        if limit < 1:
            raise ParameterError(f"limit must be at least 1, got {limit}", source="NewsData.io")
        self._check_usable()
        size = max(1, min(limit, _MAX_SEARCH_SIZE))
        credits = self.cache.credits_needed(size)
        if not await self.cache.reserve_credits(credits):
            raise BudgetExceededError("Daily credit budget exhausted", source="NewsData.io")

        params = {
            "apikey": self.api_key,
            "size": str(size),
            **_CATEGORY_PARAMS[category],
            "q": query,
            "removeduplicate": "1",
        }
        try:
            data = await self._throttled_request(params)
        except Exception:
            await self.cache.refund_credits(credits)
            raise
        return FetchResponse(
            articles=self._convert_results(data.get("results") or [], category),
            total_results=int(data.get("totalResults") or 0),
            next_page=data.get("nextPage"),
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    async def _throttled_request(self, params: dict[str, str]) -> dict[str, Any]:
        """Serialize requests and keep ``rate_limit_delay`` between them."""
        async with self._request_lock:
            if self._last_request_time is not None:
                wait = self.rate_limit_delay - (self._clock() - self._last_request_time)
                if wait > 0:
                    logger.debug("[NewsData.io] Rate limit wait %.2fs", wait)
                    await self._sleep(wait)
            try:
                return await self._request(params)
            finally:
                self._last_request_time = self._clock()
                self._last_request_wallclock = datetime.now(tz=timezone.utc)
                self.request_count += 1

    async def _request(self, params: dict[str, str]) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(
                self.base_url, params=params, headers=_REQUEST_HEADERS
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"NewsData request timed out: {e}", source="NewsData.io") from e
        except httpx.HTTPError as e:
            raise NetworkError(f"NewsData request failed: {e}", source="NewsData.io") from e

        status = response.status_code
        if status == 401:
            self.disabled = True
            logger.error("[NewsData.io] Invalid API key, client disabled")
            raise AuthError("Invalid NewsData API key", source="NewsData.io")
        if status == 429:
            self._paused_until = self._clock() + _RATE_LIMIT_PAUSE
            logger.warning(
                "[NewsData.io] Rate limit exceeded, pausing %.0fs", _RATE_LIMIT_PAUSE
            )
            raise RateLimitError("NewsData rate limit exceeded", source="NewsData.io")
        if status == 422:
            raise ParameterError(
                f"Invalid NewsData parameters: {self._error_message(response)}",
                source="NewsData.io",
            )
        if status != 200:
            raise NetworkError(
                f"NewsData HTTP {status}: {self._error_message(response)}",
                source="NewsData.io",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise NetworkError(f"NewsData returned invalid JSON: {e}", source="NewsData.io") from e

        if data.get("status") != "success":
            raise ParameterError(
                f"NewsData API error: {self._error_message(response)}",
                source="NewsData.io",
            )
        return data

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        results = body.get("results")
        if isinstance(results, dict) and results.get("message"):
            return str(results["message"])
        return str(body.get("message") or "Unknown error")

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def _convert_results(
        self, results: list[dict[str, Any]], category: Category
    ) -> list[Article]:
        articles: list[Article] = []
        for raw in results:
            article = self.convert_to_article(raw, category)
            if article is not None:
                articles.append(article)
        return articles

    @staticmethod
    def convert_to_article(raw: dict[str, Any], category: Category) -> Article | None:
        """Map one API result onto an Article. Returns None if malformed."""
        creators = raw.get("creator") or []
        try:
            return Article.build(
                id=str(raw.get("article_id") or raw.get("link") or ""),
                title=(raw.get("title") or "").strip(),
                link=raw.get("link") or "",
                description=(raw.get("description") or "").strip(),
                pub_date=_parse_api_date(raw.get("pubDate")),
                author=creators[0] if creators else None,
                category=category,
                source=f"{raw.get('source_name') or raw.get('source_id') or 'Unknown'}{API_SOURCE_SUFFIX}",
                source_url=raw.get("source_url") or "",
                image_url=raw.get("image_url") or None,
            )
        except ValidationError as e:
            logger.debug("[NewsData.io] Dropping malformed result: %s", e)
            return None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_usage_stats(self) -> dict[str, Any]:
        cache_stats = self.cache.get_stats()
        return {
            "credits_used": cache_stats["daily_credits_used"],
            "credits_limit": cache_stats["daily_credit_limit"],
            "remaining_credits": cache_stats["remaining_credits"],
            "max_articles_remaining": cache_stats["max_articles_remaining"],
            "is_available": self.is_available(),
            "disabled": self.disabled,
            "rate_limited": self.is_rate_limited(),
            "request_count": self.request_count,
            "last_request_time": (
                self._last_request_wallclock.isoformat()
                if self._last_request_wallclock else None
            ),
            "cache_hit_rate": cache_stats["hit_rate"],
            "cached_articles": cache_stats["total_articles"],
        }

    async def reset_usage_counter(self) -> None:
        """Zero the ledger and re-enable a rate-limited client."""
        await self.cache.reset_daily_counter()
        self._paused_until = 0.0
        self.request_count = 0

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None


def _parse_api_date(value: Any) -> datetime | None:
    """NewsData sends 'YYYY-MM-DD HH:MM:SS' in UTC."""
    if not value:
        return None
    text = str(value).strip()
    for parser in (
        lambda s: datetime.strptime(s, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc),
        lambda s: datetime.fromisoformat(s.replace("Z", "+00:00")),
        parsedate_to_datetime,
    ):
        try:
            parsed = parser(text)
        except (ValueError, TypeError, IndexError):
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None
