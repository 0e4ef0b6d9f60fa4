"""
RSS/Atom feed fetch client.

Fetches one feed per call with a 15s timeout, rotating the User-Agent on every
attempt. Each failed attempt is classified (timeout, HTML instead of XML,
HTTP error, DNS error, parse error, empty feed). Retryable failures back off
2^n seconds for up to three attempts; HTML served in place of a feed is
never retried. When attempts run out, the scrape client is tried for the
same logical source. The caller always gets a list, never an exception.

The retry/fallback flow is an explicit state machine:

    ATTEMPT -> BACKOFF -> ATTEMPT ... -> FALLBACK -> DONE
"""

from __future__ import annotations

import asyncio
import re
import socket
import time
from calendar import timegm
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable

import aiohttp
import feedparser

from news_pipeline.cache.feed_cache import FeedCache
from news_pipeline.crawler.base_crawler import (
    BaseCrawler,
    HttpResponse,
    UserAgentRotator,
    clean_text,
    slugify,
    strip_html,
)
from news_pipeline.crawler.sources_config import (
    get_active_sources,
    get_scraper_for,
    get_source_by_name,
)
from news_pipeline.crawler.web_scraper import WebScraper
from news_pipeline.errors import (
    FeedFetchError,
    FetchFailureKind,
    PipelineError,
    ValidationError,
)
from news_pipeline.models import Article, Category, SourceDescriptor, sort_newest_first
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_FETCH_TIMEOUT: float = 15.0
_MAX_ATTEMPTS: int = 3
_BACKOFF_BASE: float = 2.0

_DESCRIPTION_MAX_LENGTH = 200

_FEED_HEADERS = {
    "Accept": "application/rss+xml, application/xml, text/xml",
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
}

_HTML_PREFIX_RE = re.compile(r"^\s*(<!doctype\s+html|<html)", re.IGNORECASE)
_XML_PREFIX_RE = re.compile(r"^\s*(<\?xml|<rss|<feed|<rdf)", re.IGNORECASE)
_IMG_SRC_RE = re.compile(r"<img[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)


class FetchState(str, Enum):
    """States of the per-source retry/fallback machine."""

    ATTEMPT = "attempt"
    BACKOFF = "backoff"
    FALLBACK = "fallback"
    DONE = "done"


@dataclass
class FetchOutcome:
    """Everything one ``fetch_source`` run produced.

    Attributes:
        articles: Final article list (possibly empty).
        origin: "feed", "cache", "not_modified", "scrape" or "none".
        attempts: Feed attempts made.
        failures: Failure kind per failed attempt, in order.
        transitions: State sequence the machine walked through.
        error: Why the feed was given up on, as a pipeline error; None if
            the feed delivered.
    """

    source: str
    articles: list[Article] = field(default_factory=list)
    origin: str = "none"
    attempts: int = 0
    failures: list[FetchFailureKind] = field(default_factory=list)
    transitions: list[FetchState] = field(default_factory=list)
    error: PipelineError | None = None

    @property
    def used_fallback(self) -> bool:
        return self.origin == "scrape"


def truncate_description(text: str, max_length: int = _DESCRIPTION_MAX_LENGTH) -> str:
    """Strip HTML and cut to ``max_length`` at a word boundary, adding '...'."""
    cleaned = strip_html(text)
    if len(cleaned) <= max_length:
        return cleaned
    truncated = cleaned[:max_length]
    last_space = truncated.rfind(" ")
    if last_space > 0:
        return truncated[:last_space] + "..."
    return truncated + "..."


def classify_exception(exc: BaseException, source: str) -> FeedFetchError:
    """Turn a transport exception into a tagged attempt failure."""
    if isinstance(exc, FeedFetchError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return FeedFetchError(FetchFailureKind.TIMEOUT, "Request timed out", source=source)
    if isinstance(exc, aiohttp.ClientConnectorError) and isinstance(
        exc.os_error, socket.gaierror
    ):
        return FeedFetchError(
            FetchFailureKind.DNS_ERROR, f"DNS resolution failed: {exc}", source=source
        )
    if isinstance(exc, socket.gaierror):
        return FeedFetchError(
            FetchFailureKind.DNS_ERROR, f"DNS resolution failed: {exc}", source=source
        )
    if isinstance(exc, aiohttp.ClientResponseError):
        return FeedFetchError(
            FetchFailureKind.HTTP_ERROR, str(exc), source=source, status=exc.status
        )
    if isinstance(exc, aiohttp.ClientError):
        return FeedFetchError(FetchFailureKind.HTTP_ERROR, str(exc), source=source)
    return FeedFetchError(FetchFailureKind.PARSE_ERROR, str(exc), source=source)


class FeedFetchClient(BaseCrawler):
    """Per-source feed fetcher with retry, classification and scrape fallback.

    Attributes:
        cache: Tier A feed cache. None disables caching.
        scraper: Scrape client used for the fallback step. None disables it.
        max_attempts: Feed attempts before falling back.
        backoff_base: Backoff after attempt n is ``backoff_base ** n`` seconds.
        empty_feed_is_failure: Treat a well-formed feed with no items as a
            failed attempt (retry, then fallback) instead of a valid result.
    """

    def __init__(
        self,
        cache: FeedCache | None = None,
        scraper: WebScraper | None = None,
        timeout: float = _FETCH_TIMEOUT,
        max_attempts: int = _MAX_ATTEMPTS,
        backoff_base: float = _BACKOFF_BASE,
        empty_feed_is_failure: bool = True,
        user_agents: UserAgentRotator | None = None,
        batch_size: int = 6,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        super().__init__("FeedFetchClient", timeout=timeout, user_agents=user_agents)
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.cache = cache
        self.scraper = scraper
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.empty_feed_is_failure = empty_feed_is_failure
        self.batch_size = batch_size
        self._sleep = sleep

    async def crawl(self, target: SourceDescriptor) -> list[Article]:
        return await self.fetch_source(target)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_source(
        self,
        source: SourceDescriptor,
        skip_cache: bool = False,
    ) -> list[Article]:
        """Fetch one source. Never raises for operating failures."""
        outcome = await self.fetch_source_outcome(source, skip_cache=skip_cache)
        return outcome.articles

    async def fetch_source_outcome(
        self,
        source: SourceDescriptor,
        skip_cache: bool = False,
    ) -> FetchOutcome:
        """Fetch one source and report how the articles were obtained."""
        outcome = FetchOutcome(source=source.name)

        if not source.active:
            logger.debug("[%s] Inactive source, skipped", source.name)
            outcome.transitions.append(FetchState.DONE)
            return outcome

        if self.cache is not None and not skip_cache:
            cached = await self.cache.get(
                source.key,
                revalidate=lambda: self.fetch_source(source, skip_cache=True),
            )
            if cached is not None:
                outcome.articles = cached
                outcome.origin = "cache"
                outcome.transitions.append(FetchState.DONE)
                return outcome

        try:
            await self._run_state_machine(source, outcome)
        except Exception as e:
            # Last line of isolation: a bug in parsing must not escape
            logger.error("[%s] Unexpected fetch error: %s", source.name, e, exc_info=True)
            outcome.articles = []
            outcome.origin = "none"
        return outcome

    async def fetch_by_category(self, category: Category) -> list[Article]:
        """Fetch every active source of ``category``, newest first."""
        return await self._fetch_many(get_active_sources(category))

    async def fetch_all_sources(self) -> list[Article]:
        """Fetch every active source, newest first."""
        return await self._fetch_many(get_active_sources())

    async def test_source(self, name: str) -> dict[str, Any]:
        """Probe one feed by name, bypassing the cache."""
        source = get_source_by_name(name)
        if source is None:
            return {"name": name, "found": False, "success": False, "count": 0}
        started = time.monotonic()
        outcome = await self.fetch_source_outcome(
            source.model_copy(update={"active": True}), skip_cache=True
        )
        return {
            "name": source.name,
            "found": True,
            "active": source.active,
            "success": bool(outcome.articles),
            "count": len(outcome.articles),
            "origin": outcome.origin,
            "attempts": outcome.attempts,
            "failures": [f.value for f in outcome.failures],
            "elapsed_seconds": round(time.monotonic() - started, 2),
            "sample": outcome.articles[0].title if outcome.articles else None,
        }

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run_state_machine(
        self,
        source: SourceDescriptor,
        outcome: FetchOutcome,
    ) -> None:
        state = FetchState.ATTEMPT
        while state is not FetchState.DONE:
            outcome.transitions.append(state)

            if state is FetchState.ATTEMPT:
                outcome.attempts += 1
                try:
                    articles, origin = await self._attempt(source)
                except FeedFetchError as err:
                    outcome.failures.append(err.kind)
                    logger.warning(
                        "[%s] Attempt %d/%d failed (%s): %s",
                        source.name, outcome.attempts, self.max_attempts,
                        err.kind.value, err,
                    )
                    if err.retryable and outcome.attempts < self.max_attempts:
                        state = FetchState.BACKOFF
                    else:
                        outcome.error = err.as_taxonomy()
                        state = FetchState.FALLBACK
                    continue
                outcome.articles = articles
                outcome.origin = origin
                state = FetchState.DONE

            elif state is FetchState.BACKOFF:
                delay = self.backoff_base ** outcome.attempts
                logger.info("[%s] Retrying in %.0fs", source.name, delay)
                await self._sleep(delay)
                state = FetchState.ATTEMPT

            elif state is FetchState.FALLBACK:
                outcome.articles = await self._fallback(source)
                outcome.origin = "scrape" if outcome.articles else "none"
                state = FetchState.DONE

        outcome.transitions.append(FetchState.DONE)

    async def _fallback(self, source: SourceDescriptor) -> list[Article]:
        if self.scraper is None:
            logger.error("[%s] Feed failed and no scraper configured", source.name)
            return []
        config = get_scraper_for(source.name)
        if config is None:
            logger.error(
                "[%s] Feed failed after %d attempts, no scraper mapped",
                source.name, self.max_attempts,
            )
            return []
        logger.info("[%s] Falling back to scraper '%s'", source.name, config.name)
        articles = await self.scraper.scrape_source(config)
        if articles and self.cache is not None:
            await self.cache.set(source.key, articles)
        return articles

    async def _attempt(self, source: SourceDescriptor) -> tuple[list[Article], str]:
        """One feed request. Raises FeedFetchError on any failure."""
        headers = {**_FEED_HEADERS, "User-Agent": self.user_agents.next()}
        if self.cache is not None:
            headers.update(self.cache.get_conditional_headers(source.key))

        try:
            response = await self._download(source.url, headers)
        except Exception as e:
            raise classify_exception(e, source.name) from e

        if response.status == 304 and self.cache is not None:
            cached = await self.cache.touch(source.key)
            if cached is not None:
                logger.debug("[%s] Not modified, serving cached feed", source.name)
                return cached, "not_modified"

        self._check_response(response, source)
        articles = self.parse_feed(response.text, source)

        if not articles and self.empty_feed_is_failure:
            raise FeedFetchError(
                FetchFailureKind.EMPTY_FEED,
                f"No articles found in feed for {source.name}",
                source=source.name,
            )

        if self.cache is not None:
            await self.cache.set(
                source.key,
                articles,
                etag=response.headers.get("etag"),
                last_modified=response.headers.get("last-modified"),
            )
        return articles, "feed"

    @staticmethod
    def _check_response(response: HttpResponse, source: SourceDescriptor) -> None:
        if response.status >= 400 or response.status == 304:
            raise FeedFetchError(
                FetchFailureKind.HTTP_ERROR,
                f"HTTP {response.status} from {source.url}",
                source=source.name,
                status=response.status,
            )
        looks_html = _HTML_PREFIX_RE.match(response.text) is not None or (
            "text/html" in response.content_type
            and _XML_PREFIX_RE.match(response.text) is None
        )
        if looks_html:
            raise FeedFetchError(
                FetchFailureKind.HTML_INSTEAD_OF_XML,
                f"HTML page returned instead of a feed ({response.content_type or 'no content-type'})",
                source=source.name,
                status=response.status,
            )

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_feed(self, raw: str, source: SourceDescriptor) -> list[Article]:
        """Parse feed XML into articles.

        Raises:
            FeedFetchError: PARSE_ERROR when the document is not a feed.
        """
        feed = feedparser.parse(raw)
        if feed.bozo and not feed.entries:
            raise FeedFetchError(
                FetchFailureKind.PARSE_ERROR,
                f"Feed parse error: {feed.get('bozo_exception')}",
                source=source.name,
            )

        fetched_ms = int(time.time() * 1000)
        slug = slugify(source.name)
        articles: list[Article] = []
        for index, entry in enumerate(feed.entries):
            article = self._parse_entry(entry, source, f"{slug}-{index}-{fetched_ms}")
            if article is not None:
                articles.append(article)
        return articles

    def _parse_entry(
        self,
        entry: Any,
        source: SourceDescriptor,
        article_id: str,
    ) -> Article | None:
        """Parse a single feed entry into an Article."""
        title = clean_text(entry.get("title", "")) or "No title"

        raw_content = entry.get("summary") or entry.get("description") or ""
        if not raw_content and entry.get("content"):
            raw_content = entry.content[0].get("value", "")

        author = entry.get("author") or None

        try:
            return Article.build(
                id=article_id,
                title=title,
                link=entry.get("link", "") or "",
                description=truncate_description(raw_content),
                pub_date=self._parse_date(entry),
                author=author,
                category=source.category,
                source=source.name,
                source_url=source.url,
                image_url=self._extract_image_url(entry, raw_content),
            )
        except ValidationError as e:
            logger.debug("[%s] Dropping malformed entry: %s", source.name, e)
            return None

    def _parse_date(self, entry: Any) -> datetime | None:
        """Extract the publication date from a feed entry.

        Returns:
            Parsed UTC datetime. A missing date defaults to now; a date that
            is present but unparseable yields None so moderation can flag it.
        """
        for date_field in ("published_parsed", "updated_parsed"):
            parsed = entry.get(date_field)
            if parsed:
                try:
                    return datetime.fromtimestamp(timegm(parsed), tz=timezone.utc)
                except (ValueError, OverflowError):
                    pass

        raw_present = False
        for raw_field in ("published", "updated", "created"):
            raw = entry.get(raw_field)
            if raw:
                raw_present = True
                try:
                    return parsedate_to_datetime(raw).astimezone(timezone.utc)
                except (ValueError, TypeError, IndexError):
                    pass
                try:
                    parsed_iso = datetime.fromisoformat(raw.replace("Z", "+00:00"))
                    if parsed_iso.tzinfo is None:
                        parsed_iso = parsed_iso.replace(tzinfo=timezone.utc)
                    return parsed_iso.astimezone(timezone.utc)
                except ValueError:
                    pass

        if raw_present:
            return None
        return datetime.now(tz=timezone.utc)

    @staticmethod
    def _extract_image_url(entry: Any, content: str) -> str | None:
        """Enclosure, media:thumbnail, media:content, then first <img> in content."""
        for enclosure in entry.get("enclosures", []) or []:
            if str(enclosure.get("type", "")).startswith("image/") and enclosure.get("href"):
                return enclosure["href"]

        for thumb in entry.get("media_thumbnail", []) or []:
            if thumb.get("url"):
                return thumb["url"]

        for media in entry.get("media_content", []) or []:
            media_type = str(media.get("type", "")) or str(media.get("medium", ""))
            if media.get("url") and media_type.startswith("image"):
                return media["url"]

        body = content
        if entry.get("content"):
            body = entry.content[0].get("value", "") or content
        match = _IMG_SRC_RE.search(body or "")
        return match.group(1) if match else None

    # ------------------------------------------------------------------
    # Multi-source
    # ------------------------------------------------------------------

    async def _fetch_many(self, sources: list[SourceDescriptor]) -> list[Article]:
        articles: list[Article] = []
        succeeded = 0
        for start in range(0, len(sources), self.batch_size):
            batch = sources[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.fetch_source(src) for src in batch),
                return_exceptions=True,
            )
            for src, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("[%s] Fetch raised: %s", src.name, result)
                    continue
                if result:
                    succeeded += 1
                articles.extend(result)
        logger.info(
            "Feed summary: %d/%d sources succeeded, %d total articles",
            succeeded, len(sources), len(articles),
        )
        return sort_newest_first(articles)
