"""
Aggregation engine.

Runs one aggregation pass as an explicit state machine:

    TRY_BUDGETED_API -> EVALUATE_SUFFICIENCY -> BATCH_RSS_FETCH
        -> OPTIONAL_SCRAPE_SUPPLEMENT -> MERGE_SORT_DEDUPE -> DONE

The paid API is consulted first. If it already produced the target number of
articles the feed stage is skipped; otherwise active feeds are fetched tier by
tier in fixed-size concurrent batches, stopping as soon as the target is met.
Each source's articles are moderated as the source completes. A failing
source contributes zero articles and never aborts the run.

All mutable collaborators (caches, clients, moderator) live on a
PipelineState that is built once and injected into the engine.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from news_pipeline.cache.feed_cache import FeedCache
from news_pipeline.cache.newsdata_cache import BudgetCache, create_budget_cache
from news_pipeline.crawler.base_crawler import BaseCrawler
from news_pipeline.crawler.newsdata_client import NewsDataClient
from news_pipeline.crawler.rss_crawler import FeedFetchClient, FetchOutcome
from news_pipeline.crawler.sources_config import (
    NEWS_SOURCES,
    SCRAPER_SOURCES,
    get_active_scrapers,
    get_active_sources,
    get_source_tiers,
)
from news_pipeline.crawler.web_scraper import WebScraper
from news_pipeline.errors import (
    AuthError,
    BudgetExceededError,
    ConfigurationError,
    PipelineError,
)
from news_pipeline.filter.content_moderator import ContentModerator
from news_pipeline.models import Article, Category, SourceDescriptor, sort_newest_first
from news_pipeline.utils.config import Settings, get_settings
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

_API_SOURCE_NAME = "NewsData.io"


class AggregationState(str, Enum):
    """States of one aggregation pass."""

    TRY_BUDGETED_API = "try_budgeted_api"
    EVALUATE_SUFFICIENCY = "evaluate_sufficiency"
    BATCH_RSS_FETCH = "batch_rss_fetch"
    OPTIONAL_SCRAPE_SUPPLEMENT = "optional_scrape_supplement"
    MERGE_SORT_DEDUPE = "merge_sort_dedupe"
    DONE = "done"


@dataclass
class PipelineState:
    """Everything an aggregation pass reads or mutates."""

    settings: Settings
    feed_cache: FeedCache
    budget_cache: BudgetCache
    api_client: NewsDataClient | None
    fetch_client: FeedFetchClient
    scraper: WebScraper
    moderator: ContentModerator

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> PipelineState:
        """Wire every collaborator from Settings."""
        settings = settings or get_settings()
        feed_cache = FeedCache(
            max_age=settings.feed_cache_max_age,
            max_size=settings.feed_cache_max_size,
            stale_while_revalidate=settings.feed_cache_stale_while_revalidate,
        )
        budget_cache = create_budget_cache(settings)
        scraper = WebScraper(
            timeout=settings.fetch_timeout,
            batch_size=settings.rss_batch_size,
        )
        fetch_client = FeedFetchClient(
            cache=feed_cache,
            scraper=scraper,
            timeout=settings.fetch_timeout,
            max_attempts=settings.fetch_max_retries,
            backoff_base=settings.fetch_backoff_base,
            empty_feed_is_failure=settings.empty_feed_is_failure,
            batch_size=settings.rss_batch_size,
        )
        api_client = NewsDataClient(
            budget_cache,
            api_key=settings.newsdata_api_key,
            base_url=settings.newsdata_base_url,
            rate_limit_delay=settings.newsdata_rate_limit_delay,
            max_page_size=settings.newsdata_max_page_size,
            timeout=settings.fetch_timeout,
        )
        moderator = ContentModerator(
            min_quality_score=settings.min_quality_score,
            duplicate_threshold=settings.duplicate_threshold,
        )
        return cls(
            settings=settings,
            feed_cache=feed_cache,
            budget_cache=budget_cache,
            api_client=api_client,
            fetch_client=fetch_client,
            scraper=scraper,
            moderator=moderator,
        )


@dataclass
class AggregationResult:
    """Articles of one pass plus how they were obtained."""

    articles: list[Article] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class _RunContext:
    """Per-pass scratch state."""

    category: Category | None
    target: int
    include_scraped: bool
    use_api: bool
    sources: list[SourceDescriptor] | None
    trace: list[AggregationState] = field(default_factory=list)
    collected: list[list[Article]] = field(default_factory=list)
    source_stats: dict[str, dict[str, Any]] = field(default_factory=dict)
    fallbacks_used: list[str] = field(default_factory=list)
    rss_skipped: bool = False
    early_stop: bool = False

    @property
    def count(self) -> int:
        return sum(len(batch) for batch in self.collected)


class AggregationEngine:
    """Runs aggregation passes over an injected PipelineState."""

    def __init__(self, state: PipelineState) -> None:
        self.state = state
        self.batch_size = state.settings.rss_batch_size

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def aggregate(
        self,
        category: Category | None = None,
        include_scraped: bool = False,
        target: int | None = None,
        use_api: bool = True,
        sources: list[SourceDescriptor] | None = None,
    ) -> AggregationResult:
        """Run one aggregation pass.

        Args:
            category: Restrict every stage to one category. None means all.
            include_scraped: Run the scrape supplement after the feeds.
            target: Article count that ends the pass early. Defaults to
                ``target_article_count`` from Settings.
            use_api: Consult the budgeted API first.
            sources: Feed sources to use instead of the registry.

        Returns:
            AggregationResult. Operating failures never raise.

        Raises:
            ConfigurationError: The registry or settings are unusable.
        """
        started = time.monotonic()
        ctx = _RunContext(
            category=category,
            target=target if target is not None else self.state.settings.target_article_count,
            include_scraped=include_scraped,
            use_api=use_api,
            sources=sources,
        )
        logger.info(
            "Aggregation started: category=%s, target=%d, api=%s, scrape=%s",
            category.value if category else "all", ctx.target, use_api, include_scraped,
        )

        articles: list[Article] = []
        current = AggregationState.TRY_BUDGETED_API
        while current is not AggregationState.DONE:
            ctx.trace.append(current)
            try:
                if current is AggregationState.TRY_BUDGETED_API:
                    await self._try_budgeted_api(ctx)
                elif current is AggregationState.EVALUATE_SUFFICIENCY:
                    self._evaluate_sufficiency(ctx)
                elif current is AggregationState.BATCH_RSS_FETCH:
                    await self._batch_rss_fetch(ctx)
                elif current is AggregationState.OPTIONAL_SCRAPE_SUPPLEMENT:
                    await self._scrape_supplement(ctx)
                elif current is AggregationState.MERGE_SORT_DEDUPE:
                    articles = self._merge(ctx)
            except ConfigurationError:
                raise
            except Exception as e:
                logger.error(
                    "Aggregation stage %s failed: %s", current.value, e, exc_info=True
                )
            current = self._next_state(current, ctx)
        ctx.trace.append(AggregationState.DONE)

        elapsed = round(time.monotonic() - started, 2)
        metadata = {
            "sources_used": [
                name for name, stats in ctx.source_stats.items() if stats["approved"] > 0
            ],
            "fallbacks_used": ctx.fallbacks_used,
            "total": len(articles),
            "fetch_time": elapsed,
            "state_trace": [s.value for s in ctx.trace],
            "source_stats": ctx.source_stats,
            "rss_skipped": ctx.rss_skipped,
            "early_stop": ctx.early_stop,
        }
        logger.info(
            "Aggregation complete: %d articles from %d sources in %.2fs",
            len(articles), len(metadata["sources_used"]), elapsed,
        )
        return AggregationResult(articles=articles, metadata=metadata)

    async def aggregate_articles(self, **kwargs: Any) -> list[Article]:
        """Same as ``aggregate`` but returns only the article list."""
        result = await self.aggregate(**kwargs)
        return result.articles

    def get_service_status(self) -> dict[str, Any]:
        """Return current pipeline state for monitoring."""
        api = self.state.api_client
        return {
            "api": (
                {"configured": True, **api.get_usage_stats()}
                if api is not None and api.is_configured()
                else {"configured": False}
            ),
            "feed_cache": self.state.feed_cache.get_stats(),
            "budget_cache": self.state.budget_cache.get_stats(),
            "sources": {
                "total_feeds": len(NEWS_SOURCES),
                "active_feeds": len(get_active_sources()),
                "total_scrapers": len(SCRAPER_SOURCES),
                "active_scrapers": len(get_active_scrapers()),
            },
            "moderation": self.state.moderator.get_stats(),
        }

    async def cleanup(self) -> None:
        """Finish background refreshes, close HTTP sessions and the budget store."""
        await self.state.feed_cache.wait_for_refreshes()
        if self.state.api_client is not None:
            await self.state.api_client.close()
        await BaseCrawler.close_session()
        await self.state.budget_cache.close()
        logger.info("AggregationEngine cleanup complete")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    @staticmethod
    def _next_state(current: AggregationState, ctx: _RunContext) -> AggregationState:
        if current is AggregationState.TRY_BUDGETED_API:
            return AggregationState.EVALUATE_SUFFICIENCY
        if (
            current is AggregationState.EVALUATE_SUFFICIENCY and not ctx.rss_skipped
        ):
            return AggregationState.BATCH_RSS_FETCH
        if current in (
            AggregationState.EVALUATE_SUFFICIENCY,
            AggregationState.BATCH_RSS_FETCH,
        ):
            if ctx.include_scraped:
                return AggregationState.OPTIONAL_SCRAPE_SUPPLEMENT
            return AggregationState.MERGE_SORT_DEDUPE
        if current is AggregationState.OPTIONAL_SCRAPE_SUPPLEMENT:
            return AggregationState.MERGE_SORT_DEDUPE
        return AggregationState.DONE

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _try_budgeted_api(self, ctx: _RunContext) -> None:
        api = self.state.api_client
        if not ctx.use_api:
            logger.info("Budgeted API stage disabled for this pass")
            return
        if api is None or not api.is_configured():
            logger.info("Budgeted API not configured, skipping")
            return

        categories = [ctx.category] if ctx.category else list(Category)
        limit = self.state.settings.newsdata_max_page_size
        results = await asyncio.gather(
            *(api.fetch_articles(cat, limit) for cat in categories),
            return_exceptions=True,
        )
        for cat, result in zip(categories, results):
            name = f"{_API_SOURCE_NAME} {cat.value}"
            if isinstance(result, BudgetExceededError):
                logger.info("[%s] Credit budget exhausted, API skipped", name)
                continue
            if isinstance(result, AuthError):
                logger.error("[%s] Authentication failed: %s", name, result)
                continue
            if isinstance(result, PipelineError):
                logger.warning("[%s] API fetch failed: %s", name, result)
                continue
            if isinstance(result, BaseException):
                logger.error("[%s] Unexpected API error: %s", name, result)
                continue
            origin = "api_cache" if result.from_cache else "api"
            self._accept(ctx, name, result.articles, origin)

    def _evaluate_sufficiency(self, ctx: _RunContext) -> None:
        api = self.state.api_client
        api_available = api is not None and api.is_available()
        if ctx.count >= ctx.target and api_available:
            ctx.rss_skipped = True
            logger.info(
                "API returned %d articles (target %d), skipping feeds",
                ctx.count, ctx.target,
            )

    async def _batch_rss_fetch(self, ctx: _RunContext) -> None:
        pool = ctx.sources if ctx.sources is not None else get_active_sources(ctx.category)
        active = [src for src in pool if src.active]
        if len(active) < len(pool):
            logger.debug("Skipping %d inactive sources", len(pool) - len(active))

        for tier in get_source_tiers(active):
            for start in range(0, len(tier), self.batch_size):
                batch = tier[start : start + self.batch_size]
                outcomes = await asyncio.gather(
                    *(self.state.fetch_client.fetch_source_outcome(src) for src in batch),
                    return_exceptions=True,
                )
                for src, outcome in zip(batch, outcomes):
                    if isinstance(outcome, BaseException):
                        logger.error("[%s] Fetch raised: %s", src.name, outcome)
                        self._record_failure(ctx, src.name)
                        continue
                    self._accept_outcome(ctx, outcome)

                if ctx.count >= ctx.target:
                    ctx.early_stop = True
                    logger.info(
                        "Target of %d reached with %d articles, stopping feed fetch",
                        ctx.target, ctx.count,
                    )
                    return

    async def _scrape_supplement(self, ctx: _RunContext) -> None:
        configs = get_active_scrapers(ctx.category)
        if not configs:
            logger.info("No active scraper sources for supplement")
            return
        for start in range(0, len(configs), self.batch_size):
            batch = configs[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.state.scraper.scrape_source(cfg) for cfg in batch),
                return_exceptions=True,
            )
            for cfg, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("[%s] Scrape raised: %s", cfg.name, result)
                    self._record_failure(ctx, cfg.name)
                    continue
                self._accept(ctx, cfg.name, result, "scrape")

    @staticmethod
    def _merge(ctx: _RunContext) -> list[Article]:
        seen_links: set[str] = set()
        merged: list[Article] = []
        for batch in ctx.collected:
            for article in batch:
                if article.link in seen_links:
                    continue
                seen_links.add(article.link)
                merged.append(article)
        dropped = ctx.count - len(merged)
        if dropped:
            logger.info("Merge dropped %d articles with repeated links", dropped)
        return sort_newest_first(merged)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _accept_outcome(self, ctx: _RunContext, outcome: FetchOutcome) -> None:
        if outcome.used_fallback:
            ctx.fallbacks_used.append(outcome.source)
        self._accept(ctx, outcome.source, outcome.articles, outcome.origin)
        ctx.source_stats[outcome.source]["attempts"] = outcome.attempts
        ctx.source_stats[outcome.source]["failures"] = [f.value for f in outcome.failures]
        ctx.source_stats[outcome.source]["error"] = (
            type(outcome.error).__name__ if outcome.error is not None else None
        )

    def _accept(
        self,
        ctx: _RunContext,
        name: str,
        articles: list[Article],
        origin: str,
    ) -> None:
        """Moderate one source's articles and keep the approved ones."""
        approved: list[Article] = []
        rejected = 0
        if articles:
            batch = self.state.moderator.moderate_articles(articles)
            approved = batch.approved
            rejected = len(batch.rejected)
        ctx.collected.append(approved)
        ctx.source_stats[name] = {
            "fetched": len(articles),
            "approved": len(approved),
            "rejected": rejected,
            "origin": origin,
        }
        logger.debug(
            "[%s] %d fetched, %d approved (%s)", name, len(articles), len(approved), origin
        )

    @staticmethod
    def _record_failure(ctx: _RunContext, name: str) -> None:
        ctx.source_stats[name] = {"fetched": 0, "approved": 0, "rejected": 0, "origin": "none"}
