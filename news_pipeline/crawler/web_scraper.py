"""
HTML scrape client.

Fallback for sites without a usable feed. Each site is described by a
ScraperConfig: a container selector picks the repeated article nodes and
nested selectors pull link, title, description, date, author and image out
of each node. Relative URLs resolve against the config's base URL.

A failing site is logged and skipped; nothing here raises to the caller.
"""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag

from news_pipeline.crawler.base_crawler import (
    BaseCrawler,
    UserAgentRotator,
    clean_text,
    slugify,
)
from news_pipeline.crawler.sources_config import (
    SCRAPER_SOURCES,
    get_active_scrapers,
)
from news_pipeline.errors import ValidationError
from news_pipeline.models import Article, Category, ScraperConfig, sort_newest_first
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_SCRAPE_TIMEOUT: float = 15.0

_DESCRIPTION_MAX_LENGTH = 200

# Concurrent sites per batch in scrape_all / scrape_by_category
_SCRAPE_BATCH_SIZE = 6

_REQUEST_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

_RELATIVE_DATE_RE = re.compile(
    r"(\d+)\s*(minute|min|hour|day|week|month)s?\s+ago", re.IGNORECASE
)

_RELATIVE_UNITS: dict[str, timedelta] = {
    "minute": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}

# Tried in order after RFC 2822 and ISO 8601
_DATE_FORMATS: tuple[str, ...] = (
    "%B %d, %Y",
    "%b %d, %Y",
    "%B %d, %Y %H:%M",
    "%d %B %Y",
    "%d %b %Y",
    "%d %B %Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d.%m.%Y",
)


def parse_date_text(text: str, now: datetime | None = None) -> datetime | None:
    """Parse a scraped date string into an aware UTC datetime.

    Tries RFC 2822, ISO 8601 and a list of common display formats, then
    relative phrases ("3 hours ago", "today", "yesterday").

    Returns:
        The parsed datetime, or None when nothing matched.
    """
    raw = clean_text(text)
    if not raw:
        return None
    now = now or datetime.now(tz=timezone.utc)

    try:
        return parsedate_to_datetime(raw).astimezone(timezone.utc)
    except (ValueError, TypeError, IndexError):
        pass

    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    lowered = raw.lower()
    match = _RELATIVE_DATE_RE.search(lowered)
    if match:
        amount, unit = int(match.group(1)), match.group(2)
        return now - amount * _RELATIVE_UNITS[unit]
    if "yesterday" in lowered:
        return now - timedelta(days=1)
    if "today" in lowered or "just now" in lowered:
        return now

    return None


class WebScraper(BaseCrawler):
    """CSS-selector scraper over the SCRAPER_SOURCES table."""

    def __init__(
        self,
        timeout: float = _SCRAPE_TIMEOUT,
        user_agents: UserAgentRotator | None = None,
        batch_size: int = _SCRAPE_BATCH_SIZE,
    ) -> None:
        super().__init__("WebScraper", timeout=timeout, user_agents=user_agents)
        self.batch_size = batch_size

    async def crawl(self, target: ScraperConfig) -> list[Article]:
        return await self.scrape_source(target)

    async def scrape_source(self, config: ScraperConfig) -> list[Article]:
        """Scrape one site. Inactive configs return [] without any request."""
        if not config.active:
            logger.debug("[%s] Skipping inactive scraper", config.name)
            return []

        headers = {**_REQUEST_HEADERS, "User-Agent": self.user_agents.next()}
        try:
            response = await self._download(config.url, headers)
        except asyncio.TimeoutError:
            logger.error("[%s] Scrape timed out after %.0fs", config.name, self.timeout)
            return []
        except Exception as e:
            logger.error("[%s] No response, site may be down: %s", config.name, e)
            return []

        if response.status != 200:
            logger.error("[%s] HTTP %d from %s", config.name, response.status, config.url)
            return []

        try:
            articles = self.parse_html(response.text, config)
        except Exception as e:
            logger.error("[%s] HTML parse failed: %s", config.name, e, exc_info=True)
            return []

        logger.info("[%s] Scraped %d articles", config.name, len(articles))
        return articles

    def parse_html(self, html: str, config: ScraperConfig) -> list[Article]:
        """Extract articles from a page using the config's selectors."""
        soup = BeautifulSoup(html, "html.parser")
        nodes = soup.select(config.selectors.article_list)[: config.max_articles]
        fetched_ms = int(time.time() * 1000)

        articles: list[Article] = []
        for index, node in enumerate(nodes):
            try:
                article = self._parse_node(node, config, index, fetched_ms)
            except ValidationError as e:
                logger.debug("[%s] Dropping malformed article %d: %s", config.name, index, e)
                continue
            except Exception as e:
                logger.warning(
                    "[%s] Failed to parse article %d: %s", config.name, index, e
                )
                continue
            if article is not None:
                articles.append(article)
        return articles

    def _parse_node(
        self,
        node: Tag,
        config: ScraperConfig,
        index: int,
        fetched_ms: int,
    ) -> Article | None:
        selectors = config.selectors
        base = config.base_url or config.url

        link_el = node.select_one(selectors.article_link)
        link = ""
        if link_el is not None:
            link = str(link_el.get("href") or "").strip()
        if link and not link.startswith("http"):
            link = urljoin(base, link)

        title_el = node.select_one(selectors.article_title)
        title = clean_text(title_el.get_text(" ")) if title_el is not None else ""
        if not title and link_el is not None:
            title = clean_text(link_el.get_text(" "))

        # Items missing either a link or a title are dropped
        if not link or not title:
            return None

        description = ""
        if selectors.article_description:
            desc_el = node.select_one(selectors.article_description)
            if desc_el is not None:
                description = clean_text(desc_el.get_text(" "))[:_DESCRIPTION_MAX_LENGTH]
        if not description:
            description = title

        author = None
        if selectors.article_author:
            author_el = node.select_one(selectors.article_author)
            if author_el is not None:
                author = clean_text(author_el.get_text(" ")) or None

        image_url = None
        if selectors.article_image:
            img_el = node.select_one(selectors.article_image)
            if img_el is not None:
                src = img_el.get("src") or img_el.get("data-src")
                if src:
                    image_url = str(src)
                    if not image_url.startswith("http"):
                        image_url = urljoin(base, image_url)

        return Article.build(
            id=f"{slugify(config.name)}-{index}-{fetched_ms}",
            title=title,
            link=link,
            description=description,
            pub_date=self._extract_date(node, selectors.article_date),
            author=author,
            category=config.category,
            source=config.name,
            source_url=config.url,
            image_url=image_url,
        )

    @staticmethod
    def _extract_date(node: Tag, selector: str | None) -> datetime:
        """datetime attribute, then element text, then now."""
        now = datetime.now(tz=timezone.utc)
        if not selector:
            return now
        date_el = node.select_one(selector)
        if date_el is None:
            return now
        attr = date_el.get("datetime")
        if attr:
            parsed = parse_date_text(str(attr), now)
            if parsed is not None:
                return parsed
        parsed = parse_date_text(date_el.get_text(" "), now)
        return parsed if parsed is not None else now

    # ------------------------------------------------------------------
    # Multi-site
    # ------------------------------------------------------------------

    async def _scrape_many(self, configs: list[ScraperConfig]) -> list[Article]:
        articles: list[Article] = []
        succeeded = 0
        for start in range(0, len(configs), self.batch_size):
            batch = configs[start : start + self.batch_size]
            results = await asyncio.gather(
                *(self.scrape_source(cfg) for cfg in batch),
                return_exceptions=True,
            )
            for cfg, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.error("[%s] Scrape raised: %s", cfg.name, result)
                    continue
                if result:
                    succeeded += 1
                articles.extend(result)

        logger.info(
            "Scraping complete: %d/%d sites returned articles, %d total",
            succeeded, len(configs), len(articles),
        )
        return sort_newest_first(articles)

    async def scrape_all(self) -> list[Article]:
        """Scrape every active site, newest first."""
        configs = get_active_scrapers()
        if not configs:
            logger.info("No active scraper sources configured")
            return []
        return await self._scrape_many(configs)

    async def scrape_by_category(self, category: Category) -> list[Article]:
        """Scrape active sites of one category, newest first."""
        configs = get_active_scrapers(category)
        if not configs:
            logger.info("No active scraper sources for category: %s", category.value)
            return []
        return await self._scrape_many(configs)

    async def test_scraper(self, name: str) -> dict[str, Any]:
        """Probe one site by key or display name and summarise the result."""
        needle = name.strip().lower()
        config = next(
            (
                cfg for key, cfg in SCRAPER_SOURCES.items()
                if key == needle or cfg.name.lower() == needle
            ),
            None,
        )
        if config is None:
            return {"name": name, "found": False, "success": False, "count": 0}

        started = time.monotonic()
        articles = await self.scrape_source(config.model_copy(update={"active": True}))
        return {
            "name": config.name,
            "found": True,
            "active": config.active,
            "success": bool(articles),
            "count": len(articles),
            "elapsed_seconds": round(time.monotonic() - started, 2),
            "sample": articles[0].title if articles else None,
        }
