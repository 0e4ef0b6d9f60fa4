"""
Abstract base class for the feed and scrape crawlers.

Holds what both share: the aiohttp session, the User-Agent pool, and a single
download coroutine that every network read goes through.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from news_pipeline.models import Article
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Module constants
# ---------------------------------------------------------------------------

_CRAWLER_TIMEOUT_TOTAL: float = 15.0
_CRAWLER_TIMEOUT_CONNECT: float = 10.0

# Rotated round-robin, one per attempt
USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_3) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    "Mozilla/5.0 (iPhone; CPU iPhone OS 17_4 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Mobile/15E148 Safari/604.1",
)

_WHITESPACE_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]+>")


class UserAgentRotator:
    """Round-robin over a fixed User-Agent pool."""

    def __init__(self, agents: tuple[str, ...] = USER_AGENTS) -> None:
        if not agents:
            raise ValueError("User-Agent pool must not be empty")
        self._agents = agents
        self._index = 0

    def next(self) -> str:
        agent = self._agents[self._index % len(self._agents)]
        self._index += 1
        return agent

    def __len__(self) -> int:
        return len(self._agents)


@dataclass
class HttpResponse:
    """The parts of an HTTP response the crawlers look at."""

    status: int
    text: str
    url: str
    # Lower-cased header names
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").lower()


def clean_text(text: str) -> str:
    """Collapse all whitespace runs into single spaces."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def strip_html(text: str) -> str:
    """Remove HTML tags from text (lightweight, no extra dependency)."""
    return clean_text(_TAG_RE.sub(" ", text or ""))


def slugify(name: str) -> str:
    return _WHITESPACE_RE.sub("-", name.strip().lower())


class BaseCrawler(ABC):
    """Abstract base for feed and scrape crawlers.

    Attributes:
        name: Human-readable crawler name used in log lines.
        timeout: Per-request timeout in seconds.
        user_agents: Shared User-Agent rotator.
    """

    # Shared aiohttp session across all crawler instances
    _shared_session: aiohttp.ClientSession | None = None

    def __init__(
        self,
        name: str,
        timeout: float = _CRAWLER_TIMEOUT_TOTAL,
        user_agents: UserAgentRotator | None = None,
    ) -> None:
        self.name = name
        self.timeout = timeout
        self.user_agents = user_agents or UserAgentRotator()

    @abstractmethod
    async def crawl(self, target: Any) -> list[Article]:
        """Fetch articles for one source or site config."""

    async def safe_crawl(self, target: Any) -> dict[str, Any]:
        """Crawl and report success and failure explicitly.

        Lets callers tell "0 articles (normal)" apart from "0 articles
        because of an error".

        Returns:
            On success: {"success": True, "articles": [...], "count": N}
            On failure: {"success": False, "articles": [], "error": "...", "count": 0}
        """
        label = getattr(target, "name", str(target))
        try:
            articles = await self.crawl(target)
            logger.info("[%s] Crawled %d articles", label, len(articles))
            return {"success": True, "articles": articles, "count": len(articles)}
        except Exception as e:
            logger.error("[%s] Crawl failed: %s", label, e, exc_info=True)
            return {"success": False, "articles": [], "error": str(e), "count": 0}

    async def _download(self, url: str, headers: dict[str, str]) -> HttpResponse:
        """GET ``url`` and return status, body and headers.

        Raises aiohttp/asyncio exceptions unchanged; callers classify them.
        """
        session = await self.get_session()
        timeout = aiohttp.ClientTimeout(
            total=self.timeout,
            connect=min(_CRAWLER_TIMEOUT_CONNECT, self.timeout),
        )
        async with session.get(
            url, headers=headers, timeout=timeout, allow_redirects=True
        ) as response:
            text = await response.text(errors="replace")
            return HttpResponse(
                status=response.status,
                text=text,
                url=str(response.url),
                headers={k.lower(): v for k, v in response.headers.items()},
            )

    @classmethod
    async def get_session(cls) -> aiohttp.ClientSession:
        """Return shared aiohttp session, creating one if needed."""
        if cls._shared_session is None or cls._shared_session.closed:
            timeout = aiohttp.ClientTimeout(
                total=_CRAWLER_TIMEOUT_TOTAL,
                connect=_CRAWLER_TIMEOUT_CONNECT,
            )
            cls._shared_session = aiohttp.ClientSession(timeout=timeout)
        return cls._shared_session

    @classmethod
    async def close_session(cls) -> None:
        """Close the shared aiohttp session."""
        if cls._shared_session is not None and not cls._shared_session.closed:
            await cls._shared_session.close()
            cls._shared_session = None
