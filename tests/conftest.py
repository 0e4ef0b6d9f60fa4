"""Shared fixtures and builders for the pipeline tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import pytest

from news_pipeline.models import Article, Category, SourceDescriptor
from news_pipeline.utils.config import Settings

# Phrases with no shared words, so articles built from them never look alike
TOPICS = [
    "Volcano ash disrupts flights",
    "Parliament passes budget bill",
    "Rice harvest beats forecast",
    "Central bank holds rates",
    "Monsoon floods coastal villages",
    "Tourism arrivals reach record",
    "Energy ministers sign pipeline deal",
    "Football league announces fresh season",
    "Earthquake drill held downtown",
    "Airline orders widebody jets",
    "Coral reef restoration expands",
    "Election commission certifies results",
    "Trade delegation visits Moscow",
    "Telecom firm launches satellite",
    "University opens robotics lab",
    "Port expansion project approved",
]

BASE_TIME = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_article(
    index: int = 0,
    source: str = "BBC Asia",
    category: Category = Category.INDONESIA,
    title: str | None = None,
    description: str | None = None,
    link: str | None = None,
    pub_date: datetime | None = BASE_TIME,
) -> Article:
    topic = TOPICS[index % len(TOPICS)]
    return Article(
        id=f"{source}-{index}",
        title=title if title is not None else topic,
        link=link if link is not None else f"https://news.example.com/{source.replace(' ', '-').lower()}/{index}",
        description=(
            description
            if description is not None
            else f"{topic} according to officials speaking this week."
        ),
        pub_date=pub_date,
        category=category,
        source=source,
        source_url="https://news.example.com",
    )


def make_articles(count: int, source: str = "BBC Asia", offset: int = 0) -> list[Article]:
    return [
        make_article(
            index=offset + i,
            source=source,
            pub_date=BASE_TIME - timedelta(minutes=offset + i),
        )
        for i in range(count)
    ]


def make_rss(count: int, offset: int = 0, slug: str = "feed") -> str:
    """RSS 2.0 document with ``count`` well-formed items."""
    items = []
    for i in range(count):
        topic = TOPICS[(offset + i) % len(TOPICS)]
        published = format_datetime(BASE_TIME - timedelta(hours=offset + i))
        items.append(
            f"""
            <item>
              <title>{topic}</title>
              <link>https://news.example.com/{slug}/{offset + i}</link>
              <description>&lt;p&gt;{topic} according to officials speaking this week.&lt;/p&gt;</description>
              <pubDate>{published}</pubDate>
            </item>"""
        )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test feed</title>
    <link>https://news.example.com</link>
    <description>Test feed</description>
    {''.join(items)}
  </channel>
</rss>"""


def make_source(
    key: str,
    name: str,
    tier: int = 2,
    active: bool = True,
    category: Category = Category.INDONESIA,
) -> SourceDescriptor:
    return SourceDescriptor(
        key=key,
        name=name,
        url=f"https://{key}.example.com/rss",
        category=category,
        active=active,
        tier=tier,
    )


class FakeClock:
    """Mutable clock for TTL tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings isolated from the developer's environment and .env file."""
    return Settings(
        _env_file=None,
        newsdata_api_key="",
        log_dir=str(tmp_path / "logs"),
        budget_cache_path=str(tmp_path / "newsdata-cache.json"),
        rss_batch_size=4,
    )
