"""
News source registry.

Two static tables drive every fetch stage:

  NEWS_SOURCES     feed endpoints {name, url, category, active, tier}
  SCRAPER_SOURCES  per-site CSS selector configs for sites without a usable feed

Adding or disabling a source is a config-only change. Both tables are
validated into pydantic models at import, so a malformed entry fails loudly
at startup instead of mid-run.

Tier levels (BatchRSSFetch order):
  1 = Known fast and reliable (BBC Asia, Al Jazeera, Antara)
  2 = Standard
  3 = Slow or frequently blocked
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError as PydanticValidationError

from news_pipeline.errors import ConfigurationError
from news_pipeline.models import Category, ScraperConfig, SourceDescriptor

_RAW_NEWS_SOURCES: dict[str, dict[str, Any]] = {
    # --- BRICS ---
    "rt_news": {
        "name": "RT News",
        "url": "https://www.rt.com/rss/",
        "category": "BRICS",
        "active": True,
        "tier": 2,
    },
    "tass": {
        "name": "TASS",
        "url": "https://tass.com/rss/v2.xml",
        "category": "BRICS",
        "active": True,
        "tier": 2,
    },
    "xinhua": {
        "name": "Xinhua News",
        "url": "http://www.xinhuanet.com/english/rss/worldrss.xml",
        "category": "BRICS",
        "active": True,
        "tier": 3,
    },
    "press_tv": {
        "name": "Press TV",
        "url": "https://www.presstv.ir/rss.xml",
        "category": "BRICS",
        "active": False,  # 403 for non-browser clients
        "tier": 3,
    },
    "al_jazeera": {
        "name": "Al Jazeera",
        "url": "https://www.aljazeera.com/xml/rss/all.xml",
        "category": "BRICS",
        "active": True,
        "tier": 1,
    },
    "global_times": {
        "name": "Global Times",
        "url": "https://www.globaltimes.cn/rss/outbrain.xml",
        "category": "BRICS",
        "active": False,
        "tier": 3,
    },
    "cgtn": {
        "name": "CGTN",
        "url": "https://www.cgtn.com/subscribe/rss/section/world.xml",
        "category": "BRICS",
        "active": True,
        "tier": 2,
    },
    "china_daily": {
        "name": "China Daily",
        "url": "https://www.chinadaily.com.cn/rss/world_rss.xml",
        "category": "BRICS",
        "active": True,
        "tier": 2,
    },
    "sputnik": {
        "name": "Sputnik",
        "url": "https://sputnikglobe.com/export/rss2/archive/index.xml",
        "category": "BRICS",
        "active": True,
        "tier": 3,
    },
    # --- Indonesia ---
    "antara": {
        "name": "Antara News",
        "url": "https://www.antaranews.com/rss/terkini.xml",
        "category": "Indonesia",
        "active": True,
        "tier": 1,
    },
    "bbc_asia": {
        "name": "BBC Asia",
        "url": "https://feeds.bbci.co.uk/news/world/asia/rss.xml",
        "category": "Indonesia",
        "active": True,
        "tier": 1,
    },
    "jakarta_globe": {
        "name": "Jakarta Globe",
        "url": "https://jakartaglobe.id/rss",
        "category": "Indonesia",
        "active": False,
        "tier": 3,
    },
    "jakarta_post": {
        "name": "Jakarta Post",
        "url": "https://www.thejakartapost.com/rss",
        "category": "Indonesia",
        "active": False,
        "tier": 3,
    },
    # --- Bali ---
    "bali_post": {
        "name": "Bali Post",
        "url": "https://www.balipost.com/rss",
        "category": "Bali",
        "active": False,  # server error; covered by the Bali Post scraper
        "tier": 3,
    },
}

_RAW_SCRAPER_SOURCES: dict[str, dict[str, Any]] = {
    "bali_post_main": {
        "name": "Bali Post (Main)",
        "url": "https://www.balipost.com/news/bali/",
        "category": "Bali",
        "selectors": {
            "article_list": "article, .post-item, .news-item, .article-box",
            "article_link": 'a[href*="/news/"], h2 a, h3 a, .title a',
            "article_title": "h2, h3, .title, .post-title",
            "article_description": ".excerpt, .summary, .post-excerpt, p:first-of-type",
            "article_date": ".date, .post-date, time, .published",
            "article_image": "img:first-of-type, .featured-image img, .post-thumbnail img",
        },
        "base_url": "https://www.balipost.com",
        "max_articles": 20,
        "active": True,
    },
    "the_bali_sun": {
        "name": "The Bali Sun",
        "url": "https://thebalisun.com/",
        "category": "Bali",
        "selectors": {
            "article_list": "article",
            "article_link": "h2 a, h3 a",
            "article_title": "h2, h3",
            "article_description": ".entry-content p:first-of-type",
            "article_date": ".entry-date",
            "article_image": ".wp-post-image",
        },
        "base_url": "https://thebalisun.com",
        "max_articles": 20,
        "active": True,
    },
    "now_bali": {
        "name": "NOW! Bali",
        "url": "https://nowbali.co.id/category/news/",
        "category": "Bali",
        "selectors": {
            "article_list": "article",
            "article_link": "h2 a",
            "article_title": "h2",
            "article_description": ".entry-summary",
            "article_date": "time",
            "article_image": ".post-thumbnail img",
        },
        "base_url": "https://nowbali.co.id",
        "max_articles": 20,
        "active": True,
    },
    "coconuts_bali": {
        "name": "Coconuts Bali",
        "url": "https://coconuts.co/bali/",
        "category": "Bali",
        "selectors": {
            "article_list": ".post-item",
            "article_link": "a",
            "article_title": "h3",
            "article_description": ".excerpt",
            "article_date": ".date",
            "article_image": "img",
        },
        "base_url": "https://coconuts.co",
        "max_articles": 20,
        "active": False,
    },
    "modern_diplomacy": {
        "name": "Modern Diplomacy",
        "url": "https://moderndiplomacy.eu/",
        "category": "BRICS",
        "selectors": {
            "article_list": "article, .post, .td-module-container, .td_module_wrap",
            "article_link": "h3 a, .entry-title a, .td-module-title a",
            "article_title": "h3, .entry-title, .td-module-title",
            "article_description": ".td-excerpt, .entry-summary, .excerpt",
            "article_date": ".td-post-date, .entry-date, time",
            "article_author": ".td-post-author-name, .author",
            "article_image": ".td-module-thumb img, .entry-thumb img, img:first-of-type",
        },
        "base_url": "https://moderndiplomacy.eu",
        "max_articles": 25,
        "active": True,
    },
    "john_helmer": {
        "name": "John Helmer",
        "url": "https://johnhelmer.net/",
        "category": "BRICS",
        "selectors": {
            "article_list": "article, .post, .entry",
            "article_link": "h2 a, .entry-title a",
            "article_title": "h2, .entry-title",
            "article_description": ".entry-content p:first-of-type, .excerpt",
            "article_date": ".entry-date, .published, time",
            "article_author": ".author, .by-author",
            "article_image": ".wp-post-image, img:first-of-type",
        },
        "base_url": "https://johnhelmer.net",
        "max_articles": 15,
        "active": True,
    },
    "eurasia_review": {
        "name": "Eurasia Review",
        "url": "https://www.eurasiareview.com/",
        "category": "BRICS",
        "selectors": {
            "article_list": ".first-post, .following-post .single-article",
            "article_link": "h3 a, .entry-title a",
            "article_title": "h3.entry-title, .entry-title",
            "article_description": ".entry-content p, .entry-summary",
            "article_date": ".posted-on a time, .entry-date",
            "article_author": ".byline a",
            "article_image": "img:first-of-type",
        },
        "base_url": "https://www.eurasiareview.com",
        "max_articles": 25,
        "active": False,
    },
    "indonesia_business_post": {
        "name": "Indonesia Business Post",
        "url": "https://indonesiabusinesspost.com/",
        "category": "Indonesia",
        "selectors": {
            "article_list": "article, .post, .news-item, .article-box",
            "article_link": 'h2 a, h3 a, .title a, a[href*="/news/"]',
            "article_title": "h2, h3, .title, .post-title",
            "article_description": ".excerpt, .summary, .post-excerpt, p:first-of-type",
            "article_date": ".date, .post-date, time",
            "article_author": ".author, .by-author",
            "article_image": ".featured-image img, .post-thumbnail img, img:first-of-type",
        },
        "base_url": "https://indonesiabusinesspost.com",
        "max_articles": 20,
        "active": True,
    },
}

# Feed name -> scraper key, for feeds whose scraper carries a different name
SCRAPER_ALIASES: dict[str, str] = {
    "bali post": "bali_post_main",
}


# ---------------------------------------------------------------------------
# Load-time validation
# ---------------------------------------------------------------------------

def build_news_sources(raw: dict[str, dict[str, Any]]) -> dict[str, SourceDescriptor]:
    """Validate a raw feed table.

    Raises:
        ConfigurationError: An entry is missing a field or has a bad value.
    """
    sources: dict[str, SourceDescriptor] = {}
    for key, cfg in raw.items():
        try:
            sources[key] = SourceDescriptor(key=key, **cfg)
        except (PydanticValidationError, TypeError) as e:
            raise ConfigurationError(f"Invalid feed source '{key}': {e}", source=key) from e
    return sources


def build_scraper_sources(raw: dict[str, dict[str, Any]]) -> dict[str, ScraperConfig]:
    """Validate a raw selector table against the required-field schema.

    Raises:
        ConfigurationError: An entry lacks a required selector or field.
    """
    configs: dict[str, ScraperConfig] = {}
    for key, cfg in raw.items():
        try:
            configs[key] = ScraperConfig(key=key, **cfg)
        except (PydanticValidationError, TypeError) as e:
            raise ConfigurationError(f"Invalid scraper config '{key}': {e}", source=key) from e
    return configs


NEWS_SOURCES: dict[str, SourceDescriptor] = build_news_sources(_RAW_NEWS_SOURCES)
SCRAPER_SOURCES: dict[str, ScraperConfig] = build_scraper_sources(_RAW_SCRAPER_SOURCES)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_active_sources(category: Category | None = None) -> list[SourceDescriptor]:
    """Active feed sources, optionally restricted to one category."""
    return [
        src for src in NEWS_SOURCES.values()
        if src.active and (category is None or src.category == category)
    ]


def get_sources_by_tier(
    tier: int,
    sources: list[SourceDescriptor] | None = None,
) -> list[SourceDescriptor]:
    """Filter sources (default: all active) down to one tier."""
    pool = sources if sources is not None else get_active_sources()
    return [src for src in pool if src.tier == tier]


def get_source_tiers(
    sources: list[SourceDescriptor] | None = None,
) -> list[list[SourceDescriptor]]:
    """Partition sources into tiers, fastest tier first. Empty tiers are dropped."""
    pool = sources if sources is not None else get_active_sources()
    tiers = sorted({src.tier for src in pool})
    return [get_sources_by_tier(t, pool) for t in tiers]


def get_source_by_name(name: str) -> SourceDescriptor | None:
    """Find a feed source by display name or key (case-insensitive)."""
    needle = name.strip().lower()
    for key, src in NEWS_SOURCES.items():
        if key == needle or src.name.lower() == needle:
            return src
    return None


def get_active_scrapers(category: Category | None = None) -> list[ScraperConfig]:
    """Active scraper configs, optionally restricted to one category."""
    return [
        cfg for cfg in SCRAPER_SOURCES.values()
        if cfg.active and (category is None or cfg.category == category)
    ]


def get_scraper_for(name: str) -> ScraperConfig | None:
    """Map a logical source name onto its scraper config.

    Looks up the alias table first, then matches scraper display names and
    keys case-insensitively. Only active configs are returned.
    """
    needle = name.strip().lower()
    key = SCRAPER_ALIASES.get(needle)
    if key is not None:
        cfg = SCRAPER_SOURCES.get(key)
        return cfg if cfg is not None and cfg.active else None
    for key, cfg in SCRAPER_SOURCES.items():
        if cfg.active and (key == needle or cfg.name.lower() == needle):
            return cfg
    return None
