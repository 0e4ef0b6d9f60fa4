"""
News pipeline command line.

Usage:
    news-pipeline aggregate                       # API, then feeds, target 100
    news-pipeline aggregate --category Bali --include-scraped --json
    news-pipeline test-source "Antara News"       # check one feed or scraper
    news-pipeline cache-stats                     # both cache tiers + credits
    news-pipeline clear-cache --tier b
    news-pipeline sources --all                   # list the registry
    news-pipeline --log-level DEBUG aggregate     # verbose run
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any

from dotenv import load_dotenv

# Load .env into os.environ before settings and clients read it
load_dotenv()

from news_pipeline.crawler.crawl_engine import AggregationEngine, PipelineState
from news_pipeline.crawler.sources_config import (
    NEWS_SOURCES,
    SCRAPER_SOURCES,
    get_source_by_name,
)
from news_pipeline.errors import ConfigurationError
from news_pipeline.models import Article, Category
from news_pipeline.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def _parse_category(value: str) -> Category:
    for category in Category:
        if category.value.lower() == value.lower():
            return category
    raise argparse.ArgumentTypeError(
        f"unknown category {value!r} (choose from {', '.join(c.value for c in Category)})"
    )


def _print_articles(articles: list[Article], as_json: bool) -> None:
    if as_json:
        print(json.dumps([a.model_dump(mode="json") for a in articles], ensure_ascii=False, indent=2))
        return
    for article in articles:
        published = article.pub_date.strftime("%Y-%m-%d %H:%M") if article.pub_date else "----"
        print(f"{published}  [{article.category.value}] {article.source}: {article.title}")
        print(f"    {article.link}")


def _print_section(title: str, data: dict[str, Any]) -> None:
    print(f"[{title}]")
    for key, value in data.items():
        print(f"  {key}: {value}")
    print()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_aggregate(engine: AggregationEngine, args: argparse.Namespace) -> int:
    result = await engine.aggregate(
        category=args.category,
        include_scraped=args.include_scraped,
        target=args.target,
        use_api=not args.skip_api,
    )
    _print_articles(result.articles, args.json)
    if not args.json:
        meta = result.metadata
        print()
        print(
            f"[INFO] {meta['total']} articles from {len(meta['sources_used'])} sources "
            f"in {meta['fetch_time']}s (fallbacks: {', '.join(meta['fallbacks_used']) or 'none'})"
        )
    return 0


async def _cmd_test_source(engine: AggregationEngine, args: argparse.Namespace) -> int:
    if get_source_by_name(args.name) is not None:
        report = await engine.state.fetch_client.test_source(args.name)
    else:
        report = await engine.state.scraper.test_scraper(args.name)
    if not report["found"]:
        print(f"[ERROR] No feed or scraper source named {args.name!r}")
        return 1
    _print_section(report["name"], report)
    return 0 if report["success"] else 1


async def _cmd_cache_stats(engine: AggregationEngine, args: argparse.Namespace) -> int:
    await engine.state.budget_cache.load()
    status = engine.get_service_status()
    _print_section("Feed cache (tier A)", status["feed_cache"])
    _print_section("Budget cache (tier B)", status["budget_cache"])
    _print_section("API", status["api"])
    return 0


async def _cmd_clear_cache(engine: AggregationEngine, args: argparse.Namespace) -> int:
    if args.tier in ("a", "all"):
        engine.state.feed_cache.clear()
        print("[SUCCESS] Feed cache cleared")
    if args.tier in ("b", "all"):
        await engine.state.budget_cache.clear_cache()
        print("[SUCCESS] Budget cache cleared (credit ledger kept)")
    return 0


async def _cmd_sources(engine: AggregationEngine, args: argparse.Namespace) -> int:
    print("[Feeds]")
    for key, src in NEWS_SOURCES.items():
        if src.active or args.all:
            state = "active" if src.active else "inactive"
            print(f"  {key:<20} tier {src.tier}  {src.category.value:<10} {state:<9} {src.url}")
    print()
    print("[Scrapers]")
    for key, cfg in SCRAPER_SOURCES.items():
        if cfg.active or args.all:
            state = "active" if cfg.active else "inactive"
            print(f"  {key:<24} {cfg.category.value:<10} {state:<9} {cfg.url}")
    return 0


_COMMANDS = {
    "aggregate": _cmd_aggregate,
    "test-source": _cmd_test_source,
    "cache-stats": _cmd_cache_stats,
    "clear-cache": _cmd_clear_cache,
    "sources": _cmd_sources,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="news-pipeline",
        description="Multi-source news aggregation pipeline",
    )
    parser.add_argument(
        "--log-level", default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Override LOG_LEVEL for this run",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    aggregate = sub.add_parser("aggregate", help="Run one aggregation pass")
    aggregate.add_argument(
        "--category", type=_parse_category, default=None,
        help="Restrict to one category (BRICS, Indonesia, Bali)",
    )
    aggregate.add_argument(
        "--include-scraped", action="store_true",
        help="Also run the HTML scrape supplement",
    )
    aggregate.add_argument(
        "--target", type=int, default=None,
        help="Stop fetching feeds once this many articles are collected",
    )
    aggregate.add_argument(
        "--skip-api", action="store_true",
        help="Do not consult the budgeted news API",
    )
    aggregate.add_argument("--json", action="store_true", help="Print articles as JSON")

    test_source = sub.add_parser("test-source", help="Probe one feed or scraper source")
    test_source.add_argument("name", help="Source key or display name")

    sub.add_parser("cache-stats", help="Show cache and credit usage")

    clear_cache = sub.add_parser("clear-cache", help="Drop cached articles")
    clear_cache.add_argument(
        "--tier", choices=("a", "b", "all"), default="all",
        help="Which cache tier to clear",
    )

    sources = sub.add_parser("sources", help="List registered sources")
    sources.add_argument("--all", action="store_true", help="Include inactive sources")

    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    if args.log_level:
        setup_logging(level=args.log_level, force=True)
    try:
        engine = AggregationEngine(PipelineState.from_settings())
    except ConfigurationError as e:
        logger.error("Pipeline misconfigured: %s", e)
        print(f"[ERROR] {e}")
        return 2

    try:
        return await _COMMANDS[args.command](engine, args)
    except ConfigurationError as e:
        logger.error("Pipeline misconfigured: %s", e)
        print(f"[ERROR] {e}")
        return 2
    finally:
        await engine.cleanup()


def cli() -> None:
    """Console script entrypoint."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
