"""
news_pipeline.crawler -- fetching and orchestration.

Feed fetching with retry and scrape fallback, HTML scraping, the budgeted
news API client, the source registry and the aggregation engine.
"""

from news_pipeline.crawler.crawl_engine import (
    AggregationEngine,
    AggregationResult,
    AggregationState,
    PipelineState,
)
from news_pipeline.crawler.newsdata_client import NewsDataClient
from news_pipeline.crawler.rss_crawler import FeedFetchClient, FetchOutcome, FetchState
from news_pipeline.crawler.web_scraper import WebScraper

__all__ = [
    "AggregationEngine",
    "AggregationResult",
    "AggregationState",
    "FeedFetchClient",
    "FetchOutcome",
    "FetchState",
    "NewsDataClient",
    "PipelineState",
    "WebScraper",
]
