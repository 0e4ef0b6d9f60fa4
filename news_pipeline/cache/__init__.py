"""
news_pipeline.cache -- cache tiers.

Tier A (FeedCache) keeps parsed feeds in memory with stale-while-revalidate.
Tier B (BudgetCache) persists paid-API results with the daily credit ledger.
"""

from news_pipeline.cache.feed_cache import FeedCache
from news_pipeline.cache.newsdata_cache import (
    BudgetCache,
    JsonFileStore,
    RedisStore,
    create_budget_cache,
)

__all__ = [
    "BudgetCache",
    "FeedCache",
    "JsonFileStore",
    "RedisStore",
    "create_budget_cache",
]
