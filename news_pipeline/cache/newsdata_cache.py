"""
Tier B: durable, credit-aware cache for the budgeted news API.

One entry per category (key ``newsdata_<category>``) plus the daily credit
ledger, persisted together as a single record:

    {lastResetDate, dailyCreditsUsed, hitCount, missCount, entries, savedAt}

The record lives in a JSON file by default or in a Redis key. On load, a
ledger dated before today is reset to zero. Once usage reaches the
near-limit threshold (85%), new entries get the extended emergency TTL and
expired entries keep being served instead of forcing a paid refetch.

Ledger and entry mutations run under one asyncio.Lock so concurrent
category fetches cannot lose updates.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Callable

import redis.asyncio as aioredis

from news_pipeline.models import Article, CacheEntry, Category, CreditLedger
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_HOUR = 60 * 60

# High-churn categories refresh sooner
CATEGORY_TTLS: dict[Category, float] = {
    Category.BRICS: 2 * _HOUR,
    Category.INDONESIA: 3 * _HOUR,
    Category.BALI: 6 * _HOUR,
}

EMERGENCY_TTL: float = 8 * _HOUR

_MAX_DAILY_CREDITS = 200
_ARTICLES_PER_CREDIT = 10
_NEAR_LIMIT_THRESHOLD = 0.85


# ---------------------------------------------------------------------------
# Storage backends
# ---------------------------------------------------------------------------

class BudgetStore(ABC):
    """Where the persisted record lives."""

    @abstractmethod
    async def load(self) -> dict[str, Any] | None:
        """Return the stored record, or None if nothing usable is stored."""

    @abstractmethod
    async def save(self, record: dict[str, Any]) -> None:
        """Replace the stored record."""

    async def aclose(self) -> None:
        """Release backend connections. No-op unless overridden."""


class JsonFileStore(BudgetStore):
    """Record stored as a JSON file, replaced atomically on save."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Budget cache file %s unreadable, starting fresh: %s", self.path, e)
            return None

    async def save(self, record: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(record, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.path)


class RedisStore(BudgetStore):
    """Record stored as one JSON string under a Redis key."""

    def __init__(self, client: aioredis.Redis, key: str) -> None:
        self._redis = client
        self.key = key

    async def load(self) -> dict[str, Any] | None:
        raw = await self._redis.get(self.key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning("Budget cache key %s unreadable, starting fresh: %s", self.key, e)
            return None

    async def save(self, record: dict[str, Any]) -> None:
        await self._redis.set(self.key, json.dumps(record, ensure_ascii=False))

    async def aclose(self) -> None:
        await self._redis.aclose()


def _local_today() -> date:
    return datetime.now().date()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class BudgetCache:
    """Category cache and daily credit ledger for the paid news API.

    Attributes:
        ledger: Today's credit ledger.
        near_limit_threshold: Usage ratio at which emergency TTLs apply.
        disable_credit_tracking: Never count or refuse credits (development).
    """

    def __init__(
        self,
        store: BudgetStore,
        max_daily_credits: int = _MAX_DAILY_CREDITS,
        articles_per_credit: int = _ARTICLES_PER_CREDIT,
        near_limit_threshold: float = _NEAR_LIMIT_THRESHOLD,
        category_ttls: dict[Category, float] | None = None,
        emergency_ttl: float = EMERGENCY_TTL,
        disable_credit_tracking: bool = False,
        clock: Callable[[], float] = time.time,
        today: Callable[[], date] = _local_today,
    ) -> None:
        self.store = store
        self.near_limit_threshold = near_limit_threshold
        self.category_ttls = dict(category_ttls or CATEGORY_TTLS)
        self.emergency_ttl = emergency_ttl
        self.disable_credit_tracking = disable_credit_tracking
        self._clock = clock
        self._today = today
        self.ledger = CreditLedger(
            day=today(),
            limit=max_daily_credits,
            articles_per_credit=articles_per_credit,
        )
        self._entries: dict[str, CacheEntry] = {}
        self.hit_count = 0
        self.miss_count = 0
        self._lock = asyncio.Lock()
        self._loaded = False

        if disable_credit_tracking:
            logger.info("BudgetCache: credit tracking disabled")

    @staticmethod
    def make_key(category: Category) -> str:
        return f"newsdata_{category.value.lower()}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Restore entries, counters and ledger from the store."""
        async with self._lock:
            await self._load_locked()

    async def _load_locked(self) -> None:
        self._loaded = True
        try:
            record = await self.store.load()
        except Exception as e:
            logger.error("Budget cache load failed, starting empty: %s", e)
            return
        if not record:
            logger.info("No persisted budget cache, starting empty")
            return

        for key, raw_entry in (record.get("entries") or {}).items():
            try:
                self._entries[key] = CacheEntry.from_dict(raw_entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("[%s] Dropping unreadable cache entry: %s", key, e)

        today = self._today()
        stored_date = record.get("lastResetDate")
        if stored_date == today.isoformat():
            self.ledger.day = today
            self.ledger.credits_used = min(
                int(record.get("dailyCreditsUsed", 0)), self.ledger.limit
            )
        else:
            self.ledger.day = today
            self.ledger.credits_used = 0
            logger.info(
                "Credit ledger reset for new day (stored=%s, today=%s)",
                stored_date, today.isoformat(),
            )

        self.hit_count = int(record.get("hitCount", 0))
        self.miss_count = int(record.get("missCount", 0))
        logger.info(
            "Budget cache loaded: %d entries, %d/%d credits used",
            len(self._entries), self.ledger.credits_used, self.ledger.limit,
        )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self._load_locked()

    def to_record(self) -> dict[str, Any]:
        return {
            "lastResetDate": self.ledger.day.isoformat(),
            "dailyCreditsUsed": self.ledger.credits_used,
            "hitCount": self.hit_count,
            "missCount": self.miss_count,
            "entries": {key: entry.to_dict() for key, entry in self._entries.items()},
            "savedAt": datetime.now(tz=timezone.utc).isoformat(),
        }

    async def _persist(self) -> None:
        try:
            await self.store.save(self.to_record())
        except Exception as e:
            logger.error("Failed to persist budget cache: %s", e)

    def _roll_over(self) -> None:
        """Reset the ledger when the process has crossed midnight."""
        if self.ledger.reset_if_stale(self._today()):
            logger.info("Credit ledger reset for %s", self.ledger.day.isoformat())

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def credits_needed(self, articles: int) -> int:
        return self.ledger.credits_needed(articles)

    def is_near_limit(self) -> bool:
        if self.disable_credit_tracking:
            return False
        return self.ledger.credits_used >= self.ledger.limit * self.near_limit_threshold

    def has_exceeded_limit(self) -> bool:
        if self.disable_credit_tracking:
            return False
        return self.ledger.credits_used >= self.ledger.limit

    def can_make_request(self, articles: int) -> bool:
        """True if requesting ``articles`` items fits today's budget."""
        if self.disable_credit_tracking:
            return True
        return self.ledger.has_capacity(self.credits_needed(articles))

    def get_remaining_credits(self) -> int:
        return self.ledger.remaining_credits

    def get_remaining_articles(self) -> int:
        return self.get_remaining_credits() * self.ledger.articles_per_credit

    async def reserve_credits(self, credits: int) -> bool:
        """Check capacity and debit in one atomic step.

        Returns:
            False if the debit would push usage past the daily limit.
        """
        async with self._lock:
            await self._ensure_loaded()
            self._roll_over()
            if self.disable_credit_tracking:
                return True
            if not self.ledger.has_capacity(credits):
                logger.warning(
                    "Credit reservation refused: need %d, %d/%d used",
                    credits, self.ledger.credits_used, self.ledger.limit,
                )
                return False
            self.ledger.debit(credits)
            await self._persist()
            return True

    async def refund_credits(self, credits: int) -> None:
        """Return reserved credits that were not consumed."""
        if credits <= 0 or self.disable_credit_tracking:
            return
        async with self._lock:
            await self._ensure_loaded()
            self.ledger.credits_used = max(0, self.ledger.credits_used - credits)
            await self._persist()

    async def reset_daily_counter(self) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self.ledger.day = self._today()
            self.ledger.credits_used = 0
            await self._persist()
        logger.info("Daily credit counter reset")

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def get(self, category: Category) -> list[Article] | None:
        """Cached articles for ``category``, or None on a miss.

        Expired entries still count as hits while usage is near the limit.
        """
        key = self.make_key(category)
        async with self._lock:
            await self._ensure_loaded()
            self._roll_over()
            entry = self._entries.get(key)
            if entry is None:
                self.miss_count += 1
                return None

            expired = entry.is_expired(self._clock())
            if expired and not self.is_near_limit():
                self.miss_count += 1
                logger.debug("[%s] Budget cache entry expired", key)
                return None

            self.hit_count += 1
            age_minutes = round((self._clock() - entry.created_at) / 60)
            logger.debug(
                "[%s] Budget cache hit (%s, %d min old)",
                key, "stale, near limit" if expired else "fresh", age_minutes,
            )
            return list(entry.payload)

    async def set(self, category: Category, articles: list[Article]) -> float:
        """Store ``articles`` for ``category``.

        Returns:
            The TTL applied, in seconds.
        """
        key = self.make_key(category)
        async with self._lock:
            await self._ensure_loaded()
            ttl = self.emergency_ttl if self.is_near_limit() else self.category_ttls[category]
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                payload=list(articles),
                created_at=now,
                expires_at=now + ttl,
            )
            await self._persist()

        logger.info(
            "[%s] Cached %d articles for %.0fh%s",
            key, len(articles), ttl / _HOUR,
            " (emergency TTL)" if ttl == self.emergency_ttl else "",
        )
        if self.has_exceeded_limit():
            logger.warning("Daily credit limit reached: API calls stop until tomorrow")
        elif self.is_near_limit():
            logger.warning(
                "Credit usage near limit: %d/%d", self.ledger.credits_used, self.ledger.limit
            )
        return ttl

    def get_cache_age(self, category: Category) -> int | None:
        """Minutes since ``category`` was cached, or None."""
        entry = self._entries.get(self.make_key(category))
        if entry is None:
            return None
        return round((self._clock() - entry.created_at) / 60)

    async def clear_cache(self) -> None:
        """Drop all entries and counters. The ledger is kept."""
        async with self._lock:
            # Unloaded instances would otherwise overwrite the stored ledger
            await self._ensure_loaded()
            self._entries.clear()
            self.hit_count = 0
            self.miss_count = 0
            await self._persist()
        logger.info("Budget cache cleared")

    async def close(self) -> None:
        """Close the backing store."""
        await self.store.aclose()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_hit_rate(self) -> float:
        """Hit rate as a percentage of all lookups."""
        total = self.hit_count + self.miss_count
        return (self.hit_count / total) * 100.0 if total else 0.0

    def get_stats(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        size_bytes = sum(len(json.dumps(e.to_dict(), default=str)) for e in entries)
        return {
            "total_entries": len(entries),
            "total_articles": sum(len(e.payload) for e in entries),
            "oldest_entry": min((e.created_at for e in entries), default=None),
            "newest_entry": max((e.created_at for e in entries), default=None),
            "hits": self.hit_count,
            "misses": self.miss_count,
            "hit_rate": round(self.get_hit_rate(), 1),
            "cache_size_kb": round(size_bytes / 1024, 1),
            "daily_credits_used": self.ledger.credits_used,
            "daily_credit_limit": self.ledger.limit,
            "remaining_credits": self.get_remaining_credits(),
            "max_articles_remaining": self.get_remaining_articles(),
            "near_limit": self.is_near_limit(),
            "credit_tracking": not self.disable_credit_tracking,
            "ledger_date": self.ledger.day.isoformat(),
        }


def create_budget_store(settings: Any) -> BudgetStore:
    """Build the configured store (``budget_cache_backend``)."""
    if settings.budget_cache_backend == "redis":
        client = aioredis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password or None,
            decode_responses=True,
        )
        return RedisStore(client, settings.budget_cache_redis_key)
    return JsonFileStore(settings.budget_cache_path)


def create_budget_cache(settings: Any) -> BudgetCache:
    """Build a BudgetCache from Settings."""
    return BudgetCache(
        store=create_budget_store(settings),
        max_daily_credits=settings.max_daily_credits,
        articles_per_credit=settings.articles_per_credit,
        near_limit_threshold=settings.near_limit_threshold,
        disable_credit_tracking=settings.disable_credit_tracking,
    )
