"""
Tier A: in-memory feed cache.

TTL cache keyed by source with stale-while-revalidate. An expired entry is
served immediately while a background task refreshes it; with the policy off,
expired entries are evicted and reported as misses. At capacity the single
oldest entry (by creation time) is evicted. ETag / Last-Modified values from
the previous fetch are kept for conditional requests.
"""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Awaitable, Callable

from news_pipeline.models import Article, CacheEntry
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_MAX_AGE: float = 5 * 60
_DEFAULT_MAX_SIZE: int = 50

Revalidator = Callable[[], Awaitable[Any]]


class FeedCache:
    """In-memory TTL cache for parsed feed payloads.

    Attributes:
        max_age: Seconds an entry stays fresh.
        max_size: Maximum number of cached keys.
        stale_while_revalidate: Serve expired entries while refreshing.
    """

    def __init__(
        self,
        max_age: float = _DEFAULT_MAX_AGE,
        max_size: int = _DEFAULT_MAX_SIZE,
        stale_while_revalidate: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_age = max_age
        self.max_size = max_size
        self.stale_while_revalidate = stale_while_revalidate
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._refreshing: dict[str, asyncio.Task[Any]] = {}
        self.hits = 0
        self.misses = 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(
        self,
        key: str,
        revalidate: Revalidator | None = None,
    ) -> list[Article] | None:
        """Return the cached payload for ``key`` or None on a miss.

        Args:
            key: Cache key (source key).
            revalidate: Coroutine factory that refetches and repopulates the
                entry. Scheduled in the background when a stale entry is
                served.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None

            if not entry.is_expired(self._clock()):
                self.hits += 1
                return list(entry.payload)

            if not self.stale_while_revalidate:
                del self._entries[key]
                self.misses += 1
                logger.debug("[%s] Expired entry evicted", key)
                return None

            self.hits += 1
            payload = list(entry.payload)

        logger.debug("[%s] Serving stale entry", key)
        if revalidate is not None:
            self._schedule_refresh(key, revalidate)
        return payload

    def has(self, key: str) -> bool:
        """True if ``key`` is cached and still fresh."""
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    def is_stale(self, key: str) -> bool:
        """True if ``key`` is cached but past its TTL."""
        entry = self._entries.get(key)
        return entry is not None and entry.is_expired(self._clock())

    def get_conditional_headers(self, key: str) -> dict[str, str]:
        """If-None-Match / If-Modified-Since headers from the previous fetch."""
        entry = self._entries.get(key)
        if entry is None:
            return {}
        headers: dict[str, str] = {}
        if entry.etag:
            headers["If-None-Match"] = entry.etag
        if entry.last_modified:
            headers["If-Modified-Since"] = entry.last_modified
        return headers

    def get_cached_sources(self) -> list[str]:
        return list(self._entries.keys())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set(
        self,
        key: str,
        articles: list[Article],
        etag: str | None = None,
        last_modified: str | None = None,
        ttl: float | None = None,
    ) -> None:
        """Store ``articles`` under ``key``, evicting the oldest entry if full."""
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=list(articles),
            created_at=now,
            expires_at=now + (ttl if ttl is not None else self.max_age),
            etag=etag,
            last_modified=last_modified,
        )
        async with self._lock:
            if key not in self._entries and len(self._entries) >= self.max_size:
                self._evict_oldest()
            self._entries[key] = entry
        logger.debug("[%s] Cached %d articles", key, len(articles))

    async def touch(self, key: str) -> list[Article] | None:
        """Renew the TTL of an entry after a 304 Not Modified.

        Returns:
            The renewed payload, or None if the entry vanished meanwhile.
        """
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            now = self._clock()
            self._entries[key] = CacheEntry(
                key=key,
                payload=entry.payload,
                created_at=now,
                expires_at=now + self.max_age,
                etag=entry.etag,
                last_modified=entry.last_modified,
            )
            return list(entry.payload)

    def _evict_oldest(self) -> None:
        oldest_key = min(self._entries, key=lambda k: self._entries[k].created_at)
        del self._entries[oldest_key]
        logger.debug("[%s] Evicted oldest entry (capacity %d)", oldest_key, self.max_size)

    def clear(self) -> None:
        """Drop every entry and reset the counters."""
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        logger.info("Feed cache cleared")

    def clear_expired(self) -> int:
        """Drop expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Cleared %d expired feed cache entries", len(expired))
        return len(expired)

    async def warm_up(
        self,
        keys: list[str],
        loader: Callable[[str], Awaitable[list[Article]]],
    ) -> int:
        """Populate the cache for ``keys`` that are not already fresh.

        Returns:
            Number of keys loaded.
        """
        loaded = 0
        for key in keys:
            if self.has(key):
                continue
            try:
                articles = await loader(key)
            except Exception as e:
                logger.warning("[%s] Warm-up failed: %s", key, e)
                continue
            if articles:
                await self.set(key, articles)
                loaded += 1
        logger.info("Feed cache warm-up: %d/%d keys loaded", loaded, len(keys))
        return loaded

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------

    def _schedule_refresh(self, key: str, revalidate: Revalidator) -> None:
        running = self._refreshing.get(key)
        if running is not None and not running.done():
            return
        self._refreshing[key] = asyncio.create_task(self._run_refresh(key, revalidate))

    async def _run_refresh(self, key: str, revalidate: Revalidator) -> None:
        try:
            await revalidate()
            logger.debug("[%s] Background refresh complete", key)
        except Exception as e:
            logger.warning("[%s] Background refresh failed: %s", key, e)
        finally:
            self._refreshing.pop(key, None)

    async def wait_for_refreshes(self) -> None:
        """Block until all scheduled background refreshes have finished."""
        pending = [t for t in self._refreshing.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_hit_rate(self) -> float:
        """Hit rate as a percentage of all lookups."""
        total = self.hits + self.misses
        return (self.hits / total) * 100.0 if total else 0.0

    def _approx_size_kb(self) -> float:
        size = sum(
            len(json.dumps(entry.to_dict(), default=str))
            for entry in self._entries.values()
        )
        return size / 1024

    def get_stats(self) -> dict[str, Any]:
        """Return current cache state for monitoring."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total_requests": self.hits + self.misses,
            "hit_rate": round(self.get_hit_rate(), 1),
            "cached_sources": len(self._entries),
            "cache_size_kb": round(self._approx_size_kb(), 1),
            "max_size": self.max_size,
            "max_age_seconds": self.max_age,
            "stale_while_revalidate": self.stale_while_revalidate,
        }
