"""
Market data cache
TTL cache for normalized provider results with fill coalescing and
stale-on-error fallback
"""
import asyncio
import os
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    provider: str
    query_key: str
    value: Any
    fetched_at: datetime
    stored_at: float  # monotonic clock reading
    ttl: float

    def age(self, now: float) -> float:
        return now - self.stored_at

    def is_fresh(self, now: float) -> bool:
        return self.age(now) < self.ttl


@dataclass
class CacheLookup:
    value: Any
    fetched_at: datetime
    stale: bool = False
    from_cache: bool = False


class MarketCacheService:
    """
    In-process cache keyed by (provider, normalized query key).

    Concurrent misses for the same key share one upstream fill. No lock is
    held while a fill is running, so lookups for other keys never wait on it.
    """

    def __init__(
        self,
        sweep_interval: Optional[float] = None,
        stale_factor: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = utcnow,
    ):
        self.sweep_interval = sweep_interval if sweep_interval is not None else float(
            os.getenv("MARKET_CACHE_SWEEP_SECONDS", "300")
        )
        self.stale_factor = stale_factor if stale_factor is not None else float(
            os.getenv("MARKET_CACHE_STALE_FACTOR", "2")
        )
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._inflight: Dict[CacheKey, asyncio.Future] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._counters: Counter = Counter()

    # ------------------------------------------------------------------ lifecycle

    def start(self) -> None:
        """Start the periodic sweep. Must be called from a running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
            logger.info(f"Market cache sweep started (every {self.sweep_interval}s)")

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for future in list(self._inflight.values()):
            future.cancel()
        self._inflight.clear()
        self._entries.clear()
        logger.info("Market cache closed")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Market cache sweep failed: {e}")

    # ------------------------------------------------------------------ lookups

    async def get_or_fetch(
        self,
        provider: str,
        query_key: str,
        fetcher: Callable[[], Awaitable[Any]],
        ttl: float,
        force: bool = False,
    ) -> CacheLookup:
        """
        Return the cached value for (provider, query_key), filling it when missing or expired.

        Args:
            provider: Provider name
            query_key: Normalized query key
            fetcher: Coroutine function performing the upstream call
            ttl: Freshness window in seconds for a newly stored value
            force: Re-query even when the cached value is fresh

        Returns:
            CacheLookup; ``stale`` is True when the refresh failed and the
            previous value was served instead

        Raises:
            The fetcher's exception when the refresh fails and nothing is cached
        """
        key = (provider, query_key)
        entry = self._entries.get(key)
        if entry is not None and not force and entry.is_fresh(self._clock()):
            self._counters["hits"] += 1
            return CacheLookup(entry.value, entry.fetched_at, stale=False, from_cache=True)

        self._counters["misses"] += 1
        future = self._inflight.get(key)
        if future is None:
            future = asyncio.ensure_future(self._fill(key, fetcher, ttl))
            self._inflight[key] = future
            future.add_done_callback(lambda f, k=key: self._fill_done(k, f))
        else:
            self._counters["coalesced"] += 1

        try:
            filled = await asyncio.shield(future)
            return CacheLookup(filled.value, filled.fetched_at, stale=False, from_cache=False)
        except asyncio.CancelledError:
            raise
        except Exception:
            previous = self._entries.get(key)
            if previous is None:
                raise
            self._counters["stale_served"] += 1
            logger.warning(
                f"Serving stale {provider} data for '{query_key}' "
                f"(age {previous.age(self._clock()):.0f}s)"
            )
            return CacheLookup(previous.value, previous.fetched_at, stale=True, from_cache=True)

    async def _fill(self, key: CacheKey, fetcher, ttl: float) -> CacheEntry:
        provider, query_key = key
        try:
            value = await fetcher()
        except Exception as e:
            self._counters["refresh_failures"] += 1
            logger.warning(f"Cache fill failed for {provider} '{query_key}': {e}")
            raise
        entry = CacheEntry(
            provider=provider,
            query_key=query_key,
            value=value,
            fetched_at=self._wall_clock(),
            stored_at=self._clock(),
            ttl=ttl,
        )
        self._entries[key] = entry
        return entry

    def _fill_done(self, key: CacheKey, future: asyncio.Future) -> None:
        if self._inflight.get(key) is future:
            del self._inflight[key]
        if not future.cancelled():
            # mark the exception retrieved when every waiter went away
            future.exception()

    def put(self, provider: str, query_key: str, value: Any, ttl: float,
            fetched_at: Optional[datetime] = None) -> CacheEntry:
        entry = CacheEntry(
            provider=provider,
            query_key=query_key,
            value=value,
            fetched_at=fetched_at or self._wall_clock(),
            stored_at=self._clock(),
            ttl=ttl,
        )
        self._entries[(provider, query_key)] = entry
        return entry

    # ------------------------------------------------------------------ maintenance

    def invalidate(self, provider: Optional[str] = None) -> int:
        """Drop every entry for ``provider``, or everything when provider is None."""
        if provider is None:
            removed = len(self._entries)
            self._entries.clear()
        else:
            keys = [k for k in self._entries if k[0] == provider]
            for k in keys:
                del self._entries[k]
            removed = len(keys)
        logger.info(f"Invalidated {removed} market cache entries for {provider or 'all providers'}")
        return removed

    def sweep(self) -> int:
        """Evict entries older than ttl * stale_factor."""
        now = self._clock()
        expired = [
            k for k, e in self._entries.items()
            if e.age(now) >= e.ttl * self.stale_factor
        ]
        for k in expired:
            del self._entries[k]
        if expired:
            logger.debug(f"Market cache sweep evicted {len(expired)} entries")
        return len(expired)

    def stats(self) -> Dict[str, Any]:
        per_provider = Counter(k[0] for k in self._entries)
        return {
            "keys": len(self._entries),
            "hits": self._counters["hits"],
            "misses": self._counters["misses"],
            "stale_served": self._counters["stale_served"],
            "refresh_failures": self._counters["refresh_failures"],
            "coalesced": self._counters["coalesced"],
            "providers": dict(per_provider),
        }

    def __len__(self) -> int:
        return len(self._entries)
