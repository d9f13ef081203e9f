"""In-memory TTL caches.

Two named caches live in a :class:`CacheManager`:

- ``pages`` - locally rendered page responses (demo fallback documents).
- ``proxy`` - rewritten proxy responses, keyed by the exact target URL.

Lifecycle::

    caches = CacheManager.from_settings(settings)   # at startup
    caches.start_sweeper()
    ...
    await caches.close()                            # at shutdown

Entries are immutable; ``set`` always stores a fresh entry.  Expired
entries are dropped lazily on read, every ``sweep_every`` writes, and by
the background sweeper.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, TypeVar

from embedproxy.core.config import Settings

logger = logging.getLogger(__name__)

V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    key: str
    value: V
    expires_at: float


class TTLCache(Generic[V]):
    """Thread-safe key/value store with per-entry expiry."""

    def __init__(
        self,
        name: str,
        ttl: float,
        sweep_every: int = 50,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.ttl = ttl
        self.sweep_every = sweep_every
        self._clock = clock
        self._entries: dict[str, CacheEntry[V]] = {}
        self._lock = threading.Lock()
        self._writes = 0
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        """Return the live value for *key*; an expired entry is evicted."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                logger.debug("%s cache MISS: %s", self.name, key)
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self.misses += 1
                logger.debug("%s cache EXPIRED: %s", self.name, key)
                return None
            self.hits += 1
            logger.debug("%s cache HIT: %s", self.name, key)
            return entry.value

    def set(self, key: str, value: V, ttl: float | None = None) -> None:
        expires_at = self._clock() + (self.ttl if ttl is None else ttl)
        with self._lock:
            self._entries[key] = CacheEntry(key, value, expires_at)
            self._writes += 1
            due = self.sweep_every > 0 and self._writes % self.sweep_every == 0
        if due:
            self.sweep()

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def sweep(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("%s cache sweep: removed %d expired entries", self.name, len(expired))
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self.hits = 0
            self.misses = 0
        return removed

    def stats(self) -> dict[str, int | float | str]:
        with self._lock:
            size = len(self._entries)
            hits, misses = self.hits, self.misses
        total = hits + misses
        return {
            "name": self.name,
            "size": size,
            "hits": hits,
            "misses": misses,
            "hit_rate": round(hits / total * 100, 1) if total else 0.0,
            "ttl_seconds": self.ttl,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        # Presence in the backing store, expired or not
        with self._lock:
            return key in self._entries


class CacheManager:
    """Owns the named caches and the periodic expiry sweep."""

    def __init__(
        self,
        pages: TTLCache[str],
        proxy: TTLCache[str],
        sweep_interval: float = 60.0,
    ) -> None:
        self.pages = pages
        self.proxy = proxy
        self.sweep_interval = sweep_interval
        self._sweeper: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Callable[[], float] = time.monotonic
    ) -> CacheManager:
        return cls(
            pages=TTLCache(
                "pages",
                settings.page_cache_ttl_ms / 1000,
                sweep_every=settings.cache_sweep_every_n_sets,
                clock=clock,
            ),
            proxy=TTLCache(
                "proxy",
                settings.proxy_cache_ttl_ms / 1000,
                sweep_every=settings.cache_sweep_every_n_sets,
                clock=clock,
            ),
            sweep_interval=settings.cache_sweep_interval_s,
        )

    @property
    def caches(self) -> tuple[TTLCache[str], ...]:
        return (self.pages, self.proxy)

    def sweep(self) -> int:
        return sum(cache.sweep() for cache in self.caches)

    def clear(self) -> int:
        removed = sum(cache.clear() for cache in self.caches)
        logger.info("Caches cleared: %d items removed", removed)
        return removed

    def stats(self) -> dict[str, dict[str, int | float | str]]:
        return {cache.name: cache.stats() for cache in self.caches}

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    def start_sweeper(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_forever())

    async def _sweep_forever(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.sweep()
            if removed:
                logger.info("Periodic cache sweep removed %d expired entries", removed)

    async def close(self) -> None:
        """Stop the sweeper and release every cached entry."""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self.clear()
