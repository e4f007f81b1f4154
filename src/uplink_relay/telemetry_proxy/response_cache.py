"""Short-lived cache of parsed upstream responses keyed by request identity."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional
from urllib.parse import urlencode

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter


LOGGER = structlog.get_logger("uplink_relay.response_cache")

CACHE_HIT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_response_cache_hits_total", "Requests answered from the response cache")
)
CACHE_MISS_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_response_cache_misses_total", "Requests that had to go upstream")
)
CACHE_EVICTION_COUNTER = GLOBAL_REGISTRY.register(
    Counter("uplink_relay_response_cache_evictions_total", "Expired entries removed from the response cache")
)


def cache_key(path: str, params: Iterable[tuple[str, str]]) -> str:
    """Build a key from the path and query parameters in their original order."""
    query = urlencode(list(params))
    return f"GET {path}?{query}" if query else f"GET {path}"


@dataclass
class CacheEntry:
    key: str
    value: Any
    stored_at: float
    ttl_seconds: float

    def is_live(self, now: float) -> bool:
        return now - self.stored_at < self.ttl_seconds


class ResponseCache:
    """TTL cache for JSON arrays.

    Expired entries are never returned; :meth:`get` drops them on sight and
    :meth:`sweep` reclaims the ones nobody reads again. A non-positive TTL
    turns :meth:`set` into a no-op.
    """

    def __init__(self, default_ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._sets = 0
        self._evictions = 0

    @property
    def enabled(self) -> bool:
        return self._default_ttl > 0

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            self._record_miss()
            return None
        if not entry.is_live(self._clock()):
            self._evict(key)
            self._record_miss()
            return None
        self._hits += 1
        CACHE_HIT_COUNTER.inc()
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        self._entries[key] = CacheEntry(key=key, value=value, stored_at=self._clock(), ttl_seconds=ttl)
        self._sets += 1

    def keys(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if entry.is_live(now))

    def stats(self) -> dict[str, int]:
        return {
            "hits": self._hits,
            "misses": self._misses,
            "sets": self._sets,
            "evictions": self._evictions,
        }

    def sweep(self) -> int:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_live(now)]
        for key in expired:
            self._evict(key)
        if expired:
            LOGGER.debug("Swept expired responses", evicted=len(expired), remaining=len(self._entries))
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep forever; cancelled by the application lifespan."""
        interval = max(0.1, interval_seconds)
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def _evict(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._evictions += 1
            CACHE_EVICTION_COUNTER.inc()

    def _record_miss(self) -> None:
        self._misses += 1
        CACHE_MISS_COUNTER.inc()
