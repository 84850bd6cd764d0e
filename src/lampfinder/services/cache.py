"""Process-lifetime caches used by the lookup services."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]


@dataclass(frozen=True)
class _CacheEntry(Generic[T]):
    value: T
    stored_at: float


class TimedCache(Generic[T]):
    """Single-value cache with a get-or-refresh contract.

    The value is replaced wholesale: a refresh builds the new value completely
    and then swaps the entry in one assignment, so concurrent readers see either
    the old or the new value. When a refresh fails and a previous value exists,
    that stale value is served instead of raising.
    """

    def __init__(self, ttl_seconds: float, *, name: str = "cache", clock: Clock | None = None) -> None:
        self.ttl_seconds = max(float(ttl_seconds), 0.0)
        self.name = name
        self._clock = clock or time.monotonic
        self._entry: _CacheEntry[T] | None = None

    def peek(self) -> T | None:
        """Return the cached value regardless of age."""

        entry = self._entry
        return entry.value if entry else None

    def is_fresh(self) -> bool:
        entry = self._entry
        if entry is None:
            return False
        return (self._clock() - entry.stored_at) < self.ttl_seconds

    def put(self, value: T) -> T:
        self._entry = _CacheEntry(value=value, stored_at=self._clock())
        return value

    def invalidate(self) -> None:
        self._entry = None

    async def get_or_refresh(self, loader: Callable[[], Awaitable[T]], *, force: bool = False) -> T:
        """Return the cached value, reloading it when stale or when ``force`` is set.

        Raises:
            Exception: Whatever ``loader`` raised, but only when no previous
                value exists to fall back on.
        """

        entry = self._entry
        if not force and entry is not None and self.is_fresh():
            LOGGER.debug("Using cached %s", self.name)
            return entry.value
        try:
            value = await loader()
        except Exception:
            if entry is None:
                raise
            LOGGER.warning("Refreshing %s failed; serving stale value", self.name, exc_info=True)
            return entry.value
        return self.put(value)


class SearchResponseCache(Generic[T]):
    """TTL cache for search responses keyed by street and rounded coordinates.

    Expired entries are swept on write at most once per ``check_period_seconds``.
    """

    def __init__(self, ttl_seconds: float, *, clock: Clock | None = None, check_period_seconds: float = 60.0) -> None:
        self.ttl_seconds = max(float(ttl_seconds), 0.0)
        self.check_period_seconds = check_period_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, _CacheEntry[T]] = {}
        self._last_sweep = self._clock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def generate_key(street: str, lat: float | None = None, lng: float | None = None) -> str:
        normalized = street.lower().strip()
        if lat is not None and lng is not None:
            return f"search:{normalized}:{round(lat, 4)}:{round(lng, 4)}"
        return f"search:{normalized}"

    def _is_live(self, entry: _CacheEntry[T], now: float) -> bool:
        return now - entry.stored_at < self.ttl_seconds

    def get(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is not None and self._is_live(entry, self._clock()):
            self.hits += 1
            LOGGER.debug("Cache hit key=%s", key)
            return entry.value
        if entry is not None:
            self._entries.pop(key, None)
        self.misses += 1
        LOGGER.debug("Cache miss key=%s", key)
        return None

    def set(self, key: str, value: T) -> None:
        if self.ttl_seconds <= 0:
            return
        now = self._clock()
        if now - self._last_sweep >= self.check_period_seconds:
            self.purge_expired()
        self._entries[key] = _CacheEntry(value=value, stored_at=now)

    def purge_expired(self) -> int:
        """Drop expired entries and return how many were removed."""

        now = self._clock()
        self._last_sweep = now
        expired = [key for key, entry in self._entries.items() if not self._is_live(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            LOGGER.debug("Purged %s expired search responses", len(expired))
        return len(expired)

    def flush(self) -> None:
        self._entries = {}
        LOGGER.info("Search response cache flushed")

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        live = sum(1 for entry in self._entries.values() if self._is_live(entry, now))
        return {"keys": live, "hits": self.hits, "misses": self.misses}


__all__ = ["SearchResponseCache", "TimedCache"]
