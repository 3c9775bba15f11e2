"""In-process TTL caches for deal signals and quality reports.

Entries are replaced on write and never mutated in place, so readers
only ever see a complete payload. Staleness is bounded by the TTL.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from blueprint.config import get_settings

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._store: dict[str, CacheEntry[T]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> T | None:
        """Cached value, or None if absent or expired. Expired entries are evicted."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._store[key]
                return None
            return entry.value

    def put(self, key: str, value: T) -> None:
        with self._lock:
            self._store[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def invalidate(self, predicate: Callable[[str], bool]) -> int:
        """Drop every key matching *predicate*; returns how many were dropped."""
        with self._lock:
            doomed = [k for k in self._store if predicate(k)]
            for k in doomed:
                del self._store[k]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @property
    def size(self) -> int:
        return len(self._store)


# ---------------------------------------------------------------------------
# Signal cache
# ---------------------------------------------------------------------------


def signal_cache_key(
    auth_mode: str, viewer_id: str, account_name: str, opportunity_name: str, owner_email: str,
) -> str:
    return f"{auth_mode}:{viewer_id}:{account_name}:{opportunity_name}:{owner_email}"


class SignalCache:
    """Memoizes per-deal signal fetches for a few minutes."""

    def __init__(self, store: TTLCache[Any] | None = None):
        self.store = store or TTLCache(get_settings().signal_cache_ttl_seconds)

    async def get_or_fetch(self, key: str, producer: Callable[[], Awaitable[T]]) -> T:
        cached = self.store.get(key)
        if cached is not None:
            return cached
        value = await producer()
        self.store.put(key, value)
        return value

    def invalidate(self, account_name: str | None = None, opportunity_name: str | None = None) -> int:
        """Evict every key containing ANY of the given names (case-insensitive).

        A short name can also clear entries of unrelated deals.
        """
        tokens = [t.lower() for t in (account_name, opportunity_name) if t]
        if not tokens:
            return 0
        dropped = self.store.invalidate(lambda key: any(t in key.lower() for t in tokens))
        if dropped:
            log.info("Invalidated %d cached signal entries for %s", dropped, tokens)
        return dropped


_default_signal_cache: SignalCache | None = None
_default_quality_cache: TTLCache[Any] | None = None
_defaults_lock = threading.Lock()


def default_signal_cache() -> SignalCache:
    global _default_signal_cache
    with _defaults_lock:
        if _default_signal_cache is None:
            _default_signal_cache = SignalCache()
        return _default_signal_cache


def default_quality_cache() -> TTLCache[Any]:
    global _default_quality_cache
    with _defaults_lock:
        if _default_quality_cache is None:
            _default_quality_cache = TTLCache(get_settings().quality_cache_ttl_seconds)
        return _default_quality_cache
