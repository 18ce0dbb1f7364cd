"""
ResultCache - Short-lived query result cache.

Dashboard queries are read-heavy and repeat within seconds; results are
kept for a short TTL and dropped whenever the owning identity writes.

Key behaviors:
- Keys are "{identity}:{query}:{scope|all}:{days}:{filters}"
- Default TTL 30s; expired entries swept lazily every cleanup interval
- invalidate(identity) drops that identity's keys and all "_global:" keys
- Compute runs outside the lock; concurrent misses may compute twice
- Single process only; no cross-instance invalidation
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from src.core.ports.time import TimePort

logger = logging.getLogger(__name__)

GLOBAL_IDENTITY = "_global"


# --- Keys ---


def build_cache_key(
    identity_id: str | None,
    query: str,
    scope_id: str | None = None,
    days: int | None = None,
    filters: Mapping[str, Any] | None = None,
) -> str:
    """
    Build a cache key.

    Filter values are sorted by name so equal filters map to one key.
    """
    filter_part = ""
    if filters:
        filter_part = ",".join(
            f"{name}={_filter_value(filters[name])}"
            for name in sorted(filters)
            if filters[name] is not None
        )
    return ":".join(
        [
            identity_id or GLOBAL_IDENTITY,
            query,
            scope_id or "all",
            str(days) if days is not None else "-",
            filter_part,
        ]
    )


def _filter_value(value: Any) -> str:
    if isinstance(value, (list, tuple, set, frozenset)):
        return "|".join(sorted(str(v) for v in value))
    return str(value)


# --- Cache ---


@dataclass
class CacheEntry:
    value: Any
    expires_at: datetime


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int
    invalidations: int


class ResultCache:
    """In-process TTL cache guarded by a lock."""

    def __init__(
        self,
        default_ttl_seconds: int = 30,
        cleanup_interval_seconds: int = 10,
        time_port: TimePort | None = None,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._time = time_port
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._next_sweep = self._now() + self._cleanup_interval
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    def _now(self) -> datetime:
        if self._time is not None:
            return self._time.now_utc()
        return datetime.now(UTC)

    def _sweep_locked(self, now: datetime) -> None:
        if now < self._next_sweep:
            return
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._cleanup_interval
        if expired:
            logger.debug("Swept %d expired cache entries", len(expired))

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None when missing or expired."""
        with self._lock:
            now = self._now()
            self._sweep_locked(now)
            entry = self._entries.get(key)
            if entry is None or entry.expires_at <= now:
                self._misses += 1
                return None
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._now()
            self._sweep_locked(now)
            self._entries[key] = CacheEntry(value=value, expires_at=now + timedelta(seconds=ttl))

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl_seconds: int | None = None,
    ) -> Any:
        """Return the cached value or compute, store and return it."""
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, identity_id: str) -> int:
        """Drop every entry for the identity plus global entries."""
        prefixes = (f"{identity_id}:", f"{GLOBAL_IDENTITY}:")
        with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefixes)]
            for key in doomed:
                del self._entries[key]
            self._invalidations += 1
        if doomed:
            logger.debug("Invalidated %d cache entries for %s", len(doomed), identity_id)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(
                entries=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                invalidations=self._invalidations,
            )


class NullResultCache:
    """No-op cache used when caching is disabled."""

    def get(self, key: str) -> Any | None:
        return None

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        pass

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl_seconds: int | None = None,
    ) -> Any:
        return compute()

    def invalidate(self, identity_id: str) -> int:
        return 0

    def clear(self) -> None:
        pass

    def stats(self) -> CacheStats:
        return CacheStats(entries=0, hits=0, misses=0, invalidations=0)


# --- Factory ---


def create_result_cache(
    enabled: bool = True,
    default_ttl_seconds: int = 30,
    cleanup_interval_seconds: int = 10,
    time_port: TimePort | None = None,
) -> ResultCache | NullResultCache:
    """Create a ResultCache, or a NullResultCache when disabled."""
    if not enabled:
        return NullResultCache()
    return ResultCache(
        default_ttl_seconds=default_ttl_seconds,
        cleanup_interval_seconds=cleanup_interval_seconds,
        time_port=time_port,
    )
