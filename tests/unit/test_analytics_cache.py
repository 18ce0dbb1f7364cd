"""
Tests for ResultCache: keys, TTL expiry, invalidation and compute-on-miss.
"""

from __future__ import annotations

import pytest

from src.components.analytics import (
    NullResultCache,
    ResultCache,
    build_cache_key,
    create_result_cache,
)


@pytest.fixture
def result_cache(clock) -> ResultCache:
    return ResultCache(default_ttl_seconds=30, cleanup_interval_seconds=10, time_port=clock)


class TestBuildCacheKey:
    def test_layout(self) -> None:
        assert build_cache_key("U1", "funnel", "P1", 30) == "U1:funnel:P1:30:"

    def test_global_and_all_scopes(self) -> None:
        assert build_cache_key(None, "funnel", None, 7) == "_global:funnel:all:7:"

    def test_filters_sorted_and_none_dropped(self) -> None:
        a = build_cache_key("U1", "q", None, 7, {"limit": 5, "kinds": ["scan", "linkClick"]})
        b = build_cache_key("U1", "q", None, 7, {"kinds": ["linkClick", "scan"], "limit": 5})
        c = build_cache_key(
            "U1", "q", None, 7, {"kinds": ["linkClick", "scan"], "limit": 5, "x": None}
        )
        assert a == b == c
        assert a.endswith("kinds=linkClick|scan,limit=5")

    def test_different_periods_different_keys(self) -> None:
        assert build_cache_key("U1", "funnel", None, 7) != build_cache_key("U1", "funnel", None, 30)


class TestResultCache:
    def test_get_miss_then_hit(self, result_cache: ResultCache) -> None:
        assert result_cache.get("k") is None
        result_cache.set("k", {"v": 1})
        assert result_cache.get("k") == {"v": 1}
        stats = result_cache.stats()
        assert stats.hits == 1
        assert stats.misses == 1

    def test_entries_expire(self, result_cache, clock) -> None:
        result_cache.set("k", 1)
        clock.advance(29)
        assert result_cache.get("k") == 1
        clock.advance(1)
        assert result_cache.get("k") is None

    def test_custom_ttl(self, result_cache, clock) -> None:
        result_cache.set("k", 1, ttl_seconds=60)
        clock.advance(45)
        assert result_cache.get("k") == 1

    def test_get_or_compute_caches(self, result_cache) -> None:
        calls = []

        def compute():
            calls.append(1)
            return "result"

        assert result_cache.get_or_compute("k", compute) == "result"
        assert result_cache.get_or_compute("k", compute) == "result"
        assert len(calls) == 1

    def test_none_results_not_cached(self, result_cache) -> None:
        calls = []

        def compute():
            calls.append(1)
            return None

        result_cache.get_or_compute("k", compute)
        result_cache.get_or_compute("k", compute)
        assert len(calls) == 2

    def test_compute_errors_propagate_and_cache_nothing(self, result_cache) -> None:
        def compute():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            result_cache.get_or_compute("k", compute)
        assert result_cache.stats().entries == 0

    def test_invalidate_drops_identity_and_global(self, result_cache) -> None:
        result_cache.set("U1:funnel:all:30:", 1)
        result_cache.set("U1:breakdown:P1:7:", 2)
        result_cache.set("_global:funnel:all:30:", 3)
        result_cache.set("U2:funnel:all:30:", 4)
        result_cache.set("U10:funnel:all:30:", 5)

        assert result_cache.invalidate("U1") == 3
        assert result_cache.get("U2:funnel:all:30:") == 4
        assert result_cache.get("U10:funnel:all:30:") == 5
        assert result_cache.get("U1:funnel:all:30:") is None

    def test_expired_entries_swept(self, result_cache, clock) -> None:
        result_cache.set("a", 1, ttl_seconds=5)
        result_cache.set("b", 2, ttl_seconds=120)
        clock.advance(11)
        result_cache.get("b")
        assert result_cache.stats().entries == 1

    def test_clear(self, result_cache) -> None:
        result_cache.set("a", 1)
        result_cache.clear()
        assert result_cache.get("a") is None


class TestNullResultCache:
    def test_always_computes(self) -> None:
        cache = NullResultCache()
        cache.set("k", 1)
        assert cache.get("k") is None
        assert cache.get_or_compute("k", lambda: 2) == 2
        assert cache.invalidate("U1") == 0

    def test_factory_disabled(self) -> None:
        assert isinstance(create_result_cache(enabled=False), NullResultCache)
        assert isinstance(create_result_cache(enabled=True), ResultCache)
