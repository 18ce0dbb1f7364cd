"""
Tests for AnalyticsDedupeService.

Duplicate client fires inside the window are suppressed; anything that
differs in identity, scope, kind or the per-kind disambiguator is not.
"""

from __future__ import annotations

import pytest

from src.components.analytics import (
    DedupeConfig,
    DedupeService,
    InMemoryDedupeStore,
    create_dedupe_service,
    generate_dedupe_key,
)
from src.core.entities import EventKind

# --- Fixtures ---


@pytest.fixture
def store(clock) -> InMemoryDedupeStore:
    """Fresh dedupe store on the mock clock."""
    return InMemoryDedupeStore(time_port=clock)


@pytest.fixture
def dedupe_service(store: InMemoryDedupeStore) -> DedupeService:
    return DedupeService(store=store)


class FailingStore:
    def add(self, key: str, ttl_seconds: int) -> bool:
        raise ConnectionError("store down")

    def remove(self, key: str) -> None:
        raise ConnectionError("store down")

    def cleanup_expired(self) -> int:
        raise ConnectionError("store down")


# --- Fingerprints ---


class TestGenerateDedupeKey:
    def test_same_event_same_key(self, make_event) -> None:
        assert generate_dedupe_key(make_event()) == generate_dedupe_key(make_event())

    def test_key_is_short_hex(self, make_event) -> None:
        key = generate_dedupe_key(make_event())
        assert len(key) == 32
        int(key, 16)

    def test_identity_scope_and_kind_matter(self, make_event) -> None:
        base = generate_dedupe_key(make_event())
        assert base != generate_dedupe_key(make_event(identity_id="U2"))
        assert base != generate_dedupe_key(make_event(scope_id="P2"))
        assert base != generate_dedupe_key(make_event(kind=EventKind.PAGE_VIEW))

    def test_milestone_disambiguates(self, make_event) -> None:
        def milestone(value: int):
            return make_event(
                kind=EventKind.VIDEO_PROGRESS_MILESTONE,
                video_milestone=value,
                video_progress=10,
                video_duration=40,
            )

        assert generate_dedupe_key(milestone(25)) != generate_dedupe_key(milestone(50))

    def test_video_index_disambiguates(self, make_event) -> None:
        first = make_event(kind=EventKind.VIDEO_VIEW, video_index=0)
        second = make_event(kind=EventKind.VIDEO_VIEW, video_index=1)
        assert generate_dedupe_key(first) != generate_dedupe_key(second)

    def test_link_target_disambiguates(self, make_event) -> None:
        a = make_event(kind=EventKind.LINK_CLICK, link_type="website", link_url="https://a.test")
        b = make_event(kind=EventKind.LINK_CLICK, link_type="website", link_url="https://b.test")
        assert generate_dedupe_key(a) != generate_dedupe_key(b)

    def test_session_disambiguates_scans(self, make_event) -> None:
        a = make_event(session_id="s1")
        b = make_event(session_id="s2")
        assert generate_dedupe_key(a) != generate_dedupe_key(b)

    def test_request_context_not_in_key(self, make_event) -> None:
        a = make_event(ip_address="10.0.0.1", user_agent="Mozilla/5.0")
        b = make_event(ip_address="10.0.0.2", user_agent="curl/8")
        assert generate_dedupe_key(a) == generate_dedupe_key(b)


# --- Store ---


class TestInMemoryDedupeStore:
    def test_add_new_then_duplicate(self, store: InMemoryDedupeStore) -> None:
        assert store.add("k", 10) is True
        assert store.add("k", 10) is False
        assert store.exists("k")

    def test_expired_entry_can_be_added_again(self, store, clock) -> None:
        store.add("k", 10)
        clock.advance(10)
        assert store.exists("k") is False
        assert store.add("k", 10) is True

    def test_cleanup_expired(self, store, clock) -> None:
        store.add("a", 5)
        store.add("b", 60)
        clock.advance(6)
        assert store.cleanup_expired() == 1
        assert store.exists("b")

    def test_remove(self, store) -> None:
        store.add("k", 10)
        store.remove("k")
        store.remove("missing")
        assert store.add("k", 10) is True

    def test_expired_entries_swept_on_add(self, clock) -> None:
        store = InMemoryDedupeStore(time_port=clock, sweep_interval_seconds=60)
        store.add("a", 5)
        clock.advance(6)
        store.add("b", 10)
        assert len(store) == 2

        clock.advance(60)
        store.add("c", 10)
        assert len(store) == 1
        assert store.exists("c")


# --- Service ---


class TestDedupeService:
    def test_first_accepted_repeat_suppressed(self, dedupe_service, make_event) -> None:
        first = dedupe_service.should_accept(make_event())
        second = dedupe_service.should_accept(make_event())
        assert first.accepted is True
        assert second.accepted is False
        assert second.is_duplicate
        assert first.fingerprint == second.fingerprint

    def test_accepted_again_after_window(self, dedupe_service, make_event, clock) -> None:
        dedupe_service.should_accept(make_event())
        clock.advance(11)
        assert dedupe_service.should_accept(make_event()).accepted is True

    def test_milestone_window_override(self, dedupe_service, make_event, clock) -> None:
        event = make_event(
            kind=EventKind.VIDEO_PROGRESS_MILESTONE,
            video_milestone=50,
            video_progress=20,
            video_duration=40,
        )
        first = dedupe_service.should_accept(event)
        assert first.window_seconds == 30
        clock.advance(20)
        assert dedupe_service.should_accept(event).accepted is False
        clock.advance(11)
        assert dedupe_service.should_accept(event).accepted is True

    def test_disabled_accepts_everything(self, store, make_event) -> None:
        service = DedupeService(store=store, config=DedupeConfig(enabled=False))
        assert service.should_accept(make_event()).accepted
        assert service.should_accept(make_event()).accepted

    def test_store_failure_fails_open(self, make_event) -> None:
        service = DedupeService(store=FailingStore())
        result = service.should_accept(make_event())
        assert result.accepted is True
        assert result.store_failed is True

    def test_release_allows_retry(self, dedupe_service, make_event) -> None:
        result = dedupe_service.should_accept(make_event())
        dedupe_service.release(result)
        assert dedupe_service.should_accept(make_event()).accepted is True

    def test_releasing_duplicate_keeps_original(self, dedupe_service, make_event) -> None:
        dedupe_service.should_accept(make_event())
        duplicate = dedupe_service.should_accept(make_event())
        dedupe_service.release(duplicate)
        assert dedupe_service.should_accept(make_event()).accepted is False

    def test_release_store_failure_not_raised(self, clock, make_event) -> None:
        class StuckStore(InMemoryDedupeStore):
            def remove(self, key: str) -> None:
                raise ConnectionError("store down")

        service = DedupeService(store=StuckStore(time_port=clock))
        service.release(service.should_accept(make_event()))
        assert service.should_accept(make_event()).accepted is False

    def test_window_for(self) -> None:
        config = DedupeConfig(window_seconds=5, window_overrides={"scan": 2})
        assert config.window_for(EventKind.SCAN) == 2
        assert config.window_for(EventKind.PAGE_VIEW) == 5

    def test_factory(self, store) -> None:
        service = create_dedupe_service(store=store, config=DedupeConfig(window_seconds=3))
        assert service.config.window_seconds == 3
