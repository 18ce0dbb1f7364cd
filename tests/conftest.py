from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteRegistryRepo
from src.components.analytics import (
    AnalyticsIngestionService,
    AnalyticsQueryEngine,
    DedupeService,
    InMemoryDedupeStore,
    InMemoryEventLog,
    InMemoryRegistry,
    ResultCache,
)
from src.core.entities import Event, EventKind, EventPayload, Identity, Scope

# Tuesday
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


class MockTimePort:
    """Mock time provider."""

    def __init__(self, now: datetime | None = None) -> None:
        self._now = now or NOW

    def now_utc(self) -> datetime:
        return self._now

    def set_now(self, now: datetime) -> None:
        self._now = now

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)


def seed_registry(registry: Any) -> None:
    """Two identities; U1 owns P1 and P2, U2 owns P9."""
    registry.save_identity(Identity(id="U1", username="alice", created_at=NOW))
    registry.save_identity(Identity(id="U2", username="bob", created_at=NOW))
    registry.save_scope(
        Scope(
            identity_id="U1",
            scope_id="P1",
            name="Spring Poster",
            campaign_type="poster",
            created_at=NOW,
        )
    )
    registry.save_scope(
        Scope(
            identity_id="U1",
            scope_id="P2",
            name="Trade Show Flyer",
            campaign_type="flyer",
            created_at=NOW,
        )
    )
    registry.save_scope(Scope(identity_id="U2", scope_id="P9", name="Menu", created_at=NOW))


# --- Clock ---


@pytest.fixture
def clock() -> MockTimePort:
    return MockTimePort(NOW)


# --- In-memory stack ---


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def registry() -> InMemoryRegistry:
    reg = InMemoryRegistry()
    seed_registry(reg)
    return reg


@pytest.fixture
def dedupe(clock: MockTimePort) -> DedupeService:
    return DedupeService(store=InMemoryDedupeStore(time_port=clock))


@pytest.fixture
def cache(clock: MockTimePort) -> ResultCache:
    return ResultCache(time_port=clock)


@pytest.fixture
def service(
    event_log: InMemoryEventLog,
    registry: InMemoryRegistry,
    dedupe: DedupeService,
    cache: ResultCache,
    clock: MockTimePort,
) -> AnalyticsIngestionService:
    return AnalyticsIngestionService(
        event_log=event_log,
        registry=registry,
        rollup_repo=registry,
        dedupe=dedupe,
        cache=cache,
        time_port=clock,
    )


@pytest.fixture
def engine(event_log: InMemoryEventLog, registry: InMemoryRegistry) -> AnalyticsQueryEngine:
    return AnalyticsQueryEngine(event_log=event_log, registry=registry)


@pytest.fixture
def make_event() -> Callable[..., Event]:
    """Factory for stored events, defaulting to a U1/P1 scan at NOW."""

    def _make(
        kind: EventKind = EventKind.SCAN,
        identity_id: str = "U1",
        scope_id: str | None = "P1",
        occurred_at: datetime = NOW,
        session_id: str | None = None,
        **payload: Any,
    ) -> Event:
        return Event(
            identity_id=identity_id,
            scope_id=scope_id,
            kind=kind,
            occurred_at=occurred_at,
            session_id=session_id,
            payload=EventPayload(**payload),
        )

    return _make


# --- SQLite ---


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Migrated, seeded SQLite database."""
    path = str(tmp_path / "engage.db")
    SQLiteMigrator(path).run_migrations()
    seed_registry(SQLiteRegistryRepo(path))
    return path
