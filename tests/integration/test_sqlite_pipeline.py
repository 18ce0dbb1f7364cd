"""
End-to-end: ingest through the service onto SQLite, then query and repair.
"""

import argparse
from datetime import UTC, datetime, timedelta

import pytest

from src.adapters.sqlite_db import (
    SQLiteDedupeStore,
    SQLiteEventLogRepo,
    SQLiteRegistryRepo,
    SQLiteRollupRepo,
)
from src.app_shell.cli import handle_purge, handle_rebuild, handle_stats
from src.components.analytics import (
    AnalyticsIngestionService,
    DashboardQueryInput,
    DedupeService,
    EventFilter,
    EventLogWriteError,
    FunnelQueryInput,
    ResultCache,
    ScopeNotFoundError,
    StorageError,
    create_query_engine,
    run_query_dashboard,
    run_query_funnel,
)
from src.core.entities import Event, EventKind, RollupCounters
from src.rules.loader import load_rules


@pytest.fixture
def sqlite_service(db_path, clock):
    cache = ResultCache(time_port=clock)
    service = AnalyticsIngestionService(
        event_log=SQLiteEventLogRepo(db_path),
        registry=SQLiteRegistryRepo(db_path),
        rollup_repo=SQLiteRollupRepo(db_path),
        dedupe=DedupeService(store=SQLiteDedupeStore(db_path, time_port=clock)),
        cache=cache,
        time_port=clock,
    )
    return service, cache


@pytest.fixture
def rules(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text(
        "project:\n  slug: test\n  rules_version: '1.0'\nanalytics:\n  retention:\n    days: 30\n"
    )
    return load_rules(path)


def test_ingest_query_and_rollups(db_path, clock, sqlite_service):
    service, cache = sqlite_service
    engine = create_query_engine(SQLiteEventLogRepo(db_path), SQLiteRegistryRepo(db_path))

    for session in ("a", "b", "c"):
        assert service.ingest(
            {"identityId": "alice", "scopeId": "P1", "kind": "scan", "sessionId": session}
        ).accepted
    assert service.ingest(
        {"identityId": "U1", "scopeId": "P1", "kind": "scan", "sessionId": "a"}
    ).duplicate
    assert service.ingest(
        {"identityId": "U1", "scopeId": "P1", "kind": "videoView", "sessionId": "a"}
    ).accepted

    inp = FunnelQueryInput(identity_id="U1", period="7d")
    funnel = run_query_funnel(inp, engine=engine, cache=cache, time_port=clock)
    assert funnel.scans == 3
    assert funnel.video_views == 1

    # new event invalidates the cached funnel
    service.ingest({"identityId": "U1", "scopeId": "P2", "kind": "scan"})
    assert run_query_funnel(inp, engine=engine, cache=cache, time_port=clock).scans == 4

    registry = SQLiteRegistryRepo(db_path)
    assert registry.get_identity("U1").rollups.total_scans == 4
    assert registry.get_scope("U1", "P1").rollups.total_scans == 3
    assert registry.get_scope("U1", "P2").rollups.total_scans == 1
    assert registry.get_scope("U1", "P1").rollups.last_video_view_at == clock.now_utc()


def test_duplicate_across_service_instances(db_path, clock, sqlite_service):
    service, _ = sqlite_service
    body = {"identityId": "U1", "scopeId": "P1", "kind": "scan", "sessionId": "x"}
    assert service.ingest(body).accepted

    # shared fingerprint table, fresh service
    other = AnalyticsIngestionService(
        event_log=SQLiteEventLogRepo(db_path),
        registry=SQLiteRegistryRepo(db_path),
        rollup_repo=SQLiteRollupRepo(db_path),
        dedupe=DedupeService(store=SQLiteDedupeStore(db_path, time_port=clock)),
        time_port=clock,
    )
    assert other.ingest(body).duplicate
    assert SQLiteEventLogRepo(db_path).count(EventFilter()) == 1


def test_unknown_scope_writes_nothing(db_path, sqlite_service):
    service, _ = sqlite_service
    with pytest.raises(ScopeNotFoundError):
        service.ingest({"identityId": "U2", "scopeId": "P1", "kind": "scan"})
    assert SQLiteEventLogRepo(db_path).count(EventFilter()) == 0


def test_dashboard_rollup_snapshot(db_path, clock, sqlite_service):
    service, cache = sqlite_service
    service.ingest({"identityId": "U1", "scopeId": "P1", "kind": "scan"})
    engine = create_query_engine(SQLiteEventLogRepo(db_path), SQLiteRegistryRepo(db_path))

    out = run_query_dashboard(
        DashboardQueryInput(identity_id="U1", scope_id="P1"),
        engine=engine,
        cache=cache,
        time_port=clock,
    )
    assert out.rollups.total_scans == 1
    assert out.funnel.scans == 1


def test_retry_after_sqlite_write_failure(db_path, clock, sqlite_service):
    service, _ = sqlite_service

    class LockedOnce(SQLiteEventLogRepo):
        failed = False

        def append(self, event):
            if not self.failed:
                self.failed = True
                raise StorageError("database is locked")
            return super().append(event)

    flaky = AnalyticsIngestionService(
        event_log=LockedOnce(db_path),
        registry=SQLiteRegistryRepo(db_path),
        rollup_repo=SQLiteRollupRepo(db_path),
        dedupe=DedupeService(store=SQLiteDedupeStore(db_path, time_port=clock)),
        time_port=clock,
    )
    body = {"identityId": "U1", "scopeId": "P1", "kind": "scan", "sessionId": "r"}
    with pytest.raises(EventLogWriteError):
        flaky.ingest(body)

    clock.advance(1)
    assert flaky.ingest(body).accepted
    assert SQLiteEventLogRepo(db_path).count(EventFilter()) == 1
    assert service.ingest(body).duplicate


# --- CLI maintenance commands ---


def test_rebuild_repairs_drift(db_path, sqlite_service, capsys):
    service, _ = sqlite_service
    service.ingest({"identityId": "U1", "scopeId": "P1", "kind": "scan"})
    SQLiteRollupRepo(db_path).replace_global("U1", RollupCounters(total_scans=42))

    handle_rebuild(db_path, argparse.Namespace(identity="alice"))

    assert SQLiteRegistryRepo(db_path).get_identity("U1").rollups.total_scans == 1
    assert "total_scans: 1" in capsys.readouterr().out


def test_rebuild_unknown_identity_exits(db_path):
    with pytest.raises(SystemExit):
        handle_rebuild(db_path, argparse.Namespace(identity="ghost"))


def test_purge_uses_retention(db_path, rules, capsys):
    log = SQLiteEventLogRepo(db_path)
    now = datetime.now(UTC)
    log.append(Event(identity_id="U1", kind=EventKind.SCAN, occurred_at=now - timedelta(days=90)))
    log.append(Event(identity_id="U1", kind=EventKind.SCAN, occurred_at=now))

    handle_purge(db_path, rules, argparse.Namespace(days=None))

    assert log.count(EventFilter()) == 1
    assert "Purged 1 event(s)" in capsys.readouterr().out


def test_purge_without_retention_exits(db_path, rules):
    rules.analytics.retention.days = None
    with pytest.raises(SystemExit):
        handle_purge(db_path, rules, argparse.Namespace(days=None))


def test_stats_prints_funnel(db_path, rules, capsys):
    log = SQLiteEventLogRepo(db_path)
    now = datetime.now(UTC)
    log.append(Event(identity_id="U1", scope_id="P1", kind=EventKind.SCAN, occurred_at=now))

    handle_stats(db_path, rules, argparse.Namespace(identity="alice", scope=None, period="7d"))

    out = capsys.readouterr().out
    assert "scan: 1" in out
    assert '"scans": 1' in out
