import sqlite3
from datetime import timedelta

import pytest

from src.adapters.sqlite_db import (
    SQLiteDedupeStore,
    SQLiteEventLogRepo,
    SQLiteRegistryRepo,
    SQLiteRollupRepo,
    format_dt,
)
from src.components.analytics import EventFilter, StorageError
from src.core.entities import DeviceInfo, EventKind, GeoLocation, RollupCounters, Scope


@pytest.fixture
def log(db_path):
    return SQLiteEventLogRepo(db_path)


@pytest.fixture
def reg(db_path):
    return SQLiteRegistryRepo(db_path)


@pytest.fixture
def rollups(db_path):
    return SQLiteRollupRepo(db_path)


def test_format_dt_is_fixed_width(make_event):
    event = make_event()
    assert format_dt(event.occurred_at) == "2026-03-10T12:00:00.000000+00:00"


# --- Event log ---


def test_append_and_list_round_trip(log, make_event):
    event = make_event(
        session_id="s1",
        location=GeoLocation(country="India", city="Delhi", latitude=28.6, longitude=77.2),
        device=DeviceInfo(type="mobile", browser="Safari", os="iOS"),
    )
    log.append(event)

    stored = log.list_events(EventFilter(identity_id="U1"))
    assert stored == [event]


def test_append_same_id_once(log, make_event):
    event = make_event()
    log.append(event)
    log.append(event)
    assert log.count(EventFilter()) == 1


def test_list_newest_first_with_limit(log, make_event):
    base = make_event().occurred_at
    for hours in (3, 1, 2):
        log.append(make_event(occurred_at=base - timedelta(hours=hours)))

    events = log.list_events(EventFilter(), limit=2)
    assert [e.occurred_at for e in events] == [base - timedelta(hours=1), base - timedelta(hours=2)]


def test_filters(log, make_event):
    base = make_event().occurred_at
    log.append(make_event())
    log.append(make_event(scope_id="P2", kind=EventKind.PAGE_VIEW))
    log.append(make_event(scope_id=None))
    log.append(make_event(identity_id="U2", scope_id="P9", occurred_at=base - timedelta(days=3)))

    assert log.count(EventFilter(identity_id="U1")) == 3
    assert log.count(EventFilter(scope_id="P2")) == 1
    assert log.count(EventFilter(scope_ids=("P1", "P9"))) == 2
    assert log.count(EventFilter(scoped_only=True)) == 3
    assert log.count(EventFilter(kinds=(EventKind.PAGE_VIEW,))) == 1
    assert log.count(EventFilter(start=base - timedelta(days=1))) == 3
    assert log.count(EventFilter(end=base - timedelta(days=1))) == 1


def test_aggregate_by_kind_and_day(log, make_event):
    base = make_event().occurred_at
    log.append(make_event())
    log.append(make_event())
    log.append(make_event(occurred_at=base - timedelta(days=1)))
    log.append(make_event(kind=EventKind.VIDEO_VIEW))

    rows = log.aggregate(EventFilter(identity_id="U1"), ["day", "kind"])
    counts = {(r.key["day"], r.key["kind"]): r.count for r in rows}

    today = base.replace(hour=0)
    assert counts[(today, "scan")] == 2
    assert counts[(today - timedelta(days=1), "scan")] == 1
    assert counts[(today, "videoView")] == 1


def test_aggregate_day_of_week_monday_is_zero(log, make_event):
    # 2026-03-09 is a Monday
    log.append(make_event(occurred_at=make_event().occurred_at - timedelta(days=1)))
    rows = log.aggregate(EventFilter(), ["day_of_week"])
    assert [r.key["day_of_week"] for r in rows] == [0]


def test_aggregate_requires_dimension(log, make_event):
    log.append(make_event(location=GeoLocation(country="India")))
    log.append(make_event())
    rows = log.aggregate(EventFilter(require=("country",)), ["country"])
    assert [(r.key["country"], r.count) for r in rows] == [("India", 1)]


def test_aggregate_first_and_last(log, make_event):
    base = make_event().occurred_at
    log.append(make_event(session_id="s1", occurred_at=base - timedelta(minutes=5)))
    log.append(make_event(session_id="s1", occurred_at=base))
    (row,) = log.aggregate(EventFilter(), ["session_id"])
    assert (row.last_at - row.first_at).total_seconds() == 300


def test_purge_before(log, make_event):
    base = make_event().occurred_at
    log.append(make_event(occurred_at=base - timedelta(days=40)))
    log.append(make_event())
    assert log.purge_before(base - timedelta(days=30)) == 1
    assert log.count(EventFilter()) == 1


def test_storage_error_on_missing_table(tmp_path, make_event):
    log = SQLiteEventLogRepo(str(tmp_path / "empty.db"))
    with pytest.raises(StorageError):
        log.append(make_event())


# --- Registry ---


def test_resolve_identity_by_id_or_username(reg):
    assert reg.resolve_identity("U1").id == "U1"
    assert reg.resolve_identity("alice").id == "U1"
    assert reg.resolve_identity("nobody") is None


def test_scopes(reg):
    assert [s.scope_id for s in reg.list_scopes("U1")] == ["P1", "P2"]
    assert reg.get_scope("U1", "P1").campaign_type == "poster"
    assert reg.get_scope("U2", "P1") is None


def test_save_scope_keeps_counters(reg, rollups, make_event):
    rollups.increment_scope("U1", "P1", "total_scans", "last_scan_at", make_event().occurred_at)
    reg.save_scope(Scope(identity_id="U1", scope_id="P1", name="Renamed"))
    scope = reg.get_scope("U1", "P1")
    assert scope.name == "Renamed"
    assert scope.rollups.total_scans == 1


def test_delete_scope(reg):
    assert reg.delete_scope("U1", "P2") is True
    assert reg.delete_scope("U1", "P2") is False


def test_list_identities(reg):
    assert [i.id for i in reg.list_identities()] == ["U1", "U2"]


# --- Rollups ---


def test_increment_global_and_scope(reg, rollups, make_event):
    when = make_event().occurred_at
    assert rollups.increment_global("U1", "total_scans", "last_scan_at", when)
    assert rollups.increment_scope("U1", "P1", "total_scans", "last_scan_at", when)

    assert reg.get_identity("U1").rollups.total_scans == 1
    assert reg.get_identity("U1").rollups.last_scan_at == when
    assert reg.get_scope("U1", "P1").rollups.total_scans == 1
    assert reg.get_scope("U1", "P2").rollups.total_scans == 0


def test_increment_missing_rows(rollups, make_event):
    when = make_event().occurred_at
    assert rollups.increment_global("ghost", "total_scans", None, when) is False
    assert rollups.increment_scope("U1", "gone", "total_scans", None, when) is False


def test_last_timestamp_moves_forward_only(reg, rollups, make_event):
    when = make_event().occurred_at
    rollups.increment_global("U1", "video_views", "last_video_view_at", when)
    rollups.increment_global(
        "U1", "video_views", "last_video_view_at", when - timedelta(hours=2)
    )
    counters = reg.get_identity("U1").rollups
    assert counters.video_views == 2
    assert counters.last_video_view_at == when


def test_unknown_counter_rejected(rollups, make_event):
    with pytest.raises(ValueError):
        rollups.increment_global("U1", "id; DROP TABLE", None, make_event().occurred_at)


def test_replace_counters(reg, rollups):
    rollups.replace_global("U1", RollupCounters(total_scans=7, link_clicks=2))
    counters = reg.get_identity("U1").rollups
    assert counters.total_scans == 7
    assert counters.link_clicks == 2
    assert counters.last_scan_at is None


# --- Dedupe store ---


def test_dedupe_store_window(db_path, clock):
    store = SQLiteDedupeStore(db_path, time_port=clock)
    assert store.add("k", 10) is True
    assert store.add("k", 10) is False
    assert store.exists("k")

    clock.advance(10)
    assert store.exists("k") is False
    assert store.add("k", 10) is True


def test_dedupe_store_cleanup(db_path, clock):
    store = SQLiteDedupeStore(db_path, time_port=clock)
    store.add("a", 5)
    store.add("b", 60)
    clock.advance(6)
    assert store.cleanup_expired() == 1
    assert store.exists("b")


def fingerprint_rows(db_path: str) -> int:
    conn = sqlite3.connect(db_path)
    try:
        return conn.execute("SELECT COUNT(*) FROM dedupe_fingerprints").fetchone()[0]
    finally:
        conn.close()


def test_dedupe_store_prunes_expired_on_add(db_path, clock):
    store = SQLiteDedupeStore(db_path, time_port=clock)
    store.add("a", 5)
    store.add("b", 5)
    clock.advance(6)

    store.add("c", 5)
    assert fingerprint_rows(db_path) == 1


def test_dedupe_store_remove(db_path, clock):
    store = SQLiteDedupeStore(db_path, time_port=clock)
    store.add("k", 10)
    store.remove("k")
    assert store.exists("k") is False
    assert store.add("k", 10) is True


# --- Measures ---


def test_aggregate_sums_measure(log, make_event):
    log.append(make_event(kind=EventKind.PAGE_VIEW_DURATION, time_spent=10))
    log.append(make_event(kind=EventKind.PAGE_VIEW_DURATION, time_spent=25.5))
    log.append(make_event(kind=EventKind.PAGE_VIEW_DURATION))
    log.append(make_event(kind=EventKind.PAGE_VIEW_DURATION, scope_id="P2", time_spent=4))

    rows = log.aggregate(EventFilter(), ["scope_id"], measure="time_spent")
    by_scope = {r.key["scope_id"]: (r.count, r.measure_sum, r.measure_count) for r in rows}
    assert by_scope == {"P1": (3, 35.5, 2), "P2": (1, 4.0, 1)}


def test_aggregate_unknown_measure_rejected(log):
    with pytest.raises(ValueError):
        log.aggregate(EventFilter(), ["kind"], measure="payload) --")
