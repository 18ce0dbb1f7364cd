import sqlite3

import pytest

from src.adapters.sqlite.migrator import SQLiteMigrator


@pytest.fixture
def temp_db_path(tmp_path):
    return str(tmp_path / "test_db.sqlite")


def table_names(db_path: str) -> set[str]:
    conn = sqlite3.connect(db_path)
    try:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    finally:
        conn.close()
    return {r[0] for r in rows}


def test_migrator_creates_migration_table(temp_db_path):
    SQLiteMigrator(temp_db_path).run_migrations()
    assert "_migrations" in table_names(temp_db_path)


def test_migrator_applies_initial(temp_db_path):
    applied = SQLiteMigrator(temp_db_path).run_migrations()

    assert applied == ["001_initial.sql"]
    tables = table_names(temp_db_path)
    assert {"identities", "scopes", "events", "dedupe_fingerprints"} <= tables

    conn = sqlite3.connect(temp_db_path)
    cursor = conn.execute("SELECT filename FROM _migrations WHERE filename='001_initial.sql'")
    assert cursor.fetchone() is not None
    conn.close()


def test_migrator_is_idempotent(temp_db_path):
    migrator = SQLiteMigrator(temp_db_path)

    migrator.run_migrations()
    assert migrator.run_migrations() == []

    conn = sqlite3.connect(temp_db_path)
    count = conn.execute("SELECT COUNT(*) FROM _migrations").fetchone()[0]
    conn.close()
    assert count == 1


def test_event_indexes_exist(temp_db_path):
    SQLiteMigrator(temp_db_path).run_migrations()
    conn = sqlite3.connect(temp_db_path)
    names = {
        r[0]
        for r in conn.execute(
            "SELECT name FROM sqlite_master WHERE type='index' AND tbl_name='events'"
        )
    }
    conn.close()
    assert "idx_events_identity_kind" in names
    assert "idx_events_occurred" in names


def test_broken_migration_raises(temp_db_path, tmp_path):
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "001_bad.sql").write_text("CREATE TABLE (;")

    with pytest.raises(RuntimeError, match="001_bad.sql"):
        SQLiteMigrator(temp_db_path, str(migrations)).run_migrations()
