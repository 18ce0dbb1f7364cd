"""
SQLite Database Adapter.

Implements the analytics storage ports using SQLite: the append-only event
log, the identity/scope registry with embedded rollup counters, and the
dedupe fingerprint store.

Timestamps are stored as fixed-width UTC ISO strings so that string
comparison matches chronological order.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from src.components.analytics.errors import StorageError
from src.components.analytics.models import MEASURE_FIELDS, AggregateRow, EventFilter
from src.core.entities import (
    COUNTER_FIELDS,
    TIMESTAMP_FIELDS,
    Event,
    EventKind,
    EventPayload,
    Identity,
    RollupCounters,
    Scope,
)
from src.core.ports.time import TimePort

# -----------------------------------------------------------------------------
# Helper functions
# -----------------------------------------------------------------------------


def dict_factory(cursor: sqlite3.Cursor, row: tuple[Any, ...]) -> dict[str, Any]:
    """Convert SQLite row to dictionary."""
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def format_dt(dt: datetime) -> str:
    """Fixed-width UTC ISO string (sortable as text)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def parse_dt(s: str | None) -> datetime | None:
    """Parse ISO datetime string."""
    return datetime.fromisoformat(s) if s else None


# Grouping dimension -> SQL expression over the events table
DIMENSION_SQL: dict[str, str] = {
    "kind": "kind",
    "identity_id": "identity_id",
    "scope_id": "scope_id",
    "session_id": "session_id",
    "day": "substr(occurred_at, 1, 10)",
    "hour": "substr(occurred_at, 1, 13)",
    "hour_of_day": "CAST(substr(occurred_at, 12, 2) AS INTEGER)",
    # strftime %w is 0 = Sunday; shift to 0 = Monday
    "day_of_week": "((CAST(strftime('%w', substr(occurred_at, 1, 19)) AS INTEGER) + 6) % 7)",
    "country": "json_extract(payload, '$.location.country')",
    "city": "json_extract(payload, '$.location.city')",
    "device_type": "json_extract(payload, '$.device.type')",
    "browser": "json_extract(payload, '$.device.browser')",
    "os": "json_extract(payload, '$.device.os')",
    "link_type": "json_extract(payload, '$.link_type')",
}


def _measure_sql(measure: str) -> str:
    if measure not in MEASURE_FIELDS:
        raise ValueError(f"Unknown measure: {measure}")
    return f"json_extract(payload, '$.{measure}')"


def _dimension_sql(dimension: str) -> str:
    try:
        return DIMENSION_SQL[dimension]
    except KeyError:
        raise ValueError(f"Unknown dimension: {dimension}") from None


def _parse_dimension(dimension: str, value: Any) -> Any:
    if value is None:
        return None
    if dimension == "day":
        return datetime.fromisoformat(f"{value}T00:00:00+00:00")
    if dimension == "hour":
        return datetime.fromisoformat(f"{value}:00:00+00:00")
    return value


def _check_column(name: str, allowed: Sequence[str]) -> str:
    if name not in allowed:
        raise ValueError(f"Unknown rollup column: {name}")
    return name


# -----------------------------------------------------------------------------
# Base SQLite Repository
# -----------------------------------------------------------------------------


class SQLiteRepoBase:
    """Base class for SQLite repositories."""

    def __init__(self, db_path: str, connection: sqlite3.Connection | None = None):
        self.db_path = db_path
        self._external_conn = connection

    def _get_conn(self) -> sqlite3.Connection:
        """Get database connection (uses external if provided)."""
        if self._external_conn is not None:
            return self._external_conn

        conn = sqlite3.connect(self.db_path, timeout=10)
        conn.row_factory = dict_factory
        conn.execute("PRAGMA foreign_keys = ON;")
        return conn

    def _should_close(self) -> bool:
        """Whether to close connection after use."""
        return self._external_conn is None

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Connection scope: commit on success, StorageError on sqlite failure."""
        conn = self._get_conn()
        try:
            yield conn
            if self._should_close():
                conn.commit()
        except sqlite3.Error as e:
            if self._should_close():
                conn.rollback()
            raise StorageError(f"SQLite error: {e}") from e
        finally:
            if self._should_close():
                conn.close()


# -----------------------------------------------------------------------------
# Event Log
# -----------------------------------------------------------------------------


class SQLiteEventLogRepo(SQLiteRepoBase):
    """SQLite implementation of EventLogPort."""

    def append(self, event: Event) -> UUID:
        with self._session() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO events (
                    id, identity_id, scope_id, kind, session_id, occurred_at, payload
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(event.id),
                    event.identity_id,
                    event.scope_id,
                    event.kind.value,
                    event.session_id,
                    format_dt(event.occurred_at),
                    event.payload.model_dump_json(exclude_none=True),
                ),
            )
        return event.id

    def _where(self, event_filter: EventFilter) -> tuple[str, list[Any]]:
        f = event_filter
        clauses: list[str] = []
        params: list[Any] = []

        if f.identity_id is not None:
            clauses.append("identity_id = ?")
            params.append(f.identity_id)
        if f.scope_id is not None:
            clauses.append("scope_id = ?")
            params.append(f.scope_id)
        if f.scope_ids is not None:
            if not f.scope_ids:
                clauses.append("0")
            else:
                clauses.append(f"scope_id IN ({', '.join('?' for _ in f.scope_ids)})")
                params.extend(f.scope_ids)
        if f.scoped_only:
            clauses.append("scope_id IS NOT NULL AND scope_id != ''")
        if f.kinds is not None:
            if not f.kinds:
                clauses.append("0")
            else:
                clauses.append(f"kind IN ({', '.join('?' for _ in f.kinds)})")
                params.extend(k.value for k in f.kinds)
        if f.start is not None:
            clauses.append("occurred_at >= ?")
            params.append(format_dt(f.start))
        if f.end is not None:
            clauses.append("occurred_at <= ?")
            params.append(format_dt(f.end))
        for dimension in f.require:
            expr = _dimension_sql(dimension)
            clauses.append(f"{expr} IS NOT NULL AND {expr} != ''")

        sql = " WHERE " + " AND ".join(clauses) if clauses else ""
        return sql, params

    def aggregate(
        self,
        event_filter: EventFilter,
        group_by: Sequence[str],
        measure: str | None = None,
    ) -> list[AggregateRow]:
        where, params = self._where(event_filter)
        select = [f"{_dimension_sql(d)} AS d{i}" for i, d in enumerate(group_by)]
        if measure:
            expr = _measure_sql(measure)
            select += [f"TOTAL({expr}) AS m_sum", f"COUNT({expr}) AS m_n"]
        group = ", ".join(f"d{i}" for i in range(len(group_by)))

        query = f"""
            SELECT {", ".join([*select, "COUNT(*) AS n"])},
                   MIN(occurred_at) AS first_at, MAX(occurred_at) AS last_at
            FROM events{where}
        """
        if group:
            query += f" GROUP BY {group}"

        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            AggregateRow(
                key={d: _parse_dimension(d, row[f"d{i}"]) for i, d in enumerate(group_by)},
                count=row["n"],
                first_at=parse_dt(row["first_at"]),
                last_at=parse_dt(row["last_at"]),
                measure_sum=float(row.get("m_sum") or 0.0),
                measure_count=int(row.get("m_n") or 0),
            )
            for row in rows
            if row["n"]
        ]

    def list_events(self, event_filter: EventFilter, limit: int | None = None) -> list[Event]:
        where, params = self._where(event_filter)
        query = f"SELECT * FROM events{where} ORDER BY occurred_at DESC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        with self._session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._map_row(r) for r in rows]

    def count(self, event_filter: EventFilter) -> int:
        where, params = self._where(event_filter)
        with self._session() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS n FROM events{where}", params).fetchone()
        return int(row["n"])

    def purge_before(self, cutoff: datetime) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM events WHERE occurred_at < ?", (format_dt(cutoff),)
            )
            return cursor.rowcount

    def _map_row(self, row: dict[str, Any]) -> Event:
        return Event(
            id=UUID(row["id"]),
            identity_id=row["identity_id"],
            scope_id=row["scope_id"],
            kind=EventKind(row["kind"]),
            session_id=row["session_id"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            payload=EventPayload.model_validate_json(row["payload"] or "{}"),
        )


# -----------------------------------------------------------------------------
# Registry + Rollups
# -----------------------------------------------------------------------------


def _map_counters(row: dict[str, Any]) -> RollupCounters:
    return RollupCounters(
        **{name: row[name] for name in COUNTER_FIELDS},
        **{name: parse_dt(row[name]) for name in TIMESTAMP_FIELDS},
    )


class SQLiteRegistryRepo(SQLiteRepoBase):
    """SQLite implementation of RegistryPort (plus seeding helpers)."""

    def get_identity(self, identity_id: str) -> Identity | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM identities WHERE id = ?", (identity_id,)).fetchone()
        return self._map_identity(row) if row else None

    def resolve_identity(self, ref: str) -> Identity | None:
        with self._session() as conn:
            row = conn.execute(
                """
                SELECT * FROM identities WHERE id = ? OR username = ?
                ORDER BY CASE WHEN id = ? THEN 0 ELSE 1 END
                LIMIT 1
                """,
                (ref, ref, ref),
            ).fetchone()
        return self._map_identity(row) if row else None

    def get_scope(self, identity_id: str, scope_id: str) -> Scope | None:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM scopes WHERE identity_id = ? AND scope_id = ?",
                (identity_id, scope_id),
            ).fetchone()
        return self._map_scope(row) if row else None

    def list_scopes(self, identity_id: str) -> list[Scope]:
        with self._session() as conn:
            rows = conn.execute(
                "SELECT * FROM scopes WHERE identity_id = ? ORDER BY scope_id",
                (identity_id,),
            ).fetchall()
        return [self._map_scope(r) for r in rows]

    def list_identities(self) -> list[Identity]:
        with self._session() as conn:
            rows = conn.execute("SELECT * FROM identities ORDER BY id").fetchall()
        return [self._map_identity(r) for r in rows]

    def save_identity(self, identity: Identity) -> Identity:
        """Insert or update identity fields; existing counters are left alone."""
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO identities (id, username, created_at) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET username = excluded.username
                """,
                (identity.id, identity.username, format_dt(identity.created_at)),
            )
        return identity

    def save_scope(self, scope: Scope) -> Scope:
        """Insert or update scope fields; existing counters are left alone."""
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO scopes (identity_id, scope_id, name, campaign_type, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(identity_id, scope_id) DO UPDATE SET
                    name = excluded.name,
                    campaign_type = excluded.campaign_type
                """,
                (
                    scope.identity_id,
                    scope.scope_id,
                    scope.name,
                    scope.campaign_type,
                    format_dt(scope.created_at),
                ),
            )
        return scope

    def delete_scope(self, identity_id: str, scope_id: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM scopes WHERE identity_id = ? AND scope_id = ?",
                (identity_id, scope_id),
            )
            return cursor.rowcount > 0

    def _map_identity(self, row: dict[str, Any]) -> Identity:
        return Identity(
            id=row["id"],
            username=row["username"],
            created_at=datetime.fromisoformat(row["created_at"]),
            rollups=_map_counters(row),
        )

    def _map_scope(self, row: dict[str, Any]) -> Scope:
        return Scope(
            identity_id=row["identity_id"],
            scope_id=row["scope_id"],
            name=row["name"],
            campaign_type=row["campaign_type"],
            created_at=datetime.fromisoformat(row["created_at"]),
            rollups=_map_counters(row),
        )


class SQLiteRollupRepo(SQLiteRepoBase):
    """SQLite implementation of RollupRepoPort: single-statement atomic increments."""

    def _increment(
        self,
        table: str,
        where: str,
        params: tuple[Any, ...],
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        counter = _check_column(counter, COUNTER_FIELDS)
        assignments = [f"{counter} = {counter} + 1"]
        values: list[Any] = []
        if timestamp_field:
            ts = _check_column(timestamp_field, TIMESTAMP_FIELDS)
            assignments.append(
                f"{ts} = CASE WHEN {ts} IS NULL OR {ts} < ? THEN ? ELSE {ts} END"
            )
            stamp = format_dt(occurred_at)
            values.extend([stamp, stamp])

        with self._session() as conn:
            cursor = conn.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE {where}",
                (*values, *params),
            )
            return cursor.rowcount > 0

    def increment_global(
        self,
        identity_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        return self._increment(
            "identities", "id = ?", (identity_id,), counter, timestamp_field, occurred_at
        )

    def increment_scope(
        self,
        identity_id: str,
        scope_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        return self._increment(
            "scopes",
            "identity_id = ? AND scope_id = ?",
            (identity_id, scope_id),
            counter,
            timestamp_field,
            occurred_at,
        )

    def _replace(
        self, table: str, where: str, params: tuple[Any, ...], counters: RollupCounters
    ) -> None:
        columns = [*COUNTER_FIELDS, *TIMESTAMP_FIELDS]
        values: list[Any] = [getattr(counters, name) for name in COUNTER_FIELDS]
        values.extend(
            format_dt(v) if v is not None else None
            for v in (getattr(counters, name) for name in TIMESTAMP_FIELDS)
        )
        with self._session() as conn:
            conn.execute(
                f"UPDATE {table} SET {', '.join(f'{c} = ?' for c in columns)} WHERE {where}",
                (*values, *params),
            )

    def replace_global(self, identity_id: str, counters: RollupCounters) -> None:
        self._replace("identities", "id = ?", (identity_id,), counters)

    def replace_scope(self, identity_id: str, scope_id: str, counters: RollupCounters) -> None:
        self._replace(
            "scopes", "identity_id = ? AND scope_id = ?", (identity_id, scope_id), counters
        )


# -----------------------------------------------------------------------------
# Dedupe Store
# -----------------------------------------------------------------------------


class SQLiteDedupeStore(SQLiteRepoBase):
    """SQLite implementation of DedupeStorePort (upsert guarded by expiry)."""

    def __init__(
        self,
        db_path: str,
        connection: sqlite3.Connection | None = None,
        time_port: TimePort | None = None,
    ):
        super().__init__(db_path, connection)
        self._time = time_port

    def _now(self) -> datetime:
        if self._time is not None:
            return self._time.now_utc()
        return datetime.now(UTC)

    def add(self, key: str, ttl_seconds: int) -> bool:
        now = self._now()
        with self._session() as conn:
            # prune expired fingerprints (idx_dedupe_expires)
            conn.execute(
                "DELETE FROM dedupe_fingerprints WHERE expires_at <= ?", (format_dt(now),)
            )
            cursor = conn.execute(
                """
                INSERT INTO dedupe_fingerprints (key, expires_at) VALUES (?, ?)
                ON CONFLICT(key) DO UPDATE SET expires_at = excluded.expires_at
                WHERE dedupe_fingerprints.expires_at <= ?
                """,
                (key, format_dt(now + timedelta(seconds=ttl_seconds)), format_dt(now)),
            )
            return cursor.rowcount > 0

    def remove(self, key: str) -> None:
        with self._session() as conn:
            conn.execute("DELETE FROM dedupe_fingerprints WHERE key = ?", (key,))

    def exists(self, key: str) -> bool:
        with self._session() as conn:
            row = conn.execute(
                "SELECT 1 FROM dedupe_fingerprints WHERE key = ? AND expires_at > ?",
                (key, format_dt(self._now())),
            ).fetchone()
        return row is not None

    def cleanup_expired(self) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM dedupe_fingerprints WHERE expires_at <= ?",
                (format_dt(self._now()),),
            )
            return cursor.rowcount
