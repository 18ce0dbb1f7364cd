"""
Analytics component port definitions.

The event log is the system of record; rollups and the registry are the
external identity/scope records the core reads and increments.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime
from typing import Any, Protocol
from uuid import UUID

from src.core.entities import Event, Identity, RollupCounters, Scope
from src.core.ports.time import TimePort

from .models import AggregateRow, EventFilter

__all__ = [
    "EventLogPort",
    "RegistryPort",
    "ResultCachePort",
    "RollupRepoPort",
    "TimePort",
]


class EventLogPort(Protocol):
    """Append-only event store with aggregation."""

    def append(self, event: Event) -> UUID:
        """Durably store an event. Appending an existing id is a no-op."""
        ...

    def aggregate(
        self,
        event_filter: EventFilter,
        group_by: Sequence[str],
        measure: str | None = None,
    ) -> list[AggregateRow]:
        """Count matching events grouped by the given dimensions, summing a payload measure."""
        ...

    def list_events(self, event_filter: EventFilter, limit: int | None = None) -> list[Event]:
        """List matching events, newest first."""
        ...

    def count(self, event_filter: EventFilter) -> int:
        """Count matching events."""
        ...

    def purge_before(self, cutoff: datetime) -> int:
        """Delete events older than cutoff. Returns count removed."""
        ...


class RollupRepoPort(Protocol):
    """Atomic counter increments on identity and scope records."""

    def increment_global(
        self,
        identity_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        """Increment one identity-wide counter. Returns False if no record matched."""
        ...

    def increment_scope(
        self,
        identity_id: str,
        scope_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        """Increment one counter on the matching scope record only."""
        ...

    def replace_global(self, identity_id: str, counters: RollupCounters) -> None:
        """Overwrite identity-wide counters (rebuild path)."""
        ...

    def replace_scope(self, identity_id: str, scope_id: str, counters: RollupCounters) -> None:
        """Overwrite one scope's counters (rebuild path)."""
        ...


class RegistryPort(Protocol):
    """Read access to identities and their scopes."""

    def get_identity(self, identity_id: str) -> Identity | None: ...

    def resolve_identity(self, ref: str) -> Identity | None:
        """Find an identity by id, falling back to username."""
        ...

    def get_scope(self, identity_id: str, scope_id: str) -> Scope | None: ...

    def list_scopes(self, identity_id: str) -> list[Scope]: ...


class ResultCachePort(Protocol):
    """Short-lived query result cache."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None: ...

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl_seconds: int | None = None,
    ) -> Any: ...

    def invalidate(self, identity_id: str) -> int:
        """Drop entries for identity plus global entries. Returns count removed."""
        ...
