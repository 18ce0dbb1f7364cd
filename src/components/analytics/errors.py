"""
Analytics error taxonomy.

- EventValidationError: malformed submission, rejected before any write
- NotFoundError: unknown identity or scope
- StorageError: infrastructure failure; fatal only for the event log append

Duplicate suppression is not an error; it is reported on the ingest outcome.
"""

from __future__ import annotations

from .models import AnalyticsValidationError


class AnalyticsError(Exception):
    """Base class for analytics errors."""


class EventValidationError(AnalyticsError):
    """One or more fields failed validation."""

    def __init__(self, errors: list[AnalyticsValidationError]) -> None:
        self.errors = list(errors)
        fields = ", ".join(sorted({e.field_name or "-" for e in self.errors}))
        super().__init__(f"Validation failed for: {fields}")


class NotFoundError(AnalyticsError):
    """Referenced registry record does not exist."""


class IdentityNotFoundError(NotFoundError):
    def __init__(self, identity_ref: str) -> None:
        self.identity_ref = identity_ref
        super().__init__(f"Identity not found: {identity_ref}")


class ScopeNotFoundError(NotFoundError):
    def __init__(self, identity_id: str, scope_id: str) -> None:
        self.identity_id = identity_id
        self.scope_id = scope_id
        super().__init__(f"Scope not found: {identity_id}/{scope_id}")


class StorageError(AnalyticsError):
    """Transient storage failure."""


class EventLogWriteError(StorageError):
    """Event log append failed; the caller should retry."""


class RollupUpdateError(StorageError):
    """A rollup increment could not be applied."""


class QueryStorageError(StorageError):
    """Aggregation query failed; retryable."""
