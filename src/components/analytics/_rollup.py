"""
RollupUpdater - Denormalized counter maintenance.

Applies best-effort increments to two counter scopes per accepted event:
the identity-wide (global) counters and, when the event carries a scope,
that scope's counters.

Key behaviors:
- kind -> counter is an explicit lookup table; unmapped kinds are logged only
- Global and scoped updates are independent; neither failure is raised
- Scoped updates address the scope by (identity, scope id), never rewrite siblings
- Last-occurrence timestamps only move forward
- rebuild() replays the event log to repair drift
"""

from __future__ import annotations

import copy
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from src.core.entities import (
    COUNTER_FIELDS,
    Event,
    EventKind,
    Identity,
    RollupCounters,
    Scope,
)

from .errors import RollupUpdateError
from .models import EventFilter, RollupResult
from .ports import EventLogPort, RegistryPort, RollupRepoPort

logger = logging.getLogger(__name__)


# --- Kind -> counter table ---


@dataclass(frozen=True)
class RollupTarget:
    """Counter (and optional last-occurrence field) a kind increments."""

    counter: str
    timestamp_field: str | None = None


KIND_ROLLUP_TABLE: dict[EventKind, RollupTarget | None] = {
    EventKind.SCAN: RollupTarget("total_scans", "last_scan_at"),
    EventKind.VIDEO_VIEW: RollupTarget("video_views", "last_video_view_at"),
    EventKind.VIDEO_COMPLETE: RollupTarget("video_completions"),
    EventKind.LINK_CLICK: RollupTarget("link_clicks"),
    EventKind.SOCIAL_MEDIA_CLICK: RollupTarget("social_media_clicks"),
    EventKind.DOCUMENT_VIEW: RollupTarget("document_views"),
    EventKind.DOCUMENT_DOWNLOAD: RollupTarget("document_downloads"),
    EventKind.AR_EXPERIENCE_START: RollupTarget(
        "ar_experience_starts", "last_ar_experience_start_at"
    ),
    EventKind.PAGE_VIEW: None,
    EventKind.PAGE_VIEW_DURATION: None,
    EventKind.VIDEO_PROGRESS_MILESTONE: None,
    EventKind.AR_EXPERIENCE_ERROR: None,
}


def rollup_target(kind: EventKind) -> RollupTarget | None:
    return KIND_ROLLUP_TABLE.get(kind)


# --- In-Memory Registry ---


class InMemoryRegistry:
    """
    In-memory identity/scope registry with rollup counters.

    Implements both RegistryPort and RollupRepoPort for tests/dev.
    """

    def __init__(self) -> None:
        self._identities: dict[str, Identity] = {}
        self._scopes: dict[tuple[str, str], Scope] = {}
        self._lock = threading.Lock()

    # Seeding

    def save_identity(self, identity: Identity) -> Identity:
        with self._lock:
            self._identities[identity.id] = identity
        return identity

    def save_scope(self, scope: Scope) -> Scope:
        with self._lock:
            self._scopes[(scope.identity_id, scope.scope_id)] = scope
        return scope

    def delete_scope(self, identity_id: str, scope_id: str) -> bool:
        with self._lock:
            return self._scopes.pop((identity_id, scope_id), None) is not None

    # RegistryPort

    def get_identity(self, identity_id: str) -> Identity | None:
        with self._lock:
            identity = self._identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def resolve_identity(self, ref: str) -> Identity | None:
        identity = self.get_identity(ref)
        if identity is not None:
            return identity
        with self._lock:
            for candidate in self._identities.values():
                if candidate.username and candidate.username == ref:
                    return copy.deepcopy(candidate)
        return None

    def get_scope(self, identity_id: str, scope_id: str) -> Scope | None:
        with self._lock:
            scope = self._scopes.get((identity_id, scope_id))
            return copy.deepcopy(scope) if scope else None

    def list_scopes(self, identity_id: str) -> list[Scope]:
        with self._lock:
            return [
                copy.deepcopy(s)
                for (owner, _), s in sorted(self._scopes.items())
                if owner == identity_id
            ]

    # RollupRepoPort

    @staticmethod
    def _bump(
        counters: RollupCounters,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> None:
        setattr(counters, counter, getattr(counters, counter) + 1)
        if timestamp_field:
            current = getattr(counters, timestamp_field)
            if current is None or occurred_at > current:
                setattr(counters, timestamp_field, occurred_at)

    def increment_global(
        self,
        identity_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is None:
                return False
            self._bump(identity.rollups, counter, timestamp_field, occurred_at)
            return True

    def increment_scope(
        self,
        identity_id: str,
        scope_id: str,
        counter: str,
        timestamp_field: str | None,
        occurred_at: datetime,
    ) -> bool:
        with self._lock:
            scope = self._scopes.get((identity_id, scope_id))
            if scope is None:
                return False
            self._bump(scope.rollups, counter, timestamp_field, occurred_at)
            return True

    def replace_global(self, identity_id: str, counters: RollupCounters) -> None:
        with self._lock:
            identity = self._identities.get(identity_id)
            if identity is not None:
                identity.rollups = counters.model_copy()

    def replace_scope(self, identity_id: str, scope_id: str, counters: RollupCounters) -> None:
        with self._lock:
            scope = self._scopes.get((identity_id, scope_id))
            if scope is not None:
                scope.rollups = counters.model_copy()


# --- Rollup Updater ---


class RollupUpdater:
    """Applies and repairs rollup counters."""

    def __init__(self, repo: RollupRepoPort) -> None:
        self._repo = repo

    @staticmethod
    def _increment(increment: Callable[[], bool]) -> bool:
        try:
            return increment()
        except Exception as e:
            raise RollupUpdateError(str(e)) from e

    def apply(self, event: Event) -> RollupResult:
        """
        Increment the global and (if scoped) scope counters for an event.

        Never raises; failures are logged and reported on the result.
        """
        target = rollup_target(event.kind)
        if target is None:
            logger.debug("No rollup counter for %s events", event.kind.value)
            return RollupResult(counter=None)

        errors: list[str] = []

        global_applied = False
        try:
            global_applied = self._increment(
                lambda: self._repo.increment_global(
                    event.identity_id,
                    target.counter,
                    target.timestamp_field,
                    event.occurred_at,
                )
            )
            if not global_applied:
                logger.warning("Global rollup skipped: identity %s not found", event.identity_id)
                errors.append("identity_not_found")
        except RollupUpdateError:
            logger.exception("Global rollup failed for %s", event.identity_id)
            errors.append("global_update_failed")

        scope_applied = False
        if event.scope_id:
            scope_id = event.scope_id
            try:
                scope_applied = self._increment(
                    lambda: self._repo.increment_scope(
                        event.identity_id,
                        scope_id,
                        target.counter,
                        target.timestamp_field,
                        event.occurred_at,
                    )
                )
                if not scope_applied:
                    logger.warning(
                        "Scoped rollup skipped: scope %s/%s not found",
                        event.identity_id,
                        event.scope_id,
                    )
                    errors.append("scope_not_found")
            except RollupUpdateError:
                logger.exception(
                    "Scoped rollup failed for %s/%s", event.identity_id, event.scope_id
                )
                errors.append("scope_update_failed")

        logger.debug(
            "Rollup %s for %s (global=%s scope=%s)",
            target.counter,
            event.identity_id,
            global_applied,
            scope_applied,
        )
        return RollupResult(
            counter=target.counter,
            global_applied=global_applied,
            scope_applied=scope_applied,
            errors=tuple(errors),
        )

    def rebuild(
        self,
        identity_id: str,
        event_log: EventLogPort,
        registry: RegistryPort,
    ) -> RollupCounters:
        """
        Recompute counters for an identity and its scopes from the event log.

        Returns the recomputed global counters.
        """
        rows = event_log.aggregate(EventFilter(identity_id=identity_id), ["scope_id", "kind"])

        global_counters = RollupCounters()
        scope_counters: dict[str, RollupCounters] = {
            scope.scope_id: RollupCounters() for scope in registry.list_scopes(identity_id)
        }

        for row in rows:
            kind = EventKind(row.key["kind"])
            target = rollup_target(kind)
            if target is None:
                continue
            buckets = [global_counters]
            scope_id = row.key.get("scope_id")
            if scope_id and scope_id in scope_counters:
                buckets.append(scope_counters[scope_id])
            for counters in buckets:
                setattr(counters, target.counter, getattr(counters, target.counter) + row.count)
                if target.timestamp_field and row.last_at is not None:
                    current = getattr(counters, target.timestamp_field)
                    if current is None or row.last_at > current:
                        setattr(counters, target.timestamp_field, row.last_at)

        self._repo.replace_global(identity_id, global_counters)
        for scope_id, counters in scope_counters.items():
            self._repo.replace_scope(identity_id, scope_id, counters)

        logger.info(
            "Rebuilt rollups for %s: %s",
            identity_id,
            {name: getattr(global_counters, name) for name in COUNTER_FIELDS},
        )
        return global_counters
