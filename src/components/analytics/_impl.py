"""
AnalyticsIngestionService - Engagement event ingestion pipeline.

validate -> resolve identity/scope -> dedupe -> append -> rollups -> invalidate

Key behaviors:
- Validation failures are returned as field errors; nothing is written
- Unknown identity or scope raises NotFoundError
- Duplicates are reported on the outcome, not raised
- Event log append is the only fatal storage step
- Rollup and cache invalidation are best effort and logged
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from ._cache import NullResultCache
from ._dedupe import DedupeService
from ._rollup import RollupUpdater
from ._schema import DEFAULT_CONFIG, IngestConfig, validate_event
from .errors import (
    EventLogWriteError,
    EventValidationError,
    IdentityNotFoundError,
    ScopeNotFoundError,
    StorageError,
)
from .models import IngestOutput
from .ports import EventLogPort, RegistryPort, ResultCachePort, RollupRepoPort, TimePort

logger = logging.getLogger(__name__)


class DefaultTimePort:
    """Default time provider."""

    def now_utc(self) -> datetime:
        """Get current UTC time."""
        return datetime.now(UTC)


class AnalyticsIngestionService:
    """
    Analytics ingestion service.

    Orchestrates validation, dedupe, the event log append and rollups.
    """

    def __init__(
        self,
        event_log: EventLogPort,
        registry: RegistryPort,
        rollup_repo: RollupRepoPort,
        dedupe: DedupeService | None = None,
        cache: ResultCachePort | None = None,
        time_port: TimePort | None = None,
        config: IngestConfig | None = None,
    ) -> None:
        """Initialize service."""
        self._event_log = event_log
        self._registry = registry
        self._rollups = RollupUpdater(rollup_repo)
        self._dedupe = dedupe or DedupeService()
        self._cache = cache or NullResultCache()
        self._time = time_port or DefaultTimePort()
        self._config = config or DEFAULT_CONFIG

    @property
    def rollups(self) -> RollupUpdater:
        return self._rollups

    def ingest(self, data: dict[str, Any]) -> IngestOutput:
        """
        Ingest an engagement event.

        Returns:
            IngestOutput. Validation failures come back with success=False and
            errors; duplicates with accepted=False, duplicate=True.

        Raises:
            IdentityNotFoundError / ScopeNotFoundError: unknown registry reference
            EventLogWriteError: the event could not be stored
        """
        now = self._time.now_utc()

        validated, errors = validate_event(data, now, self._config)
        if validated is None:
            logger.info("Rejected event: %s", EventValidationError(errors))
            return IngestOutput(event=None, accepted=False, errors=errors, success=False)

        identity = self._registry.resolve_identity(validated.identity_ref)
        if identity is None:
            raise IdentityNotFoundError(validated.identity_ref)

        event = validated.event
        if event.identity_id != identity.id:
            event = event.model_copy(update={"identity_id": identity.id})

        if event.scope_id and self._registry.get_scope(identity.id, event.scope_id) is None:
            raise ScopeNotFoundError(identity.id, event.scope_id)

        dedupe = self._dedupe.should_accept(event)
        if not dedupe.accepted:
            return IngestOutput(event=event, accepted=False, duplicate=True)

        try:
            self._event_log.append(event)
        except StorageError as e:
            self._dedupe.release(dedupe)
            raise EventLogWriteError(f"Could not store event {event.id}: {e}") from e

        logger.info(
            "Accepted %s event %s for %s%s",
            event.kind.value,
            event.id,
            event.identity_id,
            f"/{event.scope_id}" if event.scope_id else "",
        )

        rollup = self._rollups.apply(event)

        try:
            self._cache.invalidate(event.identity_id)
        except Exception:
            logger.exception("Cache invalidation failed for %s", event.identity_id)

        return IngestOutput(event=event, accepted=True, rollup=rollup)

    def ingest_batch(self, items: list[dict[str, Any]]) -> list[IngestOutput | Exception]:
        """
        Ingest several events independently.

        Each position holds the outcome or the error that event raised.
        """
        results: list[IngestOutput | Exception] = []
        for item in items:
            try:
                results.append(self.ingest(item))
            except (IdentityNotFoundError, ScopeNotFoundError, EventLogWriteError) as e:
                results.append(e)
        return results


# --- Factory ---


def create_analytics_ingestion_service(
    event_log: EventLogPort,
    registry: RegistryPort,
    rollup_repo: RollupRepoPort,
    dedupe: DedupeService | None = None,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
    config: IngestConfig | None = None,
) -> AnalyticsIngestionService:
    """Create an AnalyticsIngestionService."""
    return AnalyticsIngestionService(
        event_log=event_log,
        registry=registry,
        rollup_repo=rollup_repo,
        dedupe=dedupe,
        cache=cache,
        time_port=time_port,
        config=config,
    )
