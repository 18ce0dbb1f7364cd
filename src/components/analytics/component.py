"""
Analytics component - Engagement event ingestion and aggregation queries.

Ingests, deduplicates and rolls up engagement events, and answers cached
aggregation queries over the event log.

Invariants:
- Events are never mutated by the ingestion path
- Rollups are best effort; the event log is authoritative
- Duplicate client fires within the window produce one stored event
- Query results carry the period window they were computed for
- Every accepted event invalidates its identity's cached results
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from src.core.entities import EventKind

from ._aggregate import AnalyticsQueryEngine, resolve_period, window_filter
from ._cache import NullResultCache, build_cache_key
from ._dedupe import DedupeService
from ._impl import AnalyticsIngestionService, DefaultTimePort
from ._schema import IngestConfig
from .errors import EventValidationError, QueryStorageError, StorageError
from .models import (
    AnalyticsValidationError,
    BreakdownOutput,
    BreakdownQueryInput,
    DashboardOutput,
    DashboardQueryInput,
    DimensionBreakdownOutput,
    DimensionQueryInput,
    EventFilter,
    FunnelOutput,
    FunnelQueryInput,
    IngestEventInput,
    IngestOutput,
    PatternOutput,
    PatternQueryInput,
    PeriodWindow,
    QueryInput,
    RankingOutput,
    RecentEventsOutput,
    RecentEventsQueryInput,
    ScopeOverviewOutput,
    ScopeOverviewQueryInput,
    SessionsQueryInput,
    SessionStatsOutput,
    TopQueryInput,
    VideoCompletionOutput,
    VideoCompletionQueryInput,
)
from .ports import EventLogPort, RegistryPort, ResultCachePort, RollupRepoPort, TimePort

T = TypeVar("T")

GEOGRAPHY_DIMENSIONS = frozenset({"country", "city"})
DEVICE_DIMENSIONS = frozenset({"device_type", "browser", "os"})


def parse_kinds(kinds: tuple[str, ...] | None) -> tuple[EventKind, ...] | None:
    """Parse kind filter strings; raises EventValidationError on unknown kinds."""
    if not kinds:
        return None
    parsed: list[EventKind] = []
    errors: list[AnalyticsValidationError] = []
    for value in kinds:
        try:
            parsed.append(EventKind(value))
        except ValueError:
            errors.append(
                AnalyticsValidationError(
                    code="invalid_kind",
                    message=f"Event kind '{value}' is not allowed",
                    field_name="kinds",
                )
            )
    if errors:
        raise EventValidationError(errors)
    return tuple(parsed)


def _run_query(
    inp: QueryInput,
    query_name: str,
    compute: Callable[[EventFilter, PeriodWindow], T],
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None,
    time_port: TimePort | None,
    filters: dict[str, Any] | None = None,
    ttl_seconds: int | None = None,
) -> T:
    """Resolve period and filters, then answer from cache or the engine."""
    now = (time_port or DefaultTimePort()).now_utc()
    config = engine.config
    period = resolve_period(inp.period, now, config.default_period, config.max_period_days)
    kinds = parse_kinds(inp.kinds)

    try:
        identity_id = engine.resolve_identity(inp.identity_id) if inp.identity_id else None
    except StorageError as e:
        raise QueryStorageError(str(e)) from e

    event_filter = window_filter(period, identity_id, inp.scope_id, kinds)
    key = build_cache_key(
        identity_id,
        query_name,
        inp.scope_id,
        period.days,
        {**(filters or {}), "kinds": [k.value for k in kinds] if kinds else None},
    )

    def _compute() -> T:
        try:
            return compute(event_filter, period)
        except QueryStorageError:
            raise
        except StorageError as e:
            raise QueryStorageError(str(e)) from e

    return (cache or NullResultCache()).get_or_compute(key, _compute, ttl_seconds)


# --- Component Entry Points ---


def run_ingest(
    inp: IngestEventInput,
    *,
    event_log: EventLogPort,
    registry: RegistryPort,
    rollup_repo: RollupRepoPort,
    dedupe: DedupeService | None = None,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
    config: IngestConfig | None = None,
) -> IngestOutput:
    """
    Ingest an engagement event.

    Args:
        inp: Input containing the raw event submission.
        event_log: Event log port.
        registry: Identity/scope registry port.
        rollup_repo: Rollup counter port.
        dedupe: Optional dedupe service (shared across calls).
        cache: Optional result cache to invalidate.
        time_port: Optional time port.
        config: Optional ingest limits.

    Returns:
        IngestOutput with the event, duplicate flag or validation errors.
    """
    service = AnalyticsIngestionService(
        event_log=event_log,
        registry=registry,
        rollup_repo=rollup_repo,
        dedupe=dedupe,
        cache=cache,
        time_port=time_port,
        config=config,
    )
    return service.ingest(inp.data)


def run_query_breakdown(
    inp: BreakdownQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> BreakdownOutput:
    """Query counts per day or hour and kind."""
    return _run_query(
        inp,
        "breakdown",
        lambda f, p: engine.time_breakdown(f, p, inp.granularity),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"granularity": inp.granularity},
    )


def run_query_patterns(
    inp: PatternQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> PatternOutput:
    """Query hour-of-day or day-of-week activity."""
    return _run_query(
        inp,
        "patterns",
        lambda f, p: engine.pattern(f, p, inp.pattern),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"pattern": inp.pattern},
    )


def run_query_funnel(
    inp: FunnelQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> FunnelOutput:
    """Query scan -> video -> link -> AR conversions."""
    return _run_query(
        inp, "funnel", engine.funnel, engine=engine, cache=cache, time_port=time_port
    )


def run_query_top(
    inp: TopQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> RankingOutput:
    """Query top identities or scopes by weighted event total."""
    if inp.group_by == "identity":
        rank = engine.top_identities
    elif inp.group_by == "scope":
        rank = engine.top_scopes
    else:
        raise EventValidationError(
            [
                AnalyticsValidationError(
                    code="invalid_group_by",
                    message="group_by must be 'identity' or 'scope'",
                    field_name="group_by",
                )
            ]
        )

    return _run_query(
        inp,
        f"top-{inp.group_by}",
        lambda f, p: rank(f, p, inp.limit, inp.weights),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"limit": inp.limit, "weights": sorted((inp.weights or {}).items())},
    )


def run_query_dimension(
    inp: DimensionQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> DimensionBreakdownOutput:
    """Query top values of one breakdown dimension."""
    return _run_query(
        inp,
        f"breakdown-{inp.dimension}",
        lambda f, p: engine.breakdown(f, p, inp.dimension, inp.limit),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"limit": inp.limit},
    )


def _require_dimension(dimension: str, allowed: frozenset[str]) -> None:
    if dimension not in allowed:
        raise EventValidationError(
            [
                AnalyticsValidationError(
                    code="invalid_dimension",
                    message=f"Dimension must be one of: {', '.join(sorted(allowed))}",
                    field_name="dimension",
                )
            ]
        )


def run_query_geography(
    inp: DimensionQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> DimensionBreakdownOutput:
    """Query top countries or cities (events without location are skipped)."""
    _require_dimension(inp.dimension, GEOGRAPHY_DIMENSIONS)
    return run_query_dimension(inp, engine=engine, cache=cache, time_port=time_port)


def run_query_devices(
    inp: DimensionQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> DimensionBreakdownOutput:
    """Query top device types, browsers or operating systems."""
    _require_dimension(inp.dimension, DEVICE_DIMENSIONS)
    return run_query_dimension(inp, engine=engine, cache=cache, time_port=time_port)


def run_query_video_completion(
    inp: VideoCompletionQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> VideoCompletionOutput:
    """Query video completion statistics."""
    return _run_query(
        inp,
        "video-completion",
        engine.video_completion,
        engine=engine,
        cache=cache,
        time_port=time_port,
    )


def run_query_sessions(
    inp: SessionsQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> SessionStatsOutput:
    """Query session duration and bounce statistics."""
    return _run_query(
        inp, "sessions", engine.sessions, engine=engine, cache=cache, time_port=time_port
    )


def run_query_events(
    inp: RecentEventsQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
    ttl_seconds: int | None = None,
) -> RecentEventsOutput:
    """Query recent raw events grouped by kind."""
    return _run_query(
        inp,
        "events",
        lambda f, p: engine.recent_events(f, p, inp.limit),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"limit": inp.limit},
        ttl_seconds=ttl_seconds,
    )


def run_query_scopes(
    inp: ScopeOverviewQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> ScopeOverviewOutput:
    """Query per-scope totals for one identity."""
    if not inp.identity_id:
        raise EventValidationError(
            [
                AnalyticsValidationError(
                    code="identity_required",
                    message="identity_id is required",
                    field_name="identity_id",
                )
            ]
        )
    return _run_query(
        inp,
        "scopes",
        lambda f, p: engine.scope_overview(f.identity_id or "", p, inp.campaign_type),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"campaign_type": inp.campaign_type},
    )


def run_query_dashboard(
    inp: DashboardQueryInput,
    *,
    engine: AnalyticsQueryEngine,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
) -> DashboardOutput:
    """Query the composite dashboard view."""
    return _run_query(
        inp,
        "dashboard",
        lambda f, p: engine.dashboard(f, p, inp.granularity),
        engine=engine,
        cache=cache,
        time_port=time_port,
        filters={"granularity": inp.granularity},
    )


QueryOutput = (
    BreakdownOutput
    | PatternOutput
    | FunnelOutput
    | RankingOutput
    | DimensionBreakdownOutput
    | VideoCompletionOutput
    | SessionStatsOutput
    | RecentEventsOutput
    | ScopeOverviewOutput
    | DashboardOutput
)


def run(
    inp: IngestEventInput | QueryInput,
    *,
    event_log: EventLogPort | None = None,
    registry: RegistryPort | None = None,
    rollup_repo: RollupRepoPort | None = None,
    dedupe: DedupeService | None = None,
    engine: AnalyticsQueryEngine | None = None,
    cache: ResultCachePort | None = None,
    time_port: TimePort | None = None,
    config: IngestConfig | None = None,
) -> IngestOutput | QueryOutput:
    """
    Main entry point for the analytics component.

    Dispatches to appropriate handler based on input type.
    """
    if isinstance(inp, IngestEventInput):
        if event_log is None or registry is None or rollup_repo is None:
            raise ValueError("event_log, registry and rollup_repo are required for ingest")
        return run_ingest(
            inp,
            event_log=event_log,
            registry=registry,
            rollup_repo=rollup_repo,
            dedupe=dedupe,
            cache=cache,
            time_port=time_port,
            config=config,
        )

    if engine is None:
        if event_log is None:
            raise ValueError("engine or event_log is required for query operations")
        engine = AnalyticsQueryEngine(event_log=event_log, registry=registry)

    handlers: list[tuple[type, Callable[..., Any]]] = [
        (BreakdownQueryInput, run_query_breakdown),
        (PatternQueryInput, run_query_patterns),
        (FunnelQueryInput, run_query_funnel),
        (TopQueryInput, run_query_top),
        (DimensionQueryInput, run_query_dimension),
        (VideoCompletionQueryInput, run_query_video_completion),
        (SessionsQueryInput, run_query_sessions),
        (RecentEventsQueryInput, run_query_events),
        (ScopeOverviewQueryInput, run_query_scopes),
        (DashboardQueryInput, run_query_dashboard),
    ]
    for input_type, handler in handlers:
        if isinstance(inp, input_type):
            result: QueryOutput = handler(inp, engine=engine, cache=cache, time_port=time_port)
            return result

    raise ValueError(f"Unknown input type: {type(inp)}")
