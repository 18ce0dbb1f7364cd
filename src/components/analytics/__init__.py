"""
Analytics component - Engagement event ingestion, rollups and queries.
"""

from ._aggregate import (
    AnalyticsQueryEngine,
    InMemoryEventLog,
    QueryConfig,
    calculate_change,
    create_query_engine,
    resolve_period,
    window_filter,
)
from ._cache import (
    CacheStats,
    NullResultCache,
    ResultCache,
    build_cache_key,
    create_result_cache,
)
from ._dedupe import (
    DedupeConfig,
    DedupeResult,
    DedupeService,
    InMemoryDedupeStore,
    create_dedupe_service,
    generate_dedupe_key,
)
from ._impl import (
    AnalyticsIngestionService,
    DefaultTimePort,
    create_analytics_ingestion_service,
)
from ._rollup import KIND_ROLLUP_TABLE, InMemoryRegistry, RollupTarget, RollupUpdater
from ._schema import (
    IngestConfig,
    to_snake,
    validate_event,
    validate_payload,
    validate_timestamp,
)
from .component import (
    parse_kinds,
    run,
    run_ingest,
    run_query_breakdown,
    run_query_dashboard,
    run_query_devices,
    run_query_dimension,
    run_query_events,
    run_query_funnel,
    run_query_geography,
    run_query_patterns,
    run_query_scopes,
    run_query_sessions,
    run_query_top,
    run_query_video_completion,
)
from .errors import (
    AnalyticsError,
    EventLogWriteError,
    EventValidationError,
    IdentityNotFoundError,
    NotFoundError,
    QueryStorageError,
    RollupUpdateError,
    ScopeNotFoundError,
    StorageError,
)
from .models import (
    AggregateRow,
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
    RankingOutput,
    RecentEventsOutput,
    RecentEventsQueryInput,
    RollupResult,
    ScopeOverviewOutput,
    ScopeOverviewQueryInput,
    SessionsQueryInput,
    SessionStatsOutput,
    TopQueryInput,
    VideoCompletionOutput,
    VideoCompletionQueryInput,
)
from .ports import EventLogPort, RegistryPort, ResultCachePort, RollupRepoPort, TimePort

__all__ = [
    # Entry points
    "run",
    "run_ingest",
    "run_query_breakdown",
    "run_query_dashboard",
    "run_query_devices",
    "run_query_dimension",
    "run_query_events",
    "run_query_funnel",
    "run_query_geography",
    "run_query_patterns",
    "run_query_scopes",
    "run_query_sessions",
    "run_query_top",
    "run_query_video_completion",
    "parse_kinds",
    # Input models
    "BreakdownQueryInput",
    "DashboardQueryInput",
    "DimensionQueryInput",
    "FunnelQueryInput",
    "IngestEventInput",
    "PatternQueryInput",
    "RecentEventsQueryInput",
    "ScopeOverviewQueryInput",
    "SessionsQueryInput",
    "TopQueryInput",
    "VideoCompletionQueryInput",
    # Output models
    "AggregateRow",
    "AnalyticsValidationError",
    "BreakdownOutput",
    "DashboardOutput",
    "DimensionBreakdownOutput",
    "EventFilter",
    "FunnelOutput",
    "IngestOutput",
    "PatternOutput",
    "PeriodWindow",
    "RankingOutput",
    "RecentEventsOutput",
    "RollupResult",
    "ScopeOverviewOutput",
    "SessionStatsOutput",
    "VideoCompletionOutput",
    # Errors
    "AnalyticsError",
    "EventLogWriteError",
    "EventValidationError",
    "IdentityNotFoundError",
    "NotFoundError",
    "QueryStorageError",
    "RollupUpdateError",
    "ScopeNotFoundError",
    "StorageError",
    # Ports
    "EventLogPort",
    "RegistryPort",
    "ResultCachePort",
    "RollupRepoPort",
    "TimePort",
    # Services
    "AnalyticsIngestionService",
    "AnalyticsQueryEngine",
    "DefaultTimePort",
    "IngestConfig",
    "QueryConfig",
    "RollupTarget",
    "RollupUpdater",
    "KIND_ROLLUP_TABLE",
    "calculate_change",
    "create_analytics_ingestion_service",
    "create_query_engine",
    "resolve_period",
    "to_snake",
    "validate_event",
    "validate_payload",
    "validate_timestamp",
    "window_filter",
    # In-memory adapters
    "InMemoryDedupeStore",
    "InMemoryEventLog",
    "InMemoryRegistry",
    # Dedupe
    "DedupeConfig",
    "DedupeResult",
    "DedupeService",
    "create_dedupe_service",
    "generate_dedupe_key",
    # Cache
    "CacheStats",
    "NullResultCache",
    "ResultCache",
    "build_cache_key",
    "create_result_cache",
]
