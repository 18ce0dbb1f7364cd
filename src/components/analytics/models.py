"""
Analytics component input/output models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from src.core.entities import Event, EventKind, RollupCounters

# --- Validation Error ---


@dataclass(frozen=True)
class AnalyticsValidationError:
    """Field-level validation error."""

    code: str
    message: str
    field_name: str | None = None


# --- Enums ---


Granularity = Literal["day", "hour"]
Pattern = Literal["hour_of_day", "day_of_week"]
RankingGroup = Literal["identity", "scope"]

BREAKDOWN_DIMENSIONS: frozenset[str] = frozenset(
    {"country", "city", "device_type", "browser", "os", "link_type"}
)

# Numeric payload fields the event log can sum per group
MEASURE_FIELDS: frozenset[str] = frozenset(
    {"time_spent", "load_time", "video_progress", "video_duration"}
)


# --- Time window ---


@dataclass(frozen=True)
class PeriodWindow:
    """Resolved query window. Always echoed back to callers."""

    days: int
    start_date: datetime
    end_date: datetime


# --- Event log query shapes ---


@dataclass(frozen=True)
class EventFilter:
    """
    Event log filter.

    `require` lists dimensions that must be present (non-null) on the event;
    used by geographic/device breakdowns.
    """

    identity_id: str | None = None
    scope_id: str | None = None
    scope_ids: tuple[str, ...] | None = None
    kinds: tuple[EventKind, ...] | None = None
    start: datetime | None = None
    end: datetime | None = None
    require: tuple[str, ...] = ()
    scoped_only: bool = False


@dataclass(frozen=True)
class AggregateRow:
    """
    One group from an event log aggregation.

    measure_sum and measure_count cover the events carrying the requested
    measure field; both stay zero when no measure was asked for.
    """

    key: dict[str, Any]
    count: int
    first_at: datetime | None = None
    last_at: datetime | None = None
    measure_sum: float = 0.0
    measure_count: int = 0


# --- Ingest ---


@dataclass(frozen=True)
class IngestEventInput:
    """Raw submission: {identityId, scopeId?, kind, payload, sessionId?, occurredAt?, eventId?}."""

    data: dict[str, Any]


@dataclass(frozen=True)
class RollupResult:
    """What the rollup updater managed to apply for one event."""

    counter: str | None
    global_applied: bool = False
    scope_applied: bool = False
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class IngestOutput:
    """Ingestion outcome."""

    event: Event | None
    accepted: bool
    duplicate: bool = False
    rollup: RollupResult | None = None
    errors: list[AnalyticsValidationError] = field(default_factory=list)
    success: bool = True


# --- Query inputs ---


@dataclass(frozen=True)
class QueryInput:
    """Common query parameters."""

    identity_id: str | None = None
    scope_id: str | None = None
    period: str | int | None = None
    kinds: tuple[str, ...] | None = None


@dataclass(frozen=True)
class BreakdownQueryInput(QueryInput):
    granularity: Granularity = "day"


@dataclass(frozen=True)
class PatternQueryInput(QueryInput):
    pattern: Pattern = "hour_of_day"


@dataclass(frozen=True)
class FunnelQueryInput(QueryInput):
    pass


@dataclass(frozen=True)
class TopQueryInput(QueryInput):
    group_by: RankingGroup = "scope"
    limit: int | None = None
    weights: dict[str, float] | None = None


@dataclass(frozen=True)
class DimensionQueryInput(QueryInput):
    dimension: str = "country"
    limit: int | None = None


@dataclass(frozen=True)
class VideoCompletionQueryInput(QueryInput):
    pass


@dataclass(frozen=True)
class SessionsQueryInput(QueryInput):
    pass


@dataclass(frozen=True)
class RecentEventsQueryInput(QueryInput):
    limit: int | None = None


@dataclass(frozen=True)
class ScopeOverviewQueryInput(QueryInput):
    campaign_type: str | None = None


@dataclass(frozen=True)
class DashboardQueryInput(QueryInput):
    granularity: Granularity = "day"


# --- Query outputs ---


@dataclass(frozen=True)
class TimeBucket:
    """Counts for one truncated timestamp."""

    bucket_start: datetime
    counts: dict[str, int]
    total: int


@dataclass(frozen=True)
class BreakdownOutput:
    granularity: str
    buckets: tuple[TimeBucket, ...]
    period: PeriodWindow


@dataclass(frozen=True)
class PatternSlot:
    slot: int
    counts: dict[str, int]
    total: int


@dataclass(frozen=True)
class PatternOutput:
    pattern: str
    slots: tuple[PatternSlot, ...]
    period: PeriodWindow


@dataclass(frozen=True)
class KindSummary:
    kind: str
    count: int
    last_occurrence: datetime | None


@dataclass(frozen=True)
class FunnelOutput:
    scans: int
    video_views: int
    link_clicks: int
    ar_starts: int
    scan_to_video_conversion: float
    video_to_link_conversion: float
    link_to_ar_conversion: float
    overall_conversion: float
    period: PeriodWindow


@dataclass(frozen=True)
class RankingItem:
    identity_id: str
    scope_id: str | None
    total: float
    counts: dict[str, int]


@dataclass(frozen=True)
class RankingOutput:
    group_by: str
    items: tuple[RankingItem, ...]
    period: PeriodWindow


@dataclass(frozen=True)
class DimensionCount:
    value: str
    count: int
    country: str | None = None


@dataclass(frozen=True)
class DimensionBreakdownOutput:
    dimension: str
    items: tuple[DimensionCount, ...]
    period: PeriodWindow


@dataclass(frozen=True)
class VideoCompletionOutput:
    total_views: int
    average_progress: float
    average_duration: float
    average_completion_rate: float
    completed_views: int
    completion_rate: float
    truncated: bool
    period: PeriodWindow


@dataclass(frozen=True)
class SessionStatsOutput:
    total_sessions: int
    average_session_duration_seconds: float
    average_events_per_session: float
    single_event_sessions: int
    bounce_rate: float
    period: PeriodWindow


@dataclass(frozen=True)
class RecentEventsOutput:
    events: dict[str, list[Event]]
    total_events: int
    truncated: bool
    period: PeriodWindow


@dataclass(frozen=True)
class ScopeOverviewItem:
    scope_id: str
    name: str | None
    campaign_type: str | None
    total_scans: int
    video_views: int
    link_clicks: int
    average_time_spent: float


@dataclass(frozen=True)
class ScopeOverviewOutput:
    items: tuple[ScopeOverviewItem, ...]
    period: PeriodWindow


@dataclass(frozen=True)
class MetricChange:
    current: int
    previous: int
    change: float


@dataclass(frozen=True)
class DashboardOutput:
    summary: tuple[KindSummary, ...]
    breakdown: BreakdownOutput
    funnel: FunnelOutput
    comparison: dict[str, MetricChange]
    rollups: RollupCounters | None
    period: PeriodWindow
