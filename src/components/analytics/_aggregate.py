"""
AnalyticsQueryEngine - Read-side aggregations over the event log.

Answers dashboard queries directly from the event log; it never reads or
writes rollup counters except for the dashboard's snapshot.

Key behaviors:
- Time-bucketed breakdowns sorted by real datetime, not bucket strings
- Funnel conversions rounded to 2 dp, 0 on a zero denominator
- Top-N rankings by weighted total, ties broken by key ascending
- Geographic/device breakdowns skip events missing the dimension
- Row-level analyses are capped and report `truncated`
- Every result carries the resolved period window
"""

from __future__ import annotations

import re
import threading
from collections import defaultdict
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from src.core.entities import Event, EventKind, RollupCounters

from .errors import EventValidationError, IdentityNotFoundError
from .models import (
    BREAKDOWN_DIMENSIONS,
    MEASURE_FIELDS,
    AggregateRow,
    AnalyticsValidationError,
    BreakdownOutput,
    DashboardOutput,
    DimensionBreakdownOutput,
    DimensionCount,
    EventFilter,
    FunnelOutput,
    KindSummary,
    MetricChange,
    PatternOutput,
    PatternSlot,
    PeriodWindow,
    RankingItem,
    RankingOutput,
    RecentEventsOutput,
    ScopeOverviewItem,
    ScopeOverviewOutput,
    SessionStatsOutput,
    TimeBucket,
    VideoCompletionOutput,
)
from .ports import EventLogPort, RegistryPort

# --- Configuration ---


@dataclass(frozen=True)
class QueryConfig:
    """Query engine limits."""

    default_period: str = "30d"
    max_period_days: int = 365
    breakdown_limit: int = 10
    breakdown_max_limit: int = 20
    ranking_limit: int = 10
    ranking_max_limit: int = 50
    max_scan_rows: int = 10_000
    completion_threshold_percent: float = 90.0
    ranking_weights: Mapping[str, float] = field(default_factory=dict)


DEFAULT_CONFIG = QueryConfig()

FUNNEL_KINDS: tuple[EventKind, ...] = (
    EventKind.SCAN,
    EventKind.VIDEO_VIEW,
    EventKind.LINK_CLICK,
    EventKind.AR_EXPERIENCE_START,
)

# --- Period resolution ---

_PERIOD_RE = re.compile(r"^(\d{1,4})d?$")


def resolve_period(
    period: str | int | None,
    now: datetime,
    default: str = DEFAULT_CONFIG.default_period,
    max_days: int = DEFAULT_CONFIG.max_period_days,
) -> PeriodWindow:
    """
    Resolve "7d", "30d", "90d", "<N>d" or "<N>" to a window ending now.

    Raises:
        EventValidationError: period is not a whole number of days in 1..max_days
    """
    if period is None or period == "":
        period = default

    days: int | None = None
    if isinstance(period, int) and not isinstance(period, bool):
        days = period
    elif isinstance(period, str):
        match = _PERIOD_RE.match(period.strip().lower())
        if match:
            days = int(match.group(1))

    if days is None or not 1 <= days <= max_days:
        raise EventValidationError(
            [
                AnalyticsValidationError(
                    code="invalid_period",
                    message=f"Period must be between 1 and {max_days} days (e.g. 7d, 30d, 90d)",
                    field_name="period",
                )
            ]
        )

    return PeriodWindow(days=days, start_date=now - timedelta(days=days), end_date=now)


def window_filter(
    period: PeriodWindow,
    identity_id: str | None = None,
    scope_id: str | None = None,
    kinds: Sequence[EventKind] | None = None,
) -> EventFilter:
    """Build an event filter bounded by a period window."""
    return EventFilter(
        identity_id=identity_id,
        scope_id=scope_id,
        kinds=tuple(kinds) if kinds else None,
        start=period.start_date,
        end=period.end_date,
    )


# --- Helpers ---


def truncate_timestamp(ts: datetime, granularity: str) -> datetime:
    """Truncate to the start of the UTC day or hour."""
    ts = ts.astimezone(UTC)
    if granularity == "hour":
        return ts.replace(minute=0, second=0, microsecond=0)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def dimension_value(event: Event, dimension: str) -> Any:
    """Value of one grouping dimension for an event (None when absent)."""
    payload = event.payload
    location = payload.location
    device = payload.device
    ts = event.occurred_at.astimezone(UTC)

    if dimension == "kind":
        return event.kind.value
    if dimension == "identity_id":
        return event.identity_id
    if dimension == "scope_id":
        return event.scope_id
    if dimension == "session_id":
        return event.session_id
    if dimension == "day":
        return truncate_timestamp(ts, "day")
    if dimension == "hour":
        return truncate_timestamp(ts, "hour")
    if dimension == "hour_of_day":
        return ts.hour
    if dimension == "day_of_week":
        # 0 = Monday
        return ts.weekday()
    if dimension == "country":
        return location.country if location else None
    if dimension == "city":
        return location.city if location else None
    if dimension == "device_type":
        return device.type if device else None
    if dimension == "browser":
        return device.browser if device else None
    if dimension == "os":
        return device.os if device else None
    if dimension == "link_type":
        return payload.link_type
    raise ValueError(f"Unknown dimension: {dimension}")


def measure_value(event: Event, measure: str) -> float | None:
    """Numeric payload value summed by aggregate(measure=...)."""
    if measure not in MEASURE_FIELDS:
        raise ValueError(f"Unknown measure: {measure}")
    value = getattr(event.payload, measure)
    return float(value) if value is not None else None


def calculate_change(current: int | float, previous: int | float) -> float:
    """Percentage change; from zero it is 100 when anything happened, else 0."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 2)


def _rate(numerator: float, denominator: float) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator * 100, 2)


def _mean(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return round(sum(values) / len(values), 2)


def _clamp_limit(limit: int | None, default: int, maximum: int) -> int:
    if limit is None:
        return default
    return max(1, min(limit, maximum))


# --- In-Memory Event Log ---


class InMemoryEventLog:
    """In-memory event log for testing/dev."""

    def __init__(self) -> None:
        self._events: dict[UUID, Event] = {}
        self._lock = threading.Lock()

    def append(self, event: Event) -> UUID:
        with self._lock:
            self._events.setdefault(event.id, event)
        return event.id

    @staticmethod
    def _matches(event: Event, event_filter: EventFilter) -> bool:
        f = event_filter
        if f.identity_id is not None and event.identity_id != f.identity_id:
            return False
        if f.scope_id is not None and event.scope_id != f.scope_id:
            return False
        if f.scope_ids is not None and event.scope_id not in f.scope_ids:
            return False
        if f.scoped_only and not event.scope_id:
            return False
        if f.kinds is not None and event.kind not in f.kinds:
            return False
        if f.start is not None and event.occurred_at < f.start:
            return False
        if f.end is not None and event.occurred_at > f.end:
            return False
        for dimension in f.require:
            if dimension_value(event, dimension) in (None, ""):
                return False
        return True

    def _select(self, event_filter: EventFilter) -> list[Event]:
        with self._lock:
            return [e for e in self._events.values() if self._matches(e, event_filter)]

    def aggregate(
        self,
        event_filter: EventFilter,
        group_by: Sequence[str],
        measure: str | None = None,
    ) -> list[AggregateRow]:
        groups: dict[tuple[Any, ...], list[Event]] = defaultdict(list)
        for event in self._select(event_filter):
            key = tuple(dimension_value(event, d) for d in group_by)
            groups[key].append(event)

        rows: list[AggregateRow] = []
        for key, events in groups.items():
            values = [measure_value(e, measure) for e in events] if measure else []
            measured = [v for v in values if v is not None]
            rows.append(
                AggregateRow(
                    key=dict(zip(group_by, key, strict=True)),
                    count=len(events),
                    first_at=min(e.occurred_at for e in events),
                    last_at=max(e.occurred_at for e in events),
                    measure_sum=float(sum(measured)),
                    measure_count=len(measured),
                )
            )
        return rows

    def list_events(self, event_filter: EventFilter, limit: int | None = None) -> list[Event]:
        events = sorted(self._select(event_filter), key=lambda e: e.occurred_at, reverse=True)
        return events[:limit] if limit is not None else events

    def count(self, event_filter: EventFilter) -> int:
        return len(self._select(event_filter))

    def purge_before(self, cutoff: datetime) -> int:
        with self._lock:
            doomed = [eid for eid, e in self._events.items() if e.occurred_at < cutoff]
            for eid in doomed:
                del self._events[eid]
            return len(doomed)

    def get_all(self) -> list[Event]:
        """Get all stored events (for testing)."""
        with self._lock:
            return list(self._events.values())


# --- Query Engine ---


class AnalyticsQueryEngine:
    """Read-only aggregations over the event log."""

    def __init__(
        self,
        event_log: EventLogPort,
        registry: RegistryPort | None = None,
        config: QueryConfig | None = None,
    ) -> None:
        self._log = event_log
        self._registry = registry
        self._config = config or DEFAULT_CONFIG

    @property
    def config(self) -> QueryConfig:
        return self._config

    def resolve_identity(self, ref: str) -> str:
        """Canonical identity id for an id or username."""
        if self._registry is None:
            return ref
        identity = self._registry.resolve_identity(ref)
        if identity is None:
            raise IdentityNotFoundError(ref)
        return identity.id

    # Time

    def time_breakdown(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        granularity: str = "day",
    ) -> BreakdownOutput:
        """Counts per (day|hour, kind), ascending by bucket time."""
        if granularity not in ("day", "hour"):
            raise EventValidationError(
                [
                    AnalyticsValidationError(
                        code="invalid_granularity",
                        message="Granularity must be 'day' or 'hour'",
                        field_name="granularity",
                    )
                ]
            )

        buckets: dict[datetime, dict[str, int]] = defaultdict(dict)
        for row in self._log.aggregate(event_filter, [granularity, "kind"]):
            bucket = row.key[granularity]
            counts = buckets[bucket]
            counts[row.key["kind"]] = counts.get(row.key["kind"], 0) + row.count

        return BreakdownOutput(
            granularity=granularity,
            buckets=tuple(
                TimeBucket(bucket_start=start, counts=counts, total=sum(counts.values()))
                for start, counts in sorted(buckets.items())
            ),
            period=period,
        )

    def pattern(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        pattern: str = "hour_of_day",
    ) -> PatternOutput:
        """Counts per hour of day (0-23) or day of week (0=Monday), all slots present."""
        if pattern == "hour_of_day":
            slots = range(24)
        elif pattern == "day_of_week":
            slots = range(7)
        else:
            raise EventValidationError(
                [
                    AnalyticsValidationError(
                        code="invalid_pattern",
                        message="Pattern must be 'hour_of_day' or 'day_of_week'",
                        field_name="pattern",
                    )
                ]
            )

        counts: dict[int, dict[str, int]] = {slot: {} for slot in slots}
        for row in self._log.aggregate(event_filter, [pattern, "kind"]):
            slot_counts = counts[int(row.key[pattern])]
            slot_counts[row.key["kind"]] = slot_counts.get(row.key["kind"], 0) + row.count

        return PatternOutput(
            pattern=pattern,
            slots=tuple(
                PatternSlot(slot=slot, counts=c, total=sum(c.values()))
                for slot, c in counts.items()
            ),
            period=period,
        )

    def time_of_day_pattern(self, event_filter: EventFilter, period: PeriodWindow) -> PatternOutput:
        return self.pattern(event_filter, period, "hour_of_day")

    def weekly_pattern(self, event_filter: EventFilter, period: PeriodWindow) -> PatternOutput:
        return self.pattern(event_filter, period, "day_of_week")

    # Totals

    def summary(self, event_filter: EventFilter) -> tuple[KindSummary, ...]:
        """Per-kind count and last occurrence, in EventKind order."""
        rows = {row.key["kind"]: row for row in self._log.aggregate(event_filter, ["kind"])}
        return tuple(
            KindSummary(
                kind=kind.value,
                count=rows[kind.value].count,
                last_occurrence=rows[kind.value].last_at,
            )
            for kind in EventKind
            if kind.value in rows
        )

    def kind_counts(self, event_filter: EventFilter) -> dict[str, int]:
        return {row.key["kind"]: row.count for row in self._log.aggregate(event_filter, ["kind"])}

    def funnel(self, event_filter: EventFilter, period: PeriodWindow) -> FunnelOutput:
        """Scan -> video -> link -> AR conversion rates."""
        counts = self.kind_counts(replace(event_filter, kinds=FUNNEL_KINDS))
        scans = counts.get(EventKind.SCAN.value, 0)
        video_views = counts.get(EventKind.VIDEO_VIEW.value, 0)
        link_clicks = counts.get(EventKind.LINK_CLICK.value, 0)
        ar_starts = counts.get(EventKind.AR_EXPERIENCE_START.value, 0)

        return FunnelOutput(
            scans=scans,
            video_views=video_views,
            link_clicks=link_clicks,
            ar_starts=ar_starts,
            scan_to_video_conversion=_rate(video_views, scans),
            video_to_link_conversion=_rate(link_clicks, video_views),
            link_to_ar_conversion=_rate(ar_starts, link_clicks),
            overall_conversion=_rate(video_views + link_clicks + ar_starts, scans),
            period=period,
        )

    def period_comparison(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        kinds: Sequence[EventKind] = FUNNEL_KINDS,
    ) -> dict[str, MetricChange]:
        """Current window vs the equally long window before it."""
        previous_filter = replace(
            event_filter,
            start=period.start_date - timedelta(days=period.days),
            end=period.start_date - timedelta(microseconds=1),
        )
        current_filter = replace(event_filter, start=period.start_date, end=period.end_date)
        current = self.kind_counts(replace(current_filter, kinds=tuple(kinds)))
        previous = self.kind_counts(replace(previous_filter, kinds=tuple(kinds)))

        return {
            kind.value: MetricChange(
                current=current.get(kind.value, 0),
                previous=previous.get(kind.value, 0),
                change=calculate_change(current.get(kind.value, 0), previous.get(kind.value, 0)),
            )
            for kind in kinds
        }

    # Rankings

    def _rank(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        group_by: str,
        limit: int | None,
        weights: Mapping[str, float] | None,
    ) -> RankingOutput:
        weights = weights if weights is not None else self._config.ranking_weights
        limit = _clamp_limit(limit, self._config.ranking_limit, self._config.ranking_max_limit)

        if group_by == "scope":
            dims = ["identity_id", "scope_id", "kind"]
            event_filter = replace(event_filter, scoped_only=True)
        else:
            dims = ["identity_id", "kind"]

        groups: dict[tuple[str, str | None], dict[str, int]] = defaultdict(dict)
        for row in self._log.aggregate(event_filter, dims):
            key = (row.key["identity_id"], row.key.get("scope_id"))
            groups[key][row.key["kind"]] = groups[key].get(row.key["kind"], 0) + row.count

        items = [
            RankingItem(
                identity_id=identity_id,
                scope_id=scope_id,
                total=float(sum(n * weights.get(kind, 1.0) for kind, n in counts.items())),
                counts=counts,
            )
            for (identity_id, scope_id), counts in groups.items()
        ]
        items.sort(key=lambda i: (-i.total, i.identity_id, i.scope_id or ""))

        return RankingOutput(group_by=group_by, items=tuple(items[:limit]), period=period)

    def top_identities(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        limit: int | None = None,
        weights: Mapping[str, float] | None = None,
    ) -> RankingOutput:
        return self._rank(event_filter, period, "identity", limit, weights)

    def top_scopes(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        limit: int | None = None,
        weights: Mapping[str, float] | None = None,
    ) -> RankingOutput:
        return self._rank(event_filter, period, "scope", limit, weights)

    # Breakdowns

    def breakdown(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        dimension: str,
        limit: int | None = None,
    ) -> DimensionBreakdownOutput:
        """Top values of a geographic/device/link dimension."""
        if dimension not in BREAKDOWN_DIMENSIONS:
            allowed = ", ".join(sorted(BREAKDOWN_DIMENSIONS))
            raise EventValidationError(
                [
                    AnalyticsValidationError(
                        code="invalid_dimension",
                        message=f"Dimension must be one of: {allowed}",
                        field_name="dimension",
                    )
                ]
            )

        limit = _clamp_limit(limit, self._config.breakdown_limit, self._config.breakdown_max_limit)
        dims = ["city", "country"] if dimension == "city" else [dimension]
        rows = self._log.aggregate(replace(event_filter, require=(dimension,)), dims)

        items = [
            DimensionCount(
                value=str(row.key[dimension]),
                count=row.count,
                country=row.key.get("country") if dimension == "city" else None,
            )
            for row in rows
        ]
        items.sort(key=lambda i: (-i.count, i.value, i.country or ""))

        return DimensionBreakdownOutput(
            dimension=dimension, items=tuple(items[:limit]), period=period
        )

    # Row-level analyses

    def video_completion(
        self, event_filter: EventFilter, period: PeriodWindow
    ) -> VideoCompletionOutput:
        """Completion stats over video views carrying progress and duration."""
        cap = self._config.max_scan_rows
        events = self._log.list_events(
            replace(event_filter, kinds=(EventKind.VIDEO_VIEW,)), limit=cap + 1
        )
        truncated = len(events) > cap
        events = events[:cap]

        progress: list[float] = []
        durations: list[float] = []
        rates: list[float] = []
        for event in events:
            p = event.payload.video_progress
            d = event.payload.video_duration
            if p is None or d is None:
                continue
            progress.append(p)
            durations.append(d)
            rates.append(p / d * 100 if d > 0 else 0.0)

        completed = sum(1 for r in rates if r >= self._config.completion_threshold_percent)

        return VideoCompletionOutput(
            total_views=len(rates),
            average_progress=_mean(progress),
            average_duration=_mean(durations),
            average_completion_rate=_mean(rates),
            completed_views=completed,
            completion_rate=_rate(completed, len(rates)),
            truncated=truncated,
            period=period,
        )

    def sessions(self, event_filter: EventFilter, period: PeriodWindow) -> SessionStatsOutput:
        """Session duration/size heuristics; bounce = single-event sessions."""
        rows = self._log.aggregate(replace(event_filter, require=("session_id",)), ["session_id"])

        durations = [
            (row.last_at - row.first_at).total_seconds()
            for row in rows
            if row.first_at is not None and row.last_at is not None
        ]
        single = sum(1 for row in rows if row.count == 1)
        total = len(rows)

        return SessionStatsOutput(
            total_sessions=total,
            average_session_duration_seconds=_mean(durations),
            average_events_per_session=_mean([row.count for row in rows]),
            single_event_sessions=single,
            bounce_rate=_rate(single, total),
            period=period,
        )

    def recent_events(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        limit: int | None = None,
    ) -> RecentEventsOutput:
        """Newest events grouped by kind."""
        limit = _clamp_limit(limit, 1000, self._config.max_scan_rows)
        events = self._log.list_events(event_filter, limit=limit + 1)
        truncated = len(events) > limit
        events = events[:limit]

        grouped: dict[str, list[Event]] = defaultdict(list)
        for event in events:
            grouped[event.kind.value].append(event)

        return RecentEventsOutput(
            events=dict(grouped),
            total_events=len(events),
            truncated=truncated,
            period=period,
        )

    # Scopes

    def scope_overview(
        self,
        identity_id: str,
        period: PeriodWindow,
        campaign_type: str | None = None,
    ) -> ScopeOverviewOutput:
        """Per-scope totals plus average time spent on the landing page."""
        scopes = self._registry.list_scopes(identity_id) if self._registry else []
        if campaign_type:
            scopes = [s for s in scopes if s.campaign_type == campaign_type]
        if not scopes:
            return ScopeOverviewOutput(items=(), period=period)

        base = replace(
            window_filter(period, identity_id=identity_id),
            scope_ids=tuple(s.scope_id for s in scopes),
            scoped_only=True,
        )

        counts: dict[str, dict[str, int]] = defaultdict(dict)
        for row in self._log.aggregate(base, ["scope_id", "kind"]):
            counts[row.key["scope_id"]][row.key["kind"]] = row.count

        time_spent: dict[str, float] = {}
        durations = replace(base, kinds=(EventKind.PAGE_VIEW_DURATION,))
        for row in self._log.aggregate(durations, ["scope_id"], measure="time_spent"):
            if row.measure_count:
                time_spent[row.key["scope_id"]] = round(row.measure_sum / row.measure_count, 2)

        items = tuple(
            ScopeOverviewItem(
                scope_id=scope.scope_id,
                name=scope.name,
                campaign_type=scope.campaign_type,
                total_scans=counts[scope.scope_id].get(EventKind.SCAN.value, 0),
                video_views=counts[scope.scope_id].get(EventKind.VIDEO_VIEW.value, 0),
                link_clicks=counts[scope.scope_id].get(EventKind.LINK_CLICK.value, 0),
                average_time_spent=time_spent.get(scope.scope_id, 0.0),
            )
            for scope in scopes
        )
        return ScopeOverviewOutput(items=items, period=period)

    # Composite

    def dashboard(
        self,
        event_filter: EventFilter,
        period: PeriodWindow,
        granularity: str = "day",
    ) -> DashboardOutput:
        """Summary, breakdown, funnel, comparison and a rollup snapshot in one result."""
        rollups: RollupCounters | None = None
        if self._registry is not None and event_filter.identity_id:
            if event_filter.scope_id:
                scope = self._registry.get_scope(event_filter.identity_id, event_filter.scope_id)
                rollups = scope.rollups if scope else None
            else:
                identity = self._registry.get_identity(event_filter.identity_id)
                rollups = identity.rollups if identity else None

        return DashboardOutput(
            summary=self.summary(event_filter),
            breakdown=self.time_breakdown(event_filter, period, granularity),
            funnel=self.funnel(event_filter, period),
            comparison=self.period_comparison(event_filter, period),
            rollups=rollups,
            period=period,
        )


# --- Factory ---


def create_query_engine(
    event_log: EventLogPort,
    registry: RegistryPort | None = None,
    config: QueryConfig | None = None,
) -> AnalyticsQueryEngine:
    """Create an AnalyticsQueryEngine."""
    return AnalyticsQueryEngine(event_log=event_log, registry=registry, config=config)
