"""
Analytics Query API Routes.

Dashboard read endpoints over the engagement event log.

Every response carries the resolved period window. Results are served from
the shared result cache when fresh.

Error mapping:
- 400: bad period, kind, granularity, dimension or limit
- 404: unknown identity
- 503: storage unavailable, retryable
"""

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, status

from src.api.deps import get_query_engine, get_result_cache, get_rules, get_time_port
from src.components.analytics import (
    AnalyticsQueryEngine,
    BreakdownOutput,
    BreakdownQueryInput,
    DashboardOutput,
    DashboardQueryInput,
    DimensionBreakdownOutput,
    DimensionQueryInput,
    EventValidationError,
    FunnelOutput,
    FunnelQueryInput,
    NotFoundError,
    PatternOutput,
    PatternQueryInput,
    QueryStorageError,
    RankingOutput,
    RecentEventsOutput,
    RecentEventsQueryInput,
    ResultCachePort,
    ScopeOverviewOutput,
    ScopeOverviewQueryInput,
    SessionsQueryInput,
    SessionStatsOutput,
    TimePort,
    TopQueryInput,
    VideoCompletionOutput,
    VideoCompletionQueryInput,
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
from src.core.entities import EventKind
from src.rules.models import Rules

logger = logging.getLogger(__name__)

router = APIRouter()

T = TypeVar("T")


# --- Dependencies ---


class QueryContext:
    """Engine, cache and clock shared by every query route."""

    def __init__(
        self,
        engine: AnalyticsQueryEngine = Depends(get_query_engine),
        cache: ResultCachePort = Depends(get_result_cache),
        time_port: TimePort = Depends(get_time_port),
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.time_port = time_port


class CommonParams:
    """Query string parameters accepted by every query route."""

    def __init__(
        self,
        identity_id: str | None = Query(None, description="Identity id or username"),
        scope_id: str | None = Query(None, description="Restrict to one scope"),
        period: str | None = Query(None, description="Window such as '7d' or '30'"),
        kinds: str | None = Query(None, description="Comma separated event kinds"),
    ) -> None:
        self.identity_id = identity_id
        self.scope_id = scope_id
        self.period = period
        self.kinds = tuple(k.strip() for k in kinds.split(",") if k.strip()) if kinds else None

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "identity_id": self.identity_id,
            "scope_id": self.scope_id,
            "period": self.period,
            "kinds": self.kinds,
        }


def _answer(query: Callable[[], T]) -> T:
    """Run a query, mapping component errors to HTTP errors."""
    try:
        return query()
    except EventValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "ok": False,
                "errors": [
                    {"code": err.code, "message": err.message, "field": err.field_name}
                    for err in e.errors
                ],
            },
        ) from e
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "ok": False,
                "errors": [{"code": "not_found", "message": str(e), "field": "identity_id"}],
            },
        ) from e
    except QueryStorageError as e:
        logger.error("Analytics query failed: %s", e)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Analytics storage temporarily unavailable, retry shortly",
        ) from e


# --- Routes ---


@router.get("/breakdown")
def query_breakdown(
    granularity: str = Query("day", description="'day' or 'hour'"),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> BreakdownOutput:
    """Event counts per time bucket and kind."""
    inp = BreakdownQueryInput(
        granularity=granularity, **params.as_kwargs()  # type: ignore[arg-type]
    )
    return _answer(
        lambda: run_query_breakdown(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/patterns")
def query_patterns(
    pattern: str = Query("hour_of_day", description="'hour_of_day' or 'day_of_week'"),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> PatternOutput:
    """Activity by hour of day or day of week."""
    inp = PatternQueryInput(pattern=pattern, **params.as_kwargs())  # type: ignore[arg-type]
    return _answer(
        lambda: run_query_patterns(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/funnel")
def query_funnel(
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> FunnelOutput:
    """Scan to video to link to AR conversion funnel."""
    inp = FunnelQueryInput(**params.as_kwargs())
    return _answer(
        lambda: run_query_funnel(inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port)
    )


@router.get("/top-identities")
def query_top_identities(
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
    rules: Rules = Depends(get_rules),
) -> RankingOutput:
    """Identities ranked by weighted event total."""
    inp = TopQueryInput(
        group_by="identity",
        limit=limit,
        weights=rules.analytics.query.ranking_weights or None,
        **params.as_kwargs(),
    )
    return _answer(
        lambda: run_query_top(inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port)
    )


@router.get("/top-scopes")
def query_top_scopes(
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
    rules: Rules = Depends(get_rules),
) -> RankingOutput:
    """Scopes ranked by weighted event total."""
    inp = TopQueryInput(
        group_by="scope",
        limit=limit,
        weights=rules.analytics.query.ranking_weights or None,
        **params.as_kwargs(),
    )
    return _answer(
        lambda: run_query_top(inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port)
    )


@router.get("/geography")
def query_geography(
    dimension: str = Query("country", description="'country' or 'city'"),
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> DimensionBreakdownOutput:
    """Top countries or cities."""
    inp = DimensionQueryInput(dimension=dimension, limit=limit, **params.as_kwargs())
    return _answer(
        lambda: run_query_geography(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/devices")
def query_devices(
    dimension: str = Query("device_type", description="'device_type', 'browser' or 'os'"),
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> DimensionBreakdownOutput:
    """Top device types, browsers or operating systems."""
    inp = DimensionQueryInput(dimension=dimension, limit=limit, **params.as_kwargs())
    return _answer(
        lambda: run_query_devices(inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port)
    )


@router.get("/social")
def query_social(
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> DimensionBreakdownOutput:
    """Social media clicks per platform."""
    kwargs = params.as_kwargs()
    kwargs["kinds"] = (EventKind.SOCIAL_MEDIA_CLICK.value,)
    inp = DimensionQueryInput(dimension="link_type", limit=limit, **kwargs)
    return _answer(
        lambda: run_query_dimension(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/video-completion")
def query_video_completion(
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> VideoCompletionOutput:
    """Video progress and completion statistics."""
    inp = VideoCompletionQueryInput(**params.as_kwargs())
    return _answer(
        lambda: run_query_video_completion(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/sessions")
def query_sessions(
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> SessionStatsOutput:
    """Session duration and bounce statistics."""
    inp = SessionsQueryInput(**params.as_kwargs())
    return _answer(
        lambda: run_query_sessions(inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port)
    )


@router.get("/events")
def query_events(
    limit: int | None = Query(None, ge=1),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
    rules: Rules = Depends(get_rules),
) -> RecentEventsOutput:
    """Recent raw events grouped by kind."""
    inp = RecentEventsQueryInput(limit=limit, **params.as_kwargs())
    return _answer(
        lambda: run_query_events(
            inp,
            engine=ctx.engine,
            cache=ctx.cache,
            time_port=ctx.time_port,
            ttl_seconds=rules.analytics.cache.events_ttl_seconds,
        )
    )


@router.get("/scopes")
def query_scopes(
    campaign_type: str | None = Query(None),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> ScopeOverviewOutput:
    """Per-scope totals for one identity."""
    inp = ScopeOverviewQueryInput(campaign_type=campaign_type, **params.as_kwargs())
    return _answer(
        lambda: run_query_scopes(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )


@router.get("/dashboard")
def query_dashboard(
    granularity: str = Query("day", description="'day' or 'hour'"),
    params: CommonParams = Depends(),
    ctx: QueryContext = Depends(),
) -> DashboardOutput:
    """Summary, breakdown, funnel and period comparison in one response."""
    inp = DashboardQueryInput(
        granularity=granularity, **params.as_kwargs()  # type: ignore[arg-type]
    )
    return _answer(
        lambda: run_query_dashboard(
            inp, engine=ctx.engine, cache=ctx.cache, time_port=ctx.time_port
        )
    )
