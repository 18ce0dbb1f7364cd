from pydantic import BaseModel, Field

from src.components.analytics import DedupeConfig, IngestConfig, QueryConfig


class ProjectRules(BaseModel):
    slug: str
    rules_version: str


class IngestRules(BaseModel):
    max_timestamp_age_seconds: int = Field(default=7 * 24 * 3600, gt=0)
    max_timestamp_future_seconds: int = Field(default=300, ge=0)

    def to_config(self) -> IngestConfig:
        return IngestConfig(
            max_timestamp_age_seconds=self.max_timestamp_age_seconds,
            max_timestamp_future_seconds=self.max_timestamp_future_seconds,
        )


class DedupeRules(BaseModel):
    enabled: bool = True
    window_seconds: int = Field(default=10, gt=0)
    window_overrides: dict[str, int] = Field(
        default_factory=lambda: {"videoProgressMilestone": 30}
    )

    def to_config(self) -> DedupeConfig:
        return DedupeConfig(
            enabled=self.enabled,
            window_seconds=self.window_seconds,
            window_overrides=dict(self.window_overrides),
        )


class CacheRules(BaseModel):
    enabled: bool = True
    ttl_seconds: int = Field(default=30, gt=0)
    events_ttl_seconds: int = Field(default=60, gt=0)
    cleanup_interval_seconds: int = Field(default=10, gt=0)


class QueryRules(BaseModel):
    default_period: str = "30d"
    max_period_days: int = Field(default=365, gt=0)
    breakdown_limit: int = Field(default=10, gt=0)
    breakdown_max_limit: int = Field(default=20, gt=0)
    ranking_limit: int = Field(default=10, gt=0)
    ranking_max_limit: int = Field(default=50, gt=0)
    max_scan_rows: int = Field(default=10_000, gt=0)
    completion_threshold_percent: float = Field(default=90.0, gt=0, le=100)
    ranking_weights: dict[str, float] = Field(default_factory=dict)

    def to_config(self) -> QueryConfig:
        return QueryConfig(
            default_period=self.default_period,
            max_period_days=self.max_period_days,
            breakdown_limit=self.breakdown_limit,
            breakdown_max_limit=self.breakdown_max_limit,
            ranking_limit=self.ranking_limit,
            ranking_max_limit=self.ranking_max_limit,
            max_scan_rows=self.max_scan_rows,
            completion_threshold_percent=self.completion_threshold_percent,
            ranking_weights=dict(self.ranking_weights),
        )


class RetentionRules(BaseModel):
    days: int | None = Field(default=None, gt=0)


class AnalyticsRules(BaseModel):
    ingest: IngestRules = Field(default_factory=IngestRules)
    dedupe: DedupeRules = Field(default_factory=DedupeRules)
    cache: CacheRules = Field(default_factory=CacheRules)
    query: QueryRules = Field(default_factory=QueryRules)
    retention: RetentionRules = Field(default_factory=RetentionRules)


class Rules(BaseModel):
    project: ProjectRules
    analytics: AnalyticsRules = Field(default_factory=AnalyticsRules)
