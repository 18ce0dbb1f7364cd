import os
from functools import lru_cache
from pathlib import Path

from fastapi import Depends

from src.adapters.clock import SystemClock
from src.adapters.sqlite_db import (
    SQLiteDedupeStore,
    SQLiteEventLogRepo,
    SQLiteRegistryRepo,
    SQLiteRollupRepo,
)
from src.components.analytics import (
    AnalyticsIngestionService,
    AnalyticsQueryEngine,
    DedupeService,
    NullResultCache,
    ResultCache,
    create_analytics_ingestion_service,
    create_dedupe_service,
    create_query_engine,
    create_result_cache,
)
from src.core.ports.time import TimePort
from src.rules.loader import load_rules
from src.rules.models import Rules


# --- Settings ---
class Settings:
    def __init__(self) -> None:
        self.base_dir = Path(os.getcwd())
        self.data_dir = Path(os.environ.get("ENGAGE_DATA_DIR", "./data"))
        self.db_path = str(self.data_dir / "engage.db")
        self.rules_path = Path(os.environ.get("ENGAGE_RULES_PATH", self.base_dir / "rules.yaml"))


@lru_cache
def get_settings() -> Settings:
    return Settings()


# --- Rules ---
@lru_cache
def get_rules(settings: Settings = Depends(get_settings)) -> Rules:
    return load_rules(settings.rules_path)


# --- Time ---
@lru_cache
def get_time_port() -> TimePort:
    return SystemClock()


# --- Repos ---
def get_event_log(settings: Settings = Depends(get_settings)) -> SQLiteEventLogRepo:
    return SQLiteEventLogRepo(settings.db_path)


def get_registry(settings: Settings = Depends(get_settings)) -> SQLiteRegistryRepo:
    return SQLiteRegistryRepo(settings.db_path)


def get_rollup_repo(settings: Settings = Depends(get_settings)) -> SQLiteRollupRepo:
    return SQLiteRollupRepo(settings.db_path)


# --- Shared state ---
# One cache per process; invalidation does not reach other instances.
@lru_cache
def get_result_cache(
    settings: Settings = Depends(get_settings),
) -> ResultCache | NullResultCache:
    cache_rules = get_rules(settings).analytics.cache
    return create_result_cache(
        enabled=cache_rules.enabled,
        default_ttl_seconds=cache_rules.ttl_seconds,
        cleanup_interval_seconds=cache_rules.cleanup_interval_seconds,
    )


def get_dedupe_service(
    settings: Settings = Depends(get_settings),
    rules: Rules = Depends(get_rules),
    time_port: TimePort = Depends(get_time_port),
) -> DedupeService:
    store = SQLiteDedupeStore(settings.db_path, time_port=time_port)
    return create_dedupe_service(store=store, config=rules.analytics.dedupe.to_config())


# --- Component Services ---
def get_ingestion_service(
    event_log: SQLiteEventLogRepo = Depends(get_event_log),
    registry: SQLiteRegistryRepo = Depends(get_registry),
    rollup_repo: SQLiteRollupRepo = Depends(get_rollup_repo),
    dedupe: DedupeService = Depends(get_dedupe_service),
    cache: ResultCache | NullResultCache = Depends(get_result_cache),
    time_port: TimePort = Depends(get_time_port),
    rules: Rules = Depends(get_rules),
) -> AnalyticsIngestionService:
    """Get analytics ingestion service."""
    return create_analytics_ingestion_service(
        event_log=event_log,
        registry=registry,
        rollup_repo=rollup_repo,
        dedupe=dedupe,
        cache=cache,
        time_port=time_port,
        config=rules.analytics.ingest.to_config(),
    )


def get_query_engine(
    event_log: SQLiteEventLogRepo = Depends(get_event_log),
    registry: SQLiteRegistryRepo = Depends(get_registry),
    rules: Rules = Depends(get_rules),
) -> AnalyticsQueryEngine:
    """Get analytics query engine."""
    return create_query_engine(
        event_log=event_log,
        registry=registry,
        config=rules.analytics.query.to_config(),
    )
