import argparse
import json
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

from src.adapters.clock import SystemClock
from src.adapters.sqlite.migrator import SQLiteMigrator
from src.adapters.sqlite_db import SQLiteEventLogRepo, SQLiteRegistryRepo, SQLiteRollupRepo
from src.components.analytics import (
    AnalyticsError,
    DashboardQueryInput,
    RollupUpdater,
    create_query_engine,
    run_query_dashboard,
)
from src.core.entities import COUNTER_FIELDS, Identity, Scope
from src.rules.loader import load_rules
from src.rules.models import Rules

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cli")

DATA_DIR = os.environ.get("ENGAGE_DATA_DIR", "./data")
RULES_PATH = os.environ.get("ENGAGE_RULES_PATH", "rules.yaml")


def get_db_path() -> str:
    Path(DATA_DIR).mkdir(parents=True, exist_ok=True)
    return str(Path(DATA_DIR) / "engage.db")


def get_rules() -> Rules:
    if not Path(RULES_PATH).exists():
        logger.error("Rules file %s not found.", RULES_PATH)
        sys.exit(1)
    return load_rules(Path(RULES_PATH))


def handle_migrate(db_path: str) -> None:
    applied = SQLiteMigrator(db_path).run_migrations()
    print(f"Applied {len(applied)} migration(s).")


def handle_rebuild(db_path: str, args: argparse.Namespace) -> None:
    registry = SQLiteRegistryRepo(db_path)
    identity = registry.resolve_identity(args.identity)
    if identity is None:
        logger.error("Identity %s not found.", args.identity)
        sys.exit(1)

    updater = RollupUpdater(SQLiteRollupRepo(db_path))
    counters = updater.rebuild(identity.id, SQLiteEventLogRepo(db_path), registry)
    for name in COUNTER_FIELDS:
        print(f"{name}: {getattr(counters, name)}")


def handle_purge(db_path: str, rules: Rules, args: argparse.Namespace) -> None:
    days = args.days or rules.analytics.retention.days
    if not days:
        logger.error("No retention configured. Pass --days or set analytics.retention.days.")
        sys.exit(1)

    cutoff = SystemClock().now_utc() - timedelta(days=days)
    removed = SQLiteEventLogRepo(db_path).purge_before(cutoff)
    print(f"Purged {removed} event(s) older than {days} day(s).")


def handle_seed_identity(db_path: str, args: argparse.Namespace) -> None:
    identity = SQLiteRegistryRepo(db_path).save_identity(
        Identity(id=args.identity_id, username=args.username)
    )
    print(f"Identity {identity.id} saved.")


def handle_seed_scope(db_path: str, args: argparse.Namespace) -> None:
    registry = SQLiteRegistryRepo(db_path)
    if registry.get_identity(args.identity_id) is None:
        logger.error("Identity %s not found.", args.identity_id)
        sys.exit(1)
    scope = registry.save_scope(
        Scope(
            identity_id=args.identity_id,
            scope_id=args.scope_id,
            name=args.name,
            campaign_type=args.campaign_type,
        )
    )
    print(f"Scope {scope.identity_id}/{scope.scope_id} saved.")


def handle_stats(db_path: str, rules: Rules, args: argparse.Namespace) -> None:
    engine = create_query_engine(
        event_log=SQLiteEventLogRepo(db_path),
        registry=SQLiteRegistryRepo(db_path),
        config=rules.analytics.query.to_config(),
    )
    out = run_query_dashboard(
        DashboardQueryInput(identity_id=args.identity, scope_id=args.scope, period=args.period),
        engine=engine,
        time_port=SystemClock(),
    )

    print(
        f"Period: {out.period.days} day(s) "
        f"{out.period.start_date.isoformat()} .. {out.period.end_date.isoformat()}"
    )
    for item in out.summary:
        print(f"  {item.kind}: {item.count}")
    funnel = out.funnel
    print(
        json.dumps(
            {
                "scans": funnel.scans,
                "video_views": funnel.video_views,
                "link_clicks": funnel.link_clicks,
                "ar_starts": funnel.ar_starts,
                "overall_conversion": funnel.overall_conversion,
            },
            indent=2,
        )
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Campaign Engagement Analytics CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # migrate
    subparsers.add_parser("migrate", help="Apply pending schema migrations")

    # rebuild-rollups
    rebuild_parser = subparsers.add_parser(
        "rebuild-rollups", help="Recompute rollup counters from the event log"
    )
    rebuild_parser.add_argument("identity", help="Identity id or username")

    # purge-events
    purge_parser = subparsers.add_parser("purge-events", help="Delete events past retention")
    purge_parser.add_argument("--days", type=int, help="Override analytics.retention.days")

    # seed-identity
    identity_parser = subparsers.add_parser("seed-identity", help="Create or update an identity")
    identity_parser.add_argument("identity_id")
    identity_parser.add_argument("--username")

    # seed-scope
    scope_parser = subparsers.add_parser("seed-scope", help="Create or update a scope")
    scope_parser.add_argument("identity_id")
    scope_parser.add_argument("scope_id")
    scope_parser.add_argument("--name")
    scope_parser.add_argument("--campaign-type", dest="campaign_type")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Print a dashboard summary")
    stats_parser.add_argument("identity", help="Identity id or username")
    stats_parser.add_argument("--scope")
    stats_parser.add_argument("--period", help="Window such as 7d (default from rules)")

    args = parser.parse_args()

    rules = get_rules()
    db_path = get_db_path()

    try:
        if args.command == "migrate":
            handle_migrate(db_path)
        elif args.command == "rebuild-rollups":
            handle_rebuild(db_path, args)
        elif args.command == "purge-events":
            handle_purge(db_path, rules, args)
        elif args.command == "seed-identity":
            handle_seed_identity(db_path, args)
        elif args.command == "seed-scope":
            handle_seed_scope(db_path, args)
        elif args.command == "stats":
            handle_stats(db_path, rules, args)
    except AnalyticsError as e:
        logger.error("%s failed: %s", args.command, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
