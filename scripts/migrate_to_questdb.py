from __future__ import annotations

import argparse
import json
import sys
from dataclasses import asdict
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from routepulse.errors import RoutePulseError, classify_error
from routepulse.logging_config import configure_logging
from routepulse.migration.ledger import read_latest_ledger_entry
from routepulse.migration.migrator import MigrationOptions
from routepulse.pipeline import build_pipeline
from routepulse.settings import load_config
from routepulse.utils.time import parse_datetime


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backfill historical traffic samples from PostgreSQL into QuestDB in batches."
    )
    parser.add_argument("--config", default=None, help="Path to a config YAML (defaults to configs/config.yaml).")
    parser.add_argument("--dry-run", action="store_true", help="Count and read rows without writing to QuestDB.")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per batch (default from config).")
    parser.add_argument("--start-date", default=None, help="Only migrate samples at/after this ISO datetime.")
    parser.add_argument("--end-date", default=None, help="Only migrate samples at/before this ISO datetime.")
    parser.add_argument(
        "--route-ids",
        default=None,
        help="Comma-separated route ids to migrate (default: all routes).",
    )
    parser.add_argument(
        "--weekly-summaries",
        action="store_true",
        help="Also generate weekly route summaries after the row migration.",
    )
    parser.add_argument("--resume", action="store_true", help="Resume from the saved checkpoint when filters match.")
    parser.add_argument("--validate", action="store_true", help="Print destination statistics after migrating.")
    parser.add_argument("--validate-only", action="store_true", help="Only print destination statistics.")
    parser.add_argument("--status", action="store_true", help="Print the latest migration ledger entry and exit.")
    return parser.parse_args()


def _parse_date(value: Optional[str], tz_name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_datetime(value, ZoneInfo(tz_name))
    except ValueError as exc:
        raise SystemExit(f"Invalid date: {value!r}") from exc


def _parse_route_ids(value: Optional[str]) -> tuple[int, ...]:
    if not value:
        return ()
    try:
        return tuple(int(item.strip()) for item in value.split(",") if item.strip())
    except ValueError as exc:
        raise SystemExit(f"--route-ids must be comma-separated integers, got {value!r}") from exc


def main() -> None:
    args = parse_args()
    configure_logging()

    config = load_config(args.config)
    if args.status:
        entry = read_latest_ledger_entry(config.migration.ledger_path) if config.migration.ledger_path else None
        print(json.dumps(entry, indent=2) if entry else "No migration ledger entries found.")
        return

    options = MigrationOptions(
        dry_run=bool(args.dry_run),
        batch_size=int(args.batch_size or config.migration.batch_size),
        start_date=_parse_date(args.start_date, config.app.timezone),
        end_date=_parse_date(args.end_date, config.app.timezone),
        route_ids=_parse_route_ids(args.route_ids),
        include_weekly_summaries=bool(args.weekly_summaries),
        resume=bool(args.resume),
    )

    pipeline = build_pipeline(config)
    try:
        if not args.validate_only:
            result = pipeline.run_migration(options)
            print(json.dumps(result.as_dict(), indent=2, default=str))
        if args.validate or args.validate_only:
            validation = pipeline.validate_migration()
            print(json.dumps(asdict(validation), indent=2, default=str))
    except RoutePulseError as exc:
        info = classify_error(exc)
        print(f"Migration failed [{info.code}]: {info.message}", file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        pipeline.close()


if __name__ == "__main__":
    main()
