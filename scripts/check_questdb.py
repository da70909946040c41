from __future__ import annotations

import argparse
import sys

from routepulse.errors import RoutePulseError, classify_error
from routepulse.logging_config import configure_logging
from routepulse.settings import load_config, require_questdb
from routepulse.storage.questdb_gateway import QuestDBHttpGateway

TABLES = (
    "traffic_analytics",
    "route_weekly_summary",
    "booking_daily_counts",
    "booking_forecasts",
    "route_traffic_forecasts",
)


def main() -> None:
    parser = argparse.ArgumentParser(description="Check QuestDB connectivity and report table row counts.")
    parser.add_argument("--config", default=None)
    args = parser.parse_args()

    configure_logging()
    config = load_config(args.config)
    require_questdb(config)

    with QuestDBHttpGateway.from_config(config) as gateway:
        try:
            gateway.ping()
        except RoutePulseError as exc:
            info = classify_error(exc)
            print(f"QuestDB unreachable [{info.code}]: {info.message}", file=sys.stderr)
            raise SystemExit(1) from exc
        print(f"QuestDB reachable at {config.questdb.http_endpoint}")

        for table in TABLES:
            try:
                row = gateway.execute(f"SELECT count() AS count FROM {table}").first()
            except RoutePulseError as exc:
                print(f"- {table}: unavailable ({classify_error(exc).code})")
                continue
            print(f"- {table}: {row[0] if row else 0} rows")


if __name__ == "__main__":
    main()
