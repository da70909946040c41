from __future__ import annotations

import argparse
import json

from routepulse.logging_config import configure_logging
from routepulse.pipeline import build_pipeline
from routepulse.settings import load_config


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seven-day booking forecast (weekday baseline + trend).")
    parser.add_argument("--config", default=None)
    parser.add_argument("--history-days", type=int, default=None, help="Days of history (default from config).")
    parser.add_argument("--route-id", type=int, default=None, help="Forecast a single route (default: network-wide).")
    parser.add_argument("--persist", action="store_true", help="Write daily counts and the forecast to QuestDB.")
    parser.add_argument("--latest", action="store_true", help="Print the latest persisted forecast set and exit.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging()

    pipeline = build_pipeline(load_config(args.config))
    try:
        service = pipeline.bookings
        if args.latest:
            points = service.latest_forecast()
            print(json.dumps([point.as_dict() for point in points], indent=2))
            return

        result = pipeline.forecast(args.route_id, args.history_days)
        print(json.dumps(result.as_dict()["forecast"], indent=2))

        if args.persist:
            counts = service.persist_daily_counts(args.history_days, args.route_id)
            rows, generated_at = service.persist_forecast(args.history_days, args.route_id)
            print(f"Persisted {counts} daily counts and {rows} forecast rows (generated {generated_at.isoformat()})")
    finally:
        pipeline.close()


if __name__ == "__main__":
    main()
