from __future__ import annotations

import argparse

from routepulse.logging_config import configure_logging
from routepulse.pipeline import build_pipeline
from routepulse.settings import load_config


def main() -> None:
    parser = argparse.ArgumentParser(description="Aggregate one past week of samples into route_weekly_summary.")
    parser.add_argument("--config", default=None)
    parser.add_argument(
        "--week-offset",
        type=int,
        default=1,
        help="How many weeks before the current week to summarize (1 = last week).",
    )
    args = parser.parse_args()
    if args.week_offset < 0:
        raise SystemExit("--week-offset must be >= 0")

    configure_logging()
    pipeline = build_pipeline(load_config(args.config))
    try:
        result = pipeline.process_weekly_rollup(args.week_offset)
    finally:
        pipeline.close()
    print(f"Week offset {result.week_offset}: {result.rows_processed} route summaries written")


if __name__ == "__main__":
    main()
