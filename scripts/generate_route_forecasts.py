from __future__ import annotations

import argparse
from typing import Optional

from routepulse.logging_config import configure_logging
from routepulse.pipeline import build_pipeline
from routepulse.settings import load_config


def _parse_route_ids(raw: Optional[str]) -> Optional[list[int]]:
    if not raw:
        return None
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError as exc:
        raise SystemExit(f"--route-ids must be comma-separated integers: {raw}") from exc


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Generate 24-hour traffic forecasts per route and store them in route_traffic_forecasts."
    )
    parser.add_argument("--config", default=None)
    parser.add_argument(
        "--route-ids",
        default=None,
        help="Comma-separated route ids (default: routes with samples in the lookback window).",
    )
    args = parser.parse_args()
    route_ids = _parse_route_ids(args.route_ids)

    configure_logging()
    pipeline = build_pipeline(load_config(args.config))
    try:
        stored = pipeline.generate_route_forecasts(route_ids)
    finally:
        pipeline.close()
    print(f"Stored forecasts for {stored} routes")


if __name__ == "__main__":
    main()
