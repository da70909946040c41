from __future__ import annotations

from typing import Any

from routepulse.errors import ValidationError
from routepulse.utils.numbers import truncate_int


TRAFFIC_ANALYTICS_DDL = """
CREATE TABLE IF NOT EXISTS traffic_analytics (
    timestamp TIMESTAMP,
    route_id INT,
    traffic_density DOUBLE,
    duration INT,
    duration_in_traffic INT,
    distance INT,
    status STRING
) timestamp(timestamp) PARTITION BY DAY
"""

ROUTE_WEEKLY_SUMMARY_DDL = """
CREATE TABLE IF NOT EXISTS route_weekly_summary (
    timestamp TIMESTAMP,
    route_id INT,
    week_start STRING,
    sample_count INT,
    avg_traffic_density DOUBLE,
    min_traffic_density DOUBLE,
    max_traffic_density DOUBLE,
    avg_duration_seconds INT,
    avg_duration_in_traffic_seconds INT,
    avg_traffic_penalty_fraction DOUBLE,
    total_distance_meters LONG,
    avg_speed_kmh DOUBLE,
    peak_hour INT
) timestamp(timestamp) PARTITION BY DAY
"""

BOOKING_DAILY_COUNTS_DDL = """
CREATE TABLE IF NOT EXISTS booking_daily_counts (
    day TIMESTAMP,
    route_id INT,
    total_bookings LONG
) timestamp(day) PARTITION BY DAY
"""

BOOKING_FORECASTS_DDL = """
CREATE TABLE IF NOT EXISTS booking_forecasts (
    forecast_date TIMESTAMP,
    target_day STRING,
    route_id INT,
    predicted_count LONG,
    confidence DOUBLE
) timestamp(forecast_date) PARTITION BY DAY
"""

ROUTE_TRAFFIC_FORECASTS_DDL = """
CREATE TABLE IF NOT EXISTS route_traffic_forecasts (
    forecast_date TIMESTAMP,
    route_id INT,
    hour INT,
    predicted_density DOUBLE,
    confidence DOUBLE,
    expected_duration_seconds INT
) timestamp(forecast_date) PARTITION BY DAY
"""


def sql_literal(text: str) -> str:
    return "'" + str(text).replace("'", "''") + "'"


def sql_int(value: Any) -> int:
    """Coerce a computed value into an integer before it is placed in generated SQL."""

    parsed = truncate_int(value)
    if parsed is None:
        raise ValidationError(f"Expected an integer SQL parameter, got {value!r}")
    return parsed
