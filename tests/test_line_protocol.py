from __future__ import annotations

import math
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from routepulse.errors import ValidationError
from routepulse.ingestion.line_protocol import (
    BOOKING_DAILY_COUNTS,
    encode_line,
    encode_record,
    encode_sample,
    encode_samples,
    encode_weekly_summary,
    round_half_up,
    truncate_int,
)
from routepulse.ingestion.schemas import TrafficSample, WeeklyRouteSummary

UTC_2024 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)
UTC_2024_NANOS = 1_704_067_200_000_000_000


def _parse_line(line: str) -> tuple[str, dict[str, str], dict[str, str], int]:
    head, fields, ts = line.split(" ")
    measurement, *tag_parts = head.split(",")
    tags = dict(part.split("=", 1) for part in tag_parts)
    values = dict(part.split("=", 1) for part in fields.split(","))
    return measurement, tags, values, int(ts)


def test_sample_round_trips_within_precision() -> None:
    sample = TrafficSample(
        timestamp=UTC_2024,
        route_id=12,
        traffic_density=0.123456,
        duration=600,
        duration_in_traffic=720,
        distance=5400,
        status="OK",
    )
    measurement, tags, fields, ts = _parse_line(encode_sample(sample))

    assert measurement == "traffic_analytics"
    assert tags == {"route_id": "12"}
    assert abs(float(fields["traffic_density"]) - 0.123456) <= 0.5e-4
    assert fields["duration"] == "600i"
    assert fields["duration_in_traffic"] == "720i"
    assert fields["distance"] == "5400i"
    assert fields["status"] == '"OK"'
    assert ts == UTC_2024_NANOS


def test_sample_keeps_record_when_optional_values_are_not_clean() -> None:
    sample = TrafficSample.from_row(
        {
            "timestamp": UTC_2024,
            "route_id": "12",
            "traffic_density": Decimal("0.31"),
            "duration": 612.7,
            "duration_in_traffic": Decimal("700.50"),
            "distance": float("nan"),
            "status": "OK",
        }
    )
    assert sample.duration == 612
    assert sample.duration_in_traffic == 700
    assert sample.distance is None

    _, tags, fields, _ = _parse_line(encode_sample(sample))
    assert tags == {"route_id": "12"}
    assert fields["duration"] == "612i"
    assert fields["duration_in_traffic"] == "700i"
    assert fields["traffic_density"] == "0.31"
    assert "distance" not in fields


def test_sample_still_requires_a_numeric_route_id() -> None:
    with pytest.raises(ValidationError):
        TrafficSample.from_row({"timestamp": UTC_2024, "route_id": "abc", "duration": 1})


def test_naive_timestamp_is_local_manila_time() -> None:
    line = encode_line("m", {"route_id": 1}, {"v": 1.5}, datetime(2024, 1, 1, 8, 0))
    assert line.endswith(f" {UTC_2024_NANOS}")


def test_date_timestamp_is_local_midnight() -> None:
    line = encode_record(BOOKING_DAILY_COUNTS, {"route_id": 0}, {"total_bookings": 4}, date(2024, 1, 1))
    assert line == "booking_daily_counts,route_id=0 total_bookings=4i 1704038400000000000"


def test_nan_field_is_omitted_and_others_kept() -> None:
    line = encode_line(
        "traffic_analytics",
        {"route_id": 3},
        {"traffic_density": float("nan"), "duration": 120, "distance": math.inf},
        UTC_2024,
    )
    _, _, fields, _ = _parse_line(line)
    assert fields == {"duration": "120i"}


def test_negative_route_id_uses_absolute_value() -> None:
    line = encode_line("traffic_analytics", {"route_id": -7}, {"duration": 1}, UTC_2024)
    assert line.startswith("traffic_analytics,route_id=7 ")


def test_integer_fields_are_truncated() -> None:
    line = encode_line("traffic_analytics", {"route_id": "4"}, {"duration": 12.9}, UTC_2024)
    assert " duration=12i " in line
    assert truncate_int("-3.7") == -3
    assert truncate_int("abc") is None
    assert truncate_int(True) is None


def test_registered_measurement_types_apply_without_schema() -> None:
    line = encode_line(
        "route_weekly_summary",
        {"route_id": 3},
        {"sample_count": 7.9, "avg_speed_kmh": 31.456, "peak_hour": "8"},
        UTC_2024,
    )
    _, _, fields, _ = _parse_line(line)
    assert fields == {"sample_count": "7i", "avg_speed_kmh": "31.46", "peak_hour": "8i"}

    with pytest.raises(ValidationError):
        encode_line("booking_daily_counts", {"route_id": 0}, {"note": "x"}, UTC_2024)


def test_unregistered_measurement_infers_types() -> None:
    line = encode_line("adhoc", {"route_id": 1}, {"n": 3, "x": 0.123456789}, UTC_2024)
    _, _, fields, _ = _parse_line(line)
    assert fields == {"n": "3i", "x": "0.1235"}


def test_round_half_up() -> None:
    assert round_half_up(31.456, 2) == 31.46
    assert round_half_up(0.00005, 4) == 0.0001
    assert round_half_up(2.5, 0) == 3.0


@pytest.mark.parametrize(
    "tags,fields,timestamp",
    [
        ({}, {"duration": 1}, UTC_2024),
        ({"route_id": None}, {"duration": 1}, UTC_2024),
        ({"route_id": "abc"}, {"duration": 1}, UTC_2024),
        ({"route_id": 1}, {"duration": 1}, "not-a-date"),
        ({"route_id": 1}, {"duration": None, "traffic_density": float("nan")}, UTC_2024),
    ],
)
def test_invalid_records_raise_validation_error(tags, fields, timestamp) -> None:
    with pytest.raises(ValidationError):
        encode_line("traffic_analytics", tags, fields, timestamp)


def test_required_count_field_is_never_omitted() -> None:
    with pytest.raises(ValidationError):
        encode_record(BOOKING_DAILY_COUNTS, {"route_id": 0}, {"total_bookings": float("nan")}, UTC_2024)
    with pytest.raises(ValidationError):
        encode_record(BOOKING_DAILY_COUNTS, {"route_id": 0}, {}, UTC_2024)


def test_escaping_names_and_strings() -> None:
    line = encode_line(
        "my measure,x",
        {"route_id": 1},
        {"status": 'he said "hi"\nbye', "odd key": "a\\b"},
        UTC_2024,
    )
    assert line.startswith("my\\ measure\\,x,route_id=1 ")
    assert 'status="he said \\"hi\\"\\nbye"' in line
    assert 'odd\\ key="a\\\\b"' in line
    assert "\n" not in line


def test_batch_is_newline_joined() -> None:
    samples = [
        TrafficSample(timestamp=UTC_2024, route_id=1, traffic_density=0.1),
        TrafficSample(timestamp=UTC_2024, route_id=2, traffic_density=0.2),
    ]
    body = encode_samples(samples)
    assert body.count("\n") == 1
    assert body.splitlines()[1].startswith("traffic_analytics,route_id=2 ")


def test_weekly_summary_line() -> None:
    row = WeeklyRouteSummary(
        week_start=date(2024, 1, 1),
        route_id=3,
        sample_count=10,
        avg_traffic_density=0.5,
        min_traffic_density=0.2,
        max_traffic_density=0.9,
        avg_speed_kmh=31.456,
        peak_hour=8,
    )
    line = encode_weekly_summary(row)
    measurement, tags, fields, ts = _parse_line(line)

    assert measurement == "route_weekly_summary"
    assert tags == {"route_id": "3"}
    assert fields["week_start"] == '"2024-01-01"'
    assert fields["sample_count"] == "10i"
    assert fields["avg_speed_kmh"] == "31.46"
    assert fields["peak_hour"] == "8i"
    assert "avg_duration_seconds" not in fields
    assert ts == 1_704_038_400_000_000_000


def test_weekly_summary_rejects_inconsistent_rollup() -> None:
    with pytest.raises(ValidationError):
        WeeklyRouteSummary.from_row(
            {
                "week_start": date(2024, 1, 1),
                "route_id": 3,
                "sample_count": 2,
                "avg_traffic_density": 0.95,
                "min_traffic_density": 0.2,
                "max_traffic_density": 0.9,
            }
        )
    with pytest.raises(ValidationError):
        WeeklyRouteSummary.from_row({"week_start": date(2024, 1, 1), "route_id": 3, "sample_count": 0})
