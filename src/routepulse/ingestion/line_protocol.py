"""Line-protocol encoder for QuestDB ingestion.

One record becomes one text line:

    measurement,tag1=v1,tag2=v2 field1=1.2345,field2=42i,field3="text" 1700000000000000000

Rules owned by this module:
- Tags are integer identifiers. A required tag (the route id) must be present and numeric; a
  negative id is written as its absolute value.
- Integer fields are coerced with a truncating parse and carry an `i` suffix.
- Float fields are rounded half-up to a per-field precision (2 or 4 places in practice).
- A numeric field that is missing, NaN or infinite is omitted from the line. A field marked
  `required` (the sample counts) is never omitted: an invalid value rejects the record instead.
- Names, tag values and string field values are escaped so they cannot break the line grammar.
- Timestamps are nanoseconds since the epoch, computed as `milliseconds * 1_000_000`.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Optional, Sequence
from zoneinfo import ZoneInfo

from routepulse.errors import ValidationError
from routepulse.ingestion.schemas import TrafficSample, WeeklyRouteSummary
from routepulse.utils.numbers import finite_float, truncate_int
from routepulse.utils.time import DEFAULT_TZ, epoch_millis, local_midnight, parse_datetime

INT = "int"
FLOAT = "float"
STRING = "string"

DEFAULT_FLOAT_PRECISION = 4


@dataclass(frozen=True)
class FieldSpec:
    kind: str
    precision: int = DEFAULT_FLOAT_PRECISION
    required: bool = False


@dataclass(frozen=True)
class MeasurementSchema:
    name: str
    fields: Mapping[str, FieldSpec] = field(default_factory=dict)
    required_tags: tuple[str, ...] = ("route_id",)


TRAFFIC_ANALYTICS = MeasurementSchema(
    name="traffic_analytics",
    fields={
        "traffic_density": FieldSpec(FLOAT, precision=4),
        "duration": FieldSpec(INT),
        "duration_in_traffic": FieldSpec(INT),
        "distance": FieldSpec(INT),
        "status": FieldSpec(STRING),
    },
)

ROUTE_WEEKLY_SUMMARY = MeasurementSchema(
    name="route_weekly_summary",
    fields={
        "week_start": FieldSpec(STRING),
        "sample_count": FieldSpec(INT, required=True),
        "avg_traffic_density": FieldSpec(FLOAT, precision=4),
        "min_traffic_density": FieldSpec(FLOAT, precision=4),
        "max_traffic_density": FieldSpec(FLOAT, precision=4),
        "avg_duration_seconds": FieldSpec(INT),
        "avg_duration_in_traffic_seconds": FieldSpec(INT),
        "avg_traffic_penalty_fraction": FieldSpec(FLOAT, precision=4),
        "total_distance_meters": FieldSpec(INT),
        "avg_speed_kmh": FieldSpec(FLOAT, precision=2),
        "peak_hour": FieldSpec(INT),
    },
)

BOOKING_DAILY_COUNTS = MeasurementSchema(
    name="booking_daily_counts",
    fields={"total_bookings": FieldSpec(INT, required=True)},
)

BOOKING_FORECASTS = MeasurementSchema(
    name="booking_forecasts",
    fields={
        "target_day": FieldSpec(STRING),
        "predicted_count": FieldSpec(INT, required=True),
        "confidence": FieldSpec(FLOAT, precision=4),
    },
)

ROUTE_TRAFFIC_FORECASTS = MeasurementSchema(
    name="route_traffic_forecasts",
    fields={
        "hour": FieldSpec(INT, required=True),
        "predicted_density": FieldSpec(FLOAT, precision=4),
        "confidence": FieldSpec(FLOAT, precision=4),
        "expected_duration_seconds": FieldSpec(INT),
    },
)

MEASUREMENTS: Mapping[str, MeasurementSchema] = {
    schema.name: schema
    for schema in (
        TRAFFIC_ANALYTICS,
        ROUTE_WEEKLY_SUMMARY,
        BOOKING_DAILY_COUNTS,
        BOOKING_FORECASTS,
        ROUTE_TRAFFIC_FORECASTS,
    )
}


def _escape_measurement(name: str) -> str:
    return (
        name.replace("\\", "\\\\")
        .replace(",", "\\,")
        .replace(" ", "\\ ")
        .replace("\n", "\\n")
    )


def _escape_key(text: str) -> str:
    return _escape_measurement(text).replace("=", "\\=")


def _escape_string_value(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def round_half_up(value: float, precision: int) -> float:
    factor = 10**precision
    scaled = value * factor
    if not math.isfinite(scaled):
        return value
    return math.floor(scaled + 0.5) / factor


def _infer_spec(value: Any) -> Optional[FieldSpec]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return FieldSpec(INT)
    if isinstance(value, str):
        return FieldSpec(STRING)
    return FieldSpec(FLOAT)


def _field_token(key: str, value: Any, spec: FieldSpec) -> Optional[str]:
    if spec.kind == INT:
        parsed = truncate_int(value)
        return None if parsed is None else f"{_escape_key(key)}={parsed}i"
    if spec.kind == FLOAT:
        number = finite_float(value)
        if number is None:
            return None
        return f"{_escape_key(key)}={round_half_up(number, spec.precision)!r}"
    if spec.kind == STRING:
        if value is None:
            return None
        return f'{_escape_key(key)}="{_escape_string_value(str(value))}"'
    raise ValueError(f"Unknown field kind: {spec.kind}")


def timestamp_nanos(value: Any, tz: ZoneInfo = DEFAULT_TZ) -> int:
    """Return the epoch-nanosecond timestamp for `value` (millisecond resolution)."""

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = local_midnight(value, tz)
    elif isinstance(value, str):
        try:
            dt = parse_datetime(value, tz)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    else:
        raise ValidationError(f"Invalid timestamp: {value!r}")

    try:
        millis = epoch_millis(dt, tz)
    except (OverflowError, ValueError) as exc:
        raise ValidationError(f"Invalid timestamp: {value!r}") from exc
    return millis * 1_000_000


def encode_line(
    measurement: str,
    tags: Mapping[str, Any],
    fields: Mapping[str, Any],
    timestamp: Any,
    *,
    schema: Optional[MeasurementSchema] = None,
    required_tags: Optional[Sequence[str]] = None,
    tz: ZoneInfo = DEFAULT_TZ,
) -> str:
    """Encode one record into a single line-protocol line, raising ValidationError when invalid.

    Field types come from `schema`, or from the registered schema for `measurement`; only fields of
    an unregistered measurement have their type inferred from the Python value.
    """

    if not measurement:
        raise ValidationError("Measurement name is required")
    if schema is None:
        schema = MEASUREMENTS.get(measurement)

    needed = tuple(required_tags) if required_tags is not None else (
        schema.required_tags if schema is not None else ("route_id",)
    )
    for key in needed:
        if tags.get(key) is None:
            raise ValidationError(f"Invalid data: {key} is required")

    tag_tokens: list[str] = []
    for key, value in tags.items():
        if value is None:
            continue
        parsed = truncate_int(value)
        if parsed is None:
            raise ValidationError(f"Invalid {key}: must be numeric, got {value!r}")
        tag_tokens.append(f"{_escape_key(key)}={abs(parsed)}")

    ts_nanos = timestamp_nanos(timestamp, tz)

    specs = schema.fields if schema is not None else {}
    for name, spec in specs.items():
        if spec.required and name not in fields:
            raise ValidationError(f"Invalid data: {name} is required")

    field_tokens: list[str] = []
    for key, value in fields.items():
        spec = specs.get(key) or _infer_spec(value)
        if spec is None:
            continue
        token = _field_token(key, value, spec)
        if token is None:
            if spec.required:
                raise ValidationError(f"Invalid value for {key}: {value!r}")
            continue
        field_tokens.append(token)

    if not field_tokens:
        raise ValidationError("No valid fields found in data")

    head = _escape_measurement(measurement)
    if tag_tokens:
        head = f"{head},{','.join(tag_tokens)}"
    return f"{head} {','.join(field_tokens)} {ts_nanos}"


def encode_record(
    schema: MeasurementSchema,
    tags: Mapping[str, Any],
    fields: Mapping[str, Any],
    timestamp: Any,
    *,
    tz: ZoneInfo = DEFAULT_TZ,
) -> str:
    return encode_line(schema.name, tags, fields, timestamp, schema=schema, tz=tz)


def encode_lines(lines: Iterable[str]) -> str:
    return "\n".join(lines)


def encode_sample(sample: TrafficSample, *, tz: ZoneInfo = DEFAULT_TZ) -> str:
    return encode_record(
        TRAFFIC_ANALYTICS,
        {"route_id": sample.route_id},
        {
            "traffic_density": sample.traffic_density,
            "duration": sample.duration,
            "duration_in_traffic": sample.duration_in_traffic,
            "distance": sample.distance,
            "status": sample.status,
        },
        sample.timestamp,
        tz=tz,
    )


def encode_samples(samples: Iterable[TrafficSample], *, tz: ZoneInfo = DEFAULT_TZ) -> str:
    return encode_lines(encode_sample(sample, tz=tz) for sample in samples)


def encode_weekly_summary(row: WeeklyRouteSummary, *, tz: ZoneInfo = DEFAULT_TZ) -> str:
    # Weekly rows are stamped at Monday midnight local time.
    fields = row.model_dump(exclude={"route_id"})
    fields["week_start"] = row.week_start.isoformat()
    return encode_record(ROUTE_WEEKLY_SUMMARY, {"route_id": row.route_id}, fields, row.week_start, tz=tz)
