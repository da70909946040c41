from __future__ import annotations

from datetime import date, datetime
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError, field_validator, model_validator

from routepulse.errors import ValidationError
from routepulse.utils.numbers import finite_float, truncate_int


def _numeric_id(value: Any) -> Any:
    parsed = truncate_int(value)
    return value if parsed is None else parsed


def _build(model: type[BaseModel], row: Mapping[str, Any]) -> Any:
    try:
        return model.model_validate(dict(row))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model.__name__} row: {exc}") from exc


class TrafficSample(BaseModel):
    """One travel-time measurement for a route (the `traffic_analytics` record)."""

    timestamp: datetime
    route_id: int
    traffic_density: Optional[float] = None
    duration: Optional[int] = None
    duration_in_traffic: Optional[int] = None
    distance: Optional[int] = None
    status: Optional[str] = None

    @field_validator("route_id", mode="before")
    @classmethod
    def _coerce_route_id(cls, value: Any) -> Any:
        return _numeric_id(value)

    @field_validator("duration", "duration_in_traffic", "distance", mode="before")
    @classmethod
    def _coerce_int_measurements(cls, value: Any) -> Optional[int]:
        return truncate_int(value)

    @field_validator("traffic_density", mode="before")
    @classmethod
    def _coerce_density(cls, value: Any) -> Optional[float]:
        return finite_float(value)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "TrafficSample":
        return _build(cls, row)


class WeeklyRouteSummary(BaseModel):
    """Rollup of one route's samples over one week (the `route_weekly_summary` record)."""

    week_start: date
    route_id: int
    sample_count: int
    avg_traffic_density: Optional[float] = None
    min_traffic_density: Optional[float] = None
    max_traffic_density: Optional[float] = None
    avg_duration_seconds: Optional[float] = None
    avg_duration_in_traffic_seconds: Optional[float] = None
    avg_traffic_penalty_fraction: Optional[float] = None
    total_distance_meters: Optional[int] = None
    avg_speed_kmh: Optional[float] = None
    peak_hour: Optional[int] = None

    @field_validator("route_id", mode="before")
    @classmethod
    def _coerce_route_id(cls, value: Any) -> Any:
        return _numeric_id(value)

    @field_validator("total_distance_meters", "peak_hour", mode="before")
    @classmethod
    def _coerce_int_measurements(cls, value: Any) -> Optional[int]:
        return truncate_int(value)

    @field_validator(
        "avg_traffic_density",
        "min_traffic_density",
        "max_traffic_density",
        "avg_duration_seconds",
        "avg_duration_in_traffic_seconds",
        "avg_traffic_penalty_fraction",
        "avg_speed_kmh",
        mode="before",
    )
    @classmethod
    def _coerce_float_measurements(cls, value: Any) -> Optional[float]:
        return finite_float(value)

    @model_validator(mode="after")
    def _check_invariants(self) -> "WeeklyRouteSummary":
        if self.sample_count < 1:
            raise ValueError("sample_count must be >= 1 for an existing rollup row")
        low, mean, high = self.min_traffic_density, self.avg_traffic_density, self.max_traffic_density
        if low is not None and high is not None and low > high:
            raise ValueError("min_traffic_density must be <= max_traffic_density")
        if mean is not None and low is not None and mean < low:
            raise ValueError("avg_traffic_density must be >= min_traffic_density")
        if mean is not None and high is not None and mean > high:
            raise ValueError("avg_traffic_density must be <= max_traffic_density")
        if self.peak_hour is not None and not 0 <= self.peak_hour <= 23:
            raise ValueError("peak_hour must be within 0..23")
        return self

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "WeeklyRouteSummary":
        return _build(cls, row)


class RouteSummary(BaseModel):
    route_id: int
    overall_avg_density: Optional[float] = None
    peak_density: Optional[float] = None
    lowest_density: Optional[float] = None
    avg_speed: Optional[float] = None
    total_samples: int = 0
