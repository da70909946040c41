"""Hour-of-day traffic density forecasts.

Two forecasters share `predict_key_hours(route_id, now=None)`:
- `HistoricalForecaster` looks up the average density per local hour over a lookback window in
  QuestDB and falls back to the static bands for hours with no rows.
- `HeuristicForecaster` only uses the static bands. It is chosen when no time-series store is
  configured.

Confidence curves differ per call site and are kept separate:
- key-hour predictions: `min(0.9, 0.3 + 0.1 * n)`
- 24-hour route forecasts: `min(0.95, 0.4 + 0.05 * n)`
Any fallback value has confidence 0.3.

The key-hour curve applies to any hour with history, however few rows it has. There is no minimum
sample threshold (an older rule only used the curve above five data points), so confidence stays
monotone in the number of data points.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Mapping, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from routepulse.ingestion.line_protocol import ROUTE_TRAFFIC_FORECASTS, encode_lines, encode_record
from routepulse.settings import AppConfig
from routepulse.storage.questdb_gateway import TimeSeriesGateway, cell_float, cell_int
from routepulse.storage.tables import ROUTE_TRAFFIC_FORECASTS_DDL, sql_int, sql_literal
from routepulse.utils.time import DEFAULT_TZ, utc_now

logger = logging.getLogger(__name__)

DEFAULT_KEY_HOURS = (7, 9, 12, 17, 19, 22)
FALLBACK_CONFIDENCE = 0.3

HISTORICAL = "historical"
FALLBACK = "fallback"


def default_density_for_hour(hour: int, weekday: int) -> float:
    """Static density band for a local hour; `weekday` follows `date.weekday()` (Monday is 0)."""

    weekend = weekday >= 5
    if 7 <= hour <= 9:
        return 0.4 if weekend else 0.7
    if 17 <= hour <= 19:
        return 0.5 if weekend else 0.8
    if hour >= 22 or hour <= 6:
        return 0.2
    return 0.3


def default_route_density(hour: int) -> float:
    if 7 <= hour <= 9:
        return 0.6
    if 17 <= hour <= 19:
        return 0.7
    if hour >= 23 or hour <= 5:
        return 0.1
    return 0.3


def key_hour_confidence(data_points: int) -> float:
    return min(0.9, 0.3 + 0.1 * max(0, data_points))


def route_hour_confidence(data_points: int) -> float:
    return min(0.95, 0.4 + 0.05 * max(0, data_points))


@dataclass(frozen=True)
class HourlyDensity:
    hour: int
    avg_density: float
    avg_duration_seconds: Optional[float]
    data_points: int


@dataclass(frozen=True)
class HourlyPrediction:
    at: datetime
    hour: int
    predicted_density: float
    confidence: float
    source: str = FALLBACK

    @property
    def time_of_day(self) -> str:
        return f"{self.hour:02d}:00"


@dataclass(frozen=True)
class RouteHourForecast:
    hour: int
    predicted_density: float
    confidence: float
    expected_duration_seconds: int


@dataclass(frozen=True)
class RouteForecast:
    route_id: int
    forecast_date: datetime
    hourly_predictions: tuple[RouteHourForecast, ...] = field(default_factory=tuple)


def predict_key_hours(
    history: Mapping[int, HourlyDensity],
    *,
    now: datetime,
    key_hours: Sequence[int] = DEFAULT_KEY_HOURS,
    horizon_days: int = 7,
    tz: ZoneInfo = DEFAULT_TZ,
) -> list[HourlyPrediction]:
    """Predictions for each key hour of the next `horizon_days` local calendar days."""

    today = now.astimezone(tz).date() if now.tzinfo else now.date()
    predictions: list[HourlyPrediction] = []
    for offset in range(1, int(horizon_days) + 1):
        day: date = today + timedelta(days=offset)
        for hour in key_hours:
            at = datetime(day.year, day.month, day.day, hour, tzinfo=tz)
            row = history.get(hour)
            if row is not None:
                predictions.append(
                    HourlyPrediction(
                        at=at,
                        hour=hour,
                        predicted_density=row.avg_density,
                        confidence=key_hour_confidence(row.data_points),
                        source=HISTORICAL,
                    )
                )
            else:
                predictions.append(
                    HourlyPrediction(
                        at=at,
                        hour=hour,
                        predicted_density=default_density_for_hour(hour, day.weekday()),
                        confidence=FALLBACK_CONFIDENCE,
                    )
                )
    return predictions


class Forecaster(Protocol):
    def predict_key_hours(self, route_id: int, now: Optional[datetime] = None) -> list[HourlyPrediction]: ...


class HeuristicForecaster:
    """Static-band predictions used when there is no time-series history to consult."""

    def __init__(
        self,
        *,
        key_hours: Sequence[int] = DEFAULT_KEY_HOURS,
        horizon_days: int = 7,
        tz: ZoneInfo = DEFAULT_TZ,
    ) -> None:
        self.key_hours = tuple(key_hours)
        self.horizon_days = int(horizon_days)
        self.tz = tz

    def predict_key_hours(self, route_id: int, now: Optional[datetime] = None) -> list[HourlyPrediction]:
        return predict_key_hours(
            {},
            now=now or utc_now(),
            key_hours=self.key_hours,
            horizon_days=self.horizon_days,
            tz=self.tz,
        )


class HistoricalForecaster:
    def __init__(
        self,
        gateway: TimeSeriesGateway,
        *,
        key_hours: Sequence[int] = DEFAULT_KEY_HOURS,
        horizon_days: int = 7,
        lookback_weeks: int = 4,
        tz: ZoneInfo = DEFAULT_TZ,
    ) -> None:
        self.gateway = gateway
        self.key_hours = tuple(key_hours)
        self.horizon_days = int(horizon_days)
        self.lookback_weeks = int(lookback_weeks)
        self.tz = tz

    def hourly_history(self, route_id: int) -> dict[int, HourlyDensity]:
        """Average density, duration and sample count per local hour over the lookback window."""

        query = (
            "SELECT extract(hour from to_timezone(timestamp, {tz})) AS hour, "
            "avg(traffic_density) AS avg_density, "
            "avg(duration_in_traffic) AS avg_duration, "
            "count() AS data_points "
            "FROM traffic_analytics "
            "WHERE route_id = {route_id} AND timestamp > dateadd('w', -{weeks}, now()) "
            "GROUP BY hour ORDER BY hour"
        ).format(
            tz=sql_literal(str(self.tz)),
            route_id=sql_int(route_id),
            weeks=sql_int(self.lookback_weeks),
        )
        result = self.gateway.execute(query)

        history: dict[int, HourlyDensity] = {}
        for record in result.records():
            hour = cell_int(record.get("hour"))
            density = cell_float(record.get("avg_density"))
            if hour is None or density is None:
                continue
            history[hour] = HourlyDensity(
                hour=hour,
                avg_density=density,
                avg_duration_seconds=cell_float(record.get("avg_duration")),
                data_points=cell_int(record.get("data_points")) or 0,
            )
        return history

    def active_route_ids(self) -> list[int]:
        """Routes with at least one sample inside the lookback window."""

        query = (
            "SELECT DISTINCT route_id FROM traffic_analytics "
            "WHERE timestamp > dateadd('w', -{weeks}, now()) ORDER BY route_id"
        ).format(weeks=sql_int(self.lookback_weeks))
        result = self.gateway.execute(query)
        route_ids = (cell_int(row[0]) for row in result.rows if row)
        return [route_id for route_id in route_ids if route_id is not None]

    def predict_key_hours(self, route_id: int, now: Optional[datetime] = None) -> list[HourlyPrediction]:
        history = self.hourly_history(route_id)
        logger.debug("Route %s: %s historical hours in lookback window", route_id, len(history))
        return predict_key_hours(
            history,
            now=now or utc_now(),
            key_hours=self.key_hours,
            horizon_days=self.horizon_days,
            tz=self.tz,
        )

    def route_hourly_forecast(self, route_id: int, now: Optional[datetime] = None) -> Optional[RouteForecast]:
        """Forecast all 24 hours for a route; None when the route has no history at all."""

        history = self.hourly_history(route_id)
        if not history:
            return None

        hours: list[RouteHourForecast] = []
        for hour in range(24):
            row = history.get(hour)
            if row is None:
                hours.append(
                    RouteHourForecast(
                        hour=hour,
                        predicted_density=default_route_density(hour),
                        confidence=FALLBACK_CONFIDENCE,
                        expected_duration_seconds=0,
                    )
                )
                continue
            duration = row.avg_duration_seconds
            hours.append(
                RouteHourForecast(
                    hour=hour,
                    predicted_density=row.avg_density,
                    confidence=route_hour_confidence(row.data_points),
                    expected_duration_seconds=0 if duration is None else math.floor(duration + 0.5),
                )
            )
        return RouteForecast(
            route_id=route_id,
            forecast_date=now or utc_now(),
            hourly_predictions=tuple(hours),
        )

    def store_route_forecast(self, forecast: RouteForecast) -> int:
        self.gateway.ensure_table(ROUTE_TRAFFIC_FORECASTS_DDL)
        lines = [
            encode_record(
                ROUTE_TRAFFIC_FORECASTS,
                {"route_id": forecast.route_id},
                {
                    "hour": item.hour,
                    "predicted_density": item.predicted_density,
                    "confidence": item.confidence,
                    "expected_duration_seconds": item.expected_duration_seconds,
                },
                forecast.forecast_date,
                tz=self.tz,
            )
            for item in forecast.hourly_predictions
        ]
        self.gateway.write(encode_lines(lines))
        logger.info("Stored %s hourly forecasts for route %s", len(lines), forecast.route_id)
        return len(lines)


def build_forecaster(config: AppConfig, gateway: Optional[TimeSeriesGateway]) -> Forecaster:
    """Pick the forecaster once: historical when a time-series store is available."""

    section = config.forecast
    tz = ZoneInfo(config.app.timezone)
    if gateway is None:
        logger.info("No time-series store configured; using heuristic traffic predictions")
        return HeuristicForecaster(key_hours=section.key_hours, horizon_days=section.horizon_days, tz=tz)
    return HistoricalForecaster(
        gateway,
        key_hours=section.key_hours,
        horizon_days=section.horizon_days,
        lookback_weeks=section.lookback_weeks,
        tz=tz,
    )
