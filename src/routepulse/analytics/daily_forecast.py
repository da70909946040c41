"""Day-of-week seasonal baseline plus short-window trend for daily booking counts.

prediction(day) = weekday_average(day) + slope, rounded half-up and floored at 0.
The slope is an ordinary least-squares fit over the most recent `trend_window` daily counts
against the index 0..n-1, applied once (not compounded per forecast day).
confidence(day) = min(0.95, 0.4 + 0.5 * min(1, weekday_samples / saturation)).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

import pandas as pd

from routepulse.errors import ConfigurationError
from routepulse.ingestion.line_protocol import (
    BOOKING_DAILY_COUNTS,
    BOOKING_FORECASTS,
    encode_lines,
    encode_record,
)
from routepulse.storage.questdb_gateway import TimeSeriesGateway, cell_datetime, cell_float, cell_int
from routepulse.storage.tables import BOOKING_DAILY_COUNTS_DDL, BOOKING_FORECASTS_DDL, sql_int
from routepulse.utils.time import DEFAULT_TZ, local_midnight, to_utc, utc_now

logger = logging.getLogger(__name__)

# Network-wide rows (no route filter) are tagged with route 0.
NETWORK_ROUTE_ID = 0


@dataclass(frozen=True)
class DailyCount:
    day: date
    count: int

    def as_dict(self) -> dict[str, Any]:
        return {"date": self.day.isoformat(), "count": self.count}


@dataclass(frozen=True)
class ForecastPoint:
    target_date: date
    predicted_count: int
    confidence: float

    def as_dict(self) -> dict[str, Any]:
        return {
            "date": self.target_date.isoformat(),
            "predicted_count": self.predicted_count,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ForecastResult:
    history: list[DailyCount] = field(default_factory=list)
    forecast: list[ForecastPoint] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "history": [point.as_dict() for point in self.history],
            "forecast": [point.as_dict() for point in self.forecast],
        }


def fill_daily_counts(
    timestamps: Iterable[datetime],
    *,
    start: date,
    end: date,
    tz: ZoneInfo = DEFAULT_TZ,
) -> list[DailyCount]:
    """Bucket event timestamps by local calendar day; days without events count as zero."""

    days = pd.date_range(start=start, end=end, freq="D")
    counts = pd.Series(0, index=[ts.date() for ts in days], dtype="int64")

    instants = [to_utc(ts, tz) for ts in timestamps if ts is not None]
    if instants and not counts.empty:
        local = pd.to_datetime(pd.Series(instants), utc=True).dt.tz_convert(str(tz))
        observed = local.dt.date.value_counts()
        observed = observed[observed.index.isin(counts.index)]
        counts = counts.add(observed, fill_value=0).astype("int64")

    return [DailyCount(day=day, count=int(count)) for day, count in counts.sort_index().items()]


def weekday_averages(history: Sequence[DailyCount]) -> pd.DataFrame:
    """Mean count and number of samples per weekday (index 0..6, Monday first)."""

    frame = pd.DataFrame(
        {
            "weekday": [point.day.weekday() for point in history],
            "count": [point.count for point in history],
        }
    )
    if frame.empty:
        grouped = pd.DataFrame({"avg": [], "samples": []})
    else:
        grouped = frame.groupby("weekday")["count"].agg(avg="mean", samples="count")
    out = grouped.reindex(range(7))
    out["avg"] = pd.to_numeric(out["avg"], errors="coerce").fillna(0.0).astype(float)
    out["samples"] = pd.to_numeric(out["samples"], errors="coerce").fillna(0).astype(int)
    out.index.name = "weekday"
    return out


def trend_slope(counts: Sequence[float], window: int = 14) -> float:
    recent = pd.Series(list(counts)[-window:] if window > 0 else [], dtype=float)
    n = len(recent)
    if n < 2:
        return 0.0
    x = pd.Series(range(n), dtype=float)
    dx = x - (n - 1) / 2
    dy = recent - recent.mean()
    denominator = float((dx * dx).sum())
    if denominator <= 0:
        return 0.0
    return float((dx * dy).sum()) / denominator


def weekday_confidence(samples: int, saturation: int = 8) -> float:
    depth = min(1.0, samples / saturation) if saturation > 0 else 1.0
    return min(0.95, 0.4 + 0.5 * depth)


def forecast_daily_counts(
    history: Sequence[DailyCount],
    today: date,
    *,
    horizon: int = 7,
    trend_window: int = 14,
    saturation: int = 8,
) -> list[ForecastPoint]:
    """Forecast the `horizon` days after `today` from a gap-free daily history."""

    averages = weekday_averages(history)
    slope = trend_slope([point.count for point in history], trend_window)

    forecast: list[ForecastPoint] = []
    for offset in range(1, int(horizon) + 1):
        target = today + timedelta(days=offset)
        row = averages.loc[target.weekday()]
        predicted = max(0, math.floor(float(row["avg"]) + slope + 0.5))
        forecast.append(
            ForecastPoint(
                target_date=target,
                predicted_count=int(predicted),
                confidence=weekday_confidence(int(row["samples"]), saturation),
            )
        )
    return forecast


class BookingSource(Protocol):
    def booking_timestamps(self, since: datetime, route_id: Optional[int] = None) -> list[datetime]: ...


class BookingForecastService:
    """Daily booking counts from the relational store, forecasts, and their QuestDB copies."""

    def __init__(
        self,
        bookings: Optional[BookingSource],
        gateway: Optional[TimeSeriesGateway],
        *,
        tz: ZoneInfo = DEFAULT_TZ,
        history_days: int = 90,
        horizon_days: int = 7,
        trend_window_days: int = 14,
        weekday_saturation_samples: int = 8,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.bookings = bookings
        self.gateway = gateway
        self.tz = tz
        self.history_days = int(history_days)
        self.horizon_days = int(horizon_days)
        self.trend_window_days = int(trend_window_days)
        self.weekday_saturation_samples = int(weekday_saturation_samples)
        self.clock = clock

    def _today(self) -> date:
        return self.clock().astimezone(self.tz).date()

    def _require_bookings(self) -> BookingSource:
        if self.bookings is None:
            raise ConfigurationError("Booking forecasts need a relational store (postgres.dsn / PG_CONN).")
        return self.bookings

    def _require_gateway(self) -> TimeSeriesGateway:
        if self.gateway is None:
            raise ConfigurationError("Persisting forecasts needs a QuestDB endpoint (questdb.http_endpoint).")
        return self.gateway

    def daily_counts(self, days: Optional[int] = None, route_id: Optional[int] = None) -> list[DailyCount]:
        bookings = self._require_bookings()
        today = self._today()
        start = today - timedelta(days=self.history_days if days is None else int(days))
        timestamps = bookings.booking_timestamps(local_midnight(start, self.tz), route_id)
        return fill_daily_counts(timestamps, start=start, end=today, tz=self.tz)

    def seven_day_forecast(
        self, history_days: Optional[int] = None, route_id: Optional[int] = None
    ) -> ForecastResult:
        history = self.daily_counts(history_days, route_id)
        forecast = forecast_daily_counts(
            history,
            self._today(),
            horizon=self.horizon_days,
            trend_window=self.trend_window_days,
            saturation=self.weekday_saturation_samples,
        )
        return ForecastResult(history=history, forecast=forecast)

    def persist_daily_counts(
        self, history_days: Optional[int] = None, route_id: Optional[int] = None
    ) -> int:
        gateway = self._require_gateway()
        history = self.daily_counts(history_days, route_id)
        gateway.ensure_table(BOOKING_DAILY_COUNTS_DDL)
        tag = NETWORK_ROUTE_ID if route_id is None else route_id
        lines = [
            encode_record(
                BOOKING_DAILY_COUNTS,
                {"route_id": tag},
                {"total_bookings": point.count},
                point.day,
                tz=self.tz,
            )
            for point in history
        ]
        gateway.write(encode_lines(lines))
        logger.info("Persisted %s daily booking counts", len(lines))
        return len(lines)

    def persist_forecast(
        self, history_days: Optional[int] = None, route_id: Optional[int] = None
    ) -> tuple[int, datetime]:
        """Write one forecast set; every row carries the same generation timestamp."""

        gateway = self._require_gateway()
        result = self.seven_day_forecast(history_days, route_id)
        generated_at = self.clock()
        gateway.ensure_table(BOOKING_FORECASTS_DDL)
        tag = NETWORK_ROUTE_ID if route_id is None else route_id
        lines = [
            encode_record(
                BOOKING_FORECASTS,
                {"route_id": tag},
                {
                    "target_day": point.target_date.isoformat(),
                    "predicted_count": point.predicted_count,
                    "confidence": point.confidence,
                },
                generated_at,
                tz=self.tz,
            )
            for point in result.forecast
        ]
        gateway.write(encode_lines(lines))
        logger.info("Persisted %s-day booking forecast generated at %s", len(lines), generated_at.isoformat())
        return len(lines), generated_at

    def daily_counts_from_timeseries(self, days: Optional[int] = None) -> list[DailyCount]:
        gateway = self._require_gateway()
        window = self.history_days if days is None else days
        result = gateway.execute(
            "SELECT day, total_bookings FROM booking_daily_counts "
            f"WHERE day > dateadd('d', -{sql_int(window)}, now()) ORDER BY day ASC"
        )
        counts: list[DailyCount] = []
        for record in result.records():
            stamp = cell_datetime(record.get("day"))
            if stamp is None:
                continue
            counts.append(
                DailyCount(day=stamp.astimezone(self.tz).date(), count=cell_int(record.get("total_bookings")) or 0)
            )
        return counts

    def latest_forecast(self) -> list[ForecastPoint]:
        """The forecast set with the most recent generation timestamp."""

        gateway = self._require_gateway()
        result = gateway.execute(
            "SELECT target_day, predicted_count, confidence FROM booking_forecasts "
            "WHERE forecast_date = (SELECT max(forecast_date) FROM booking_forecasts) "
            "ORDER BY target_day ASC"
        )
        points: list[ForecastPoint] = []
        for record in result.records():
            target = record.get("target_day")
            if not target:
                continue
            points.append(
                ForecastPoint(
                    target_date=date.fromisoformat(target[:10]),
                    predicted_count=cell_int(record.get("predicted_count")) or 0,
                    confidence=cell_float(record.get("confidence")) or 0.0,
                )
            )
        return points
