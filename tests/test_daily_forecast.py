from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from routepulse.analytics.daily_forecast import (
    BookingForecastService,
    DailyCount,
    fill_daily_counts,
    forecast_daily_counts,
    trend_slope,
    weekday_averages,
    weekday_confidence,
)
from routepulse.errors import ConfigurationError
from routepulse.storage.questdb_gateway import Column, QueryResult
from routepulse.storage.tables import BOOKING_DAILY_COUNTS_DDL, BOOKING_FORECASTS_DDL

MONDAY = date(2024, 1, 1)


def _history(counts: list[int], start: date = MONDAY) -> list[DailyCount]:
    return [DailyCount(day=start + timedelta(days=i), count=c) for i, c in enumerate(counts)]


def test_linear_history_has_unit_slope() -> None:
    counts = list(range(10, 24))
    assert trend_slope(counts) == pytest.approx(1.0)


def test_slope_needs_two_points() -> None:
    assert trend_slope([]) == 0.0
    assert trend_slope([5]) == 0.0


def test_slope_uses_only_recent_window() -> None:
    counts = [100, 0, 0] + list(range(10, 24))
    assert trend_slope(counts, window=14) == pytest.approx(1.0)


def test_linear_history_forecast_is_weekday_average_plus_slope() -> None:
    history = _history(list(range(10, 24)))
    today = history[-1].day

    forecast = forecast_daily_counts(history, today)

    # Weekday w averages (10 + w) and (17 + w); the slope of 1 is added once.
    assert [point.target_date for point in forecast] == [today + timedelta(days=i) for i in range(1, 8)]
    assert [point.predicted_count for point in forecast] == [15, 16, 17, 18, 19, 20, 21]
    assert all(point.confidence == pytest.approx(0.525) for point in forecast)


def test_predictions_are_non_negative_integers() -> None:
    history = _history([100] + [0] * 13)

    forecast = forecast_daily_counts(history, history[-1].day)

    assert [point.predicted_count for point in forecast] == [47, 0, 0, 0, 0, 0, 0]
    assert all(isinstance(point.predicted_count, int) for point in forecast)


def test_confidence_is_monotone_and_capped() -> None:
    values = [weekday_confidence(n) for n in range(0, 30)]
    assert values == sorted(values)
    assert values[0] == pytest.approx(0.4)
    assert weekday_confidence(8) == pytest.approx(0.9)
    assert all(0.0 <= value <= 0.95 for value in values)


def test_weekday_averages_fill_missing_days() -> None:
    averages = weekday_averages(_history([4, 6]))
    assert list(averages.index) == list(range(7))
    assert averages.loc[0, "avg"] == 4.0
    assert averages.loc[1, "samples"] == 1
    assert averages.loc[5, "avg"] == 0.0
    assert averages.loc[5, "samples"] == 0


def test_fill_daily_counts_buckets_by_local_day() -> None:
    timestamps = [
        datetime(2024, 1, 1, 16, 30, tzinfo=timezone.utc),  # 00:30 on Jan 2 in Manila
        datetime(2024, 1, 1, 10, 0),  # naive: already Manila time
        datetime(2023, 12, 1, tzinfo=timezone.utc),  # outside the window
    ]
    counts = fill_daily_counts(timestamps, start=date(2024, 1, 1), end=date(2024, 1, 3))
    assert [(point.day, point.count) for point in counts] == [
        (date(2024, 1, 1), 1),
        (date(2024, 1, 2), 1),
        (date(2024, 1, 3), 0),
    ]


def test_fill_daily_counts_without_events() -> None:
    counts = fill_daily_counts([], start=date(2024, 1, 1), end=date(2024, 1, 2))
    assert [point.count for point in counts] == [0, 0]


class FakeBookings:
    def __init__(self, timestamps: list[datetime]) -> None:
        self.timestamps = timestamps
        self.calls: list[tuple[datetime, object]] = []

    def booking_timestamps(self, since: datetime, route_id=None) -> list[datetime]:
        self.calls.append((since, route_id))
        return [ts for ts in self.timestamps if ts >= since]


class FakeGateway:
    def __init__(self, results: dict[str, QueryResult] | None = None) -> None:
        self.results = results or {}
        self.tables: list[str] = []
        self.writes: list[str] = []

    def execute(self, query: str, params=None) -> QueryResult:
        for needle, result in self.results.items():
            if needle in query:
                return result
        return QueryResult(query=query)

    def ensure_table(self, ddl: str) -> None:
        self.tables.append(ddl)

    def write(self, lines: str) -> None:
        self.writes.append(lines)

    def close(self) -> None:
        return None


NOW = datetime(2024, 1, 14, 4, 0, tzinfo=timezone.utc)  # Sunday noon in Manila


def _service(bookings=None, gateway=None) -> BookingForecastService:
    return BookingForecastService(bookings, gateway, history_days=13, clock=lambda: NOW)


def test_seven_day_forecast_from_bookings() -> None:
    timestamps = [
        datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc) + timedelta(days=day)
        for day in range(14)
        for _ in range(10 + day)
    ]
    bookings = FakeBookings(timestamps)

    result = _service(bookings).seven_day_forecast()

    assert [point.count for point in result.history] == list(range(10, 24))
    assert [point.predicted_count for point in result.forecast] == [15, 16, 17, 18, 19, 20, 21]
    since, route_id = bookings.calls[0]
    assert since == datetime(2024, 1, 1, tzinfo=since.tzinfo)
    assert route_id is None


def test_persist_forecast_uses_one_generation_timestamp() -> None:
    gateway = FakeGateway()
    rows, generated_at = _service(FakeBookings([]), gateway).persist_forecast()

    lines = gateway.writes[0].splitlines()
    assert rows == len(lines) == 7
    assert generated_at == NOW
    assert gateway.tables == [BOOKING_FORECASTS_DDL]
    assert {line.rsplit(" ", 1)[1] for line in lines} == {"1705204800000000000"}
    assert lines[0].startswith('booking_forecasts,route_id=0 target_day="2024-01-15",predicted_count=0i')


def test_persist_daily_counts_tags_route() -> None:
    gateway = FakeGateway()
    rows = _service(FakeBookings([]), gateway).persist_daily_counts(route_id=9)

    assert rows == 14
    assert gateway.tables == [BOOKING_DAILY_COUNTS_DDL]
    assert all(line.startswith("booking_daily_counts,route_id=9 total_bookings=0i ") for line in gateway.writes[0].splitlines())


def test_latest_forecast_and_timeseries_counts() -> None:
    gateway = FakeGateway(
        {
            "FROM booking_forecasts": QueryResult(
                query="",
                columns=[Column("target_day"), Column("predicted_count"), Column("confidence")],
                dataset=[["2024-01-15", "12", "0.65"], ["2024-01-16", "9", "0.9"]],
            ),
            "FROM booking_daily_counts": QueryResult(
                query="",
                columns=[Column("day"), Column("total_bookings")],
                dataset=[["2024-01-01T16:00:00.000000Z", "5"]],
            ),
        }
    )
    service = _service(None, gateway)

    latest = service.latest_forecast()
    assert [(p.target_date, p.predicted_count, p.confidence) for p in latest] == [
        (date(2024, 1, 15), 12, 0.65),
        (date(2024, 1, 16), 9, 0.9),
    ]
    counts = service.daily_counts_from_timeseries(30)
    assert counts == [DailyCount(day=date(2024, 1, 2), count=5)]


def test_missing_sinks_are_configuration_errors() -> None:
    with pytest.raises(ConfigurationError):
        _service().daily_counts()
    with pytest.raises(ConfigurationError):
        _service(FakeBookings([])).persist_forecast()
