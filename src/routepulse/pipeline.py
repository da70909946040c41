"""Entry points exposed to collaborators (an HTTP layer or a scheduler).

The pipeline never returns HTTP constructs; callers map `RoutePulseError` subclasses to their own
responses. Components are built once from an injected `AppConfig`.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence, Union
from zoneinfo import ZoneInfo

from routepulse.analytics.daily_forecast import BookingForecastService, ForecastResult
from routepulse.analytics.hourly_forecast import HistoricalForecaster, HourlyPrediction, build_forecaster
from routepulse.analytics.weekly import WeeklyRollupResult, WeeklySummaryService
from routepulse.errors import ConfigurationError, TransportError, ValidationError
from routepulse.ingestion.dual_write import DualWriteCoordinator, DualWriteOutcome
from routepulse.ingestion.schemas import RouteSummary, TrafficSample
from routepulse.migration.migrator import (
    BatchMigrator,
    MigrationOptions,
    MigrationResult,
    MigrationValidation,
    validate_migration,
)
from routepulse.settings import AppConfig, load_config
from routepulse.storage.postgres import PostgresStore
from routepulse.storage.questdb_gateway import QuestDBHttpGateway, TimeSeriesGateway

logger = logging.getLogger(__name__)

SampleInput = Union[TrafficSample, Mapping[str, Any]]


class AnalyticsPipeline:
    def __init__(
        self,
        config: AppConfig,
        *,
        store: Optional[PostgresStore] = None,
        gateway: Optional[TimeSeriesGateway] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.gateway = gateway
        tz = ZoneInfo(config.app.timezone)
        self.tz = tz

        self.forecaster = build_forecaster(config, gateway)
        self.bookings = BookingForecastService(
            store,
            gateway,
            tz=tz,
            history_days=config.forecast.history_days,
            horizon_days=config.forecast.horizon_days,
            trend_window_days=config.forecast.trend_window_days,
            weekday_saturation_samples=config.forecast.weekday_saturation_samples,
        )
        self._writer: Optional[DualWriteCoordinator] = None
        if store is not None or gateway is not None:
            self._writer = DualWriteCoordinator(store, gateway, tz=tz)
        self._weekly: Optional[WeeklySummaryService] = None
        if gateway is not None:
            self._weekly = WeeklySummaryService(
                gateway, store.reader if store is not None else None, tz=tz
            )

    def _require_gateway(self) -> TimeSeriesGateway:
        if self.gateway is None:
            raise ConfigurationError("QuestDB endpoints are required (questdb.http_endpoint / questdb.ilp_endpoint).")
        return self.gateway

    def _require_store(self) -> PostgresStore:
        if self.store is None:
            raise ConfigurationError("PostgreSQL connection string is required (postgres.dsn / PG_CONN).")
        return self.store

    def _require_weekly(self) -> WeeklySummaryService:
        self._require_gateway()
        if self._weekly is None:
            raise ConfigurationError("Weekly summaries need a time-series store")
        return self._weekly

    def save(self, records: Sequence[SampleInput]) -> DualWriteOutcome:
        if self._writer is None:
            raise ConfigurationError("No storage sink is configured")
        samples = [
            record if isinstance(record, TrafficSample) else TrafficSample.from_row(record)
            for record in records
        ]
        return self._writer.save(samples)

    def run_migration(self, options: Optional[MigrationOptions] = None) -> MigrationResult:
        store = self._require_store()
        resolved = options or MigrationOptions(batch_size=self.config.migration.batch_size)
        with store.reader() as reader:
            migrator = BatchMigrator.from_config(self.config, reader, self.gateway)
            return migrator.run(resolved)

    def forecast(self, route_id: Optional[int] = None, history_days: Optional[int] = None) -> ForecastResult:
        return self.bookings.seven_day_forecast(history_days, route_id)

    def summary(self, route_id: int, days: int = 30) -> Optional[RouteSummary]:
        return self._require_weekly().route_summary(route_id, days)

    def predictions(self, route_id: int) -> list[HourlyPrediction]:
        return self.forecaster.predict_key_hours(route_id)

    def process_weekly_rollup(self, week_offset: int = 1) -> WeeklyRollupResult:
        return self._require_weekly().process_week(week_offset)

    def generate_route_forecasts(self, route_ids: Optional[Iterable[int]] = None) -> int:
        """Build and store a 24-hour forecast per route; returns how many routes were stored.

        Routes default to those with samples in the lookback window. A route without history is
        skipped, and a route whose query or write fails is logged and skipped.
        """

        self._require_gateway()
        forecaster = self.forecaster
        if not isinstance(forecaster, HistoricalForecaster):
            raise ConfigurationError("Route forecasts need the historical forecaster")

        targets = list(route_ids) if route_ids is not None else forecaster.active_route_ids()
        stored = 0
        for route_id in targets:
            try:
                forecast = forecaster.route_hourly_forecast(route_id)
                if forecast is None:
                    logger.info("Route %s: no history in lookback window, forecast skipped", route_id)
                    continue
                forecaster.store_route_forecast(forecast)
                stored += 1
            except (TransportError, ValidationError) as exc:
                logger.warning("Failed to generate forecast for route %s: %s", route_id, exc)
        logger.info("Route forecasts stored for %s/%s routes", stored, len(targets))
        return stored

    def validate_migration(self) -> MigrationValidation:
        return validate_migration(self._require_gateway())

    def close(self) -> None:
        if self.gateway is not None:
            self.gateway.close()

    def __enter__(self) -> "AnalyticsPipeline":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def build_pipeline(config: Optional[AppConfig] = None) -> AnalyticsPipeline:
    """Wire the pipeline from configuration; sinks without settings are left out."""

    resolved = config or load_config()
    store = PostgresStore.from_config(resolved) if resolved.postgres_configured else None
    gateway = QuestDBHttpGateway.from_config(resolved) if resolved.questdb_configured else None
    logger.info(
        "Pipeline ready (postgres=%s, questdb=%s, environment=%s)",
        store is not None,
        gateway is not None,
        resolved.app.environment,
    )
    return AnalyticsPipeline(resolved, store=store, gateway=gateway)
