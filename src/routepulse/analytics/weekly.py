from __future__ import annotations

import logging
from contextlib import AbstractContextManager
from dataclasses import dataclass
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from routepulse.errors import ConfigurationError
from routepulse.ingestion.line_protocol import encode_lines, encode_weekly_summary
from routepulse.ingestion.schemas import RouteSummary, WeeklyRouteSummary
from routepulse.migration.source import SourceReader
from routepulse.storage.questdb_gateway import TimeSeriesGateway, cell_float, cell_int
from routepulse.storage.tables import ROUTE_WEEKLY_SUMMARY_DDL, sql_int
from routepulse.utils.time import DEFAULT_TZ

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WeeklyRollupResult:
    week_offset: int
    rows_processed: int


class WeeklySummaryService:
    """Periodic weekly rollups (scheduler entry point) and route summaries read back from QuestDB."""

    def __init__(
        self,
        gateway: TimeSeriesGateway,
        reader_factory: Optional[Callable[[], AbstractContextManager[SourceReader]]] = None,
        *,
        tz: ZoneInfo = DEFAULT_TZ,
    ) -> None:
        self.gateway = gateway
        self.reader_factory = reader_factory
        self.tz = tz

    def process_week(self, week_offset: int = 1) -> WeeklyRollupResult:
        """Aggregate the week `week_offset` weeks before the current one and write it to QuestDB."""

        if self.reader_factory is None:
            raise ConfigurationError("Weekly rollups need a relational store (postgres.dsn / PG_CONN).")
        with self.reader_factory() as reader:
            rows = reader.weekly_summaries(int(week_offset))
        summaries = [WeeklyRouteSummary.from_row(row) for row in rows]
        if not summaries:
            logger.info("Week offset %s: no samples to summarize", week_offset)
            return WeeklyRollupResult(week_offset=week_offset, rows_processed=0)

        self.gateway.ensure_table(ROUTE_WEEKLY_SUMMARY_DDL)
        self.gateway.write(encode_lines(encode_weekly_summary(row, tz=self.tz) for row in summaries))
        logger.info("Week offset %s: wrote %s route summaries", week_offset, len(summaries))
        return WeeklyRollupResult(week_offset=week_offset, rows_processed=len(summaries))

    def route_summary(self, route_id: int, days: int = 30) -> Optional[RouteSummary]:
        result = self.gateway.execute(
            "SELECT route_id, "
            "avg(avg_traffic_density) AS overall_avg_density, "
            "max(max_traffic_density) AS peak_density, "
            "min(min_traffic_density) AS lowest_density, "
            "avg(avg_speed_kmh) AS avg_speed, "
            "sum(sample_count) AS total_samples "
            "FROM route_weekly_summary "
            f"WHERE route_id = {sql_int(route_id)} AND timestamp > dateadd('d', -{sql_int(days)}, now()) "
            "GROUP BY route_id"
        )
        records = result.records()
        if not records:
            return None
        record = records[0]
        total = cell_int(record.get("total_samples"))
        if not total:
            return None
        return RouteSummary(
            route_id=cell_int(record.get("route_id")) or int(route_id),
            overall_avg_density=cell_float(record.get("overall_avg_density")),
            peak_density=cell_float(record.get("peak_density")),
            lowest_density=cell_float(record.get("lowest_density")),
            avg_speed=cell_float(record.get("avg_speed")),
            total_samples=total,
        )
