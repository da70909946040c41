"""PostgreSQL system of record (psycopg 3).

Connections are opened per logical unit of work (one save, one migration run, one forecast
query) and closed afterwards. Route-id filters are bound as arrays; table names come from
configuration and are composed with `psycopg.sql.Identifier`.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Sequence

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from routepulse.errors import ConfigurationError, StorageError, TransportError
from routepulse.ingestion.schemas import TrafficSample
from routepulse.migration.source import SampleFilters
from routepulse.settings import AppConfig

logger = logging.getLogger(__name__)

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

SAMPLE_COLUMNS = (
    "route_id",
    "timestamp",
    "traffic_density",
    "duration",
    "duration_in_traffic",
    "distance",
    "status",
)


def table_identifier(name: str) -> sql.Identifier:
    if not _TABLE_NAME.match(name):
        raise ConfigurationError(f"Invalid table name: {name!r}")
    return sql.Identifier(*name.split("."))


WEEKLY_SUMMARY_SQL = """
WITH week_bounds AS (
    SELECT date_trunc('week', now() AT TIME ZONE %(tz)s) - make_interval(days => %(days)s) AS start_local
),
samples AS (
    SELECT t.*, t.timestamp AT TIME ZONE %(tz)s AS local_ts
    FROM {table} t
    CROSS JOIN week_bounds wb
    WHERE t.timestamp AT TIME ZONE %(tz)s >= wb.start_local
      AND t.timestamp AT TIME ZONE %(tz)s < wb.start_local + INTERVAL '7 days'
),
hour_counts AS (
    SELECT route_id, date_part('hour', local_ts)::int AS hour, COUNT(*) AS cnt
    FROM samples
    GROUP BY route_id, date_part('hour', local_ts)::int
),
peak AS (
    SELECT DISTINCT ON (route_id) route_id, hour AS peak_hour
    FROM hour_counts
    ORDER BY route_id, cnt DESC, hour ASC
)
SELECT
    (SELECT start_local FROM week_bounds)::date AS week_start,
    s.route_id,
    COUNT(*) AS sample_count,
    AVG(s.traffic_density)::numeric(6,4) AS avg_traffic_density,
    MIN(s.traffic_density)::numeric(6,4) AS min_traffic_density,
    MAX(s.traffic_density)::numeric(6,4) AS max_traffic_density,
    AVG(s.duration) FILTER (WHERE s.duration IS NOT NULL)::numeric(10,2) AS avg_duration_seconds,
    AVG(s.duration_in_traffic) FILTER (WHERE s.duration_in_traffic IS NOT NULL)::numeric(10,2)
        AS avg_duration_in_traffic_seconds,
    AVG(
        CASE WHEN s.duration > 0 AND s.duration_in_traffic IS NOT NULL
             THEN (s.duration_in_traffic - s.duration)::double precision / s.duration
        END
    )::numeric(6,4) AS avg_traffic_penalty_fraction,
    SUM(s.distance) FILTER (WHERE s.distance IS NOT NULL)::bigint AS total_distance_meters,
    (
        SUM(s.distance) FILTER (WHERE s.duration > 0)
        / NULLIF(SUM(s.duration) FILTER (WHERE s.duration > 0), 0) * 3.6
    )::numeric(10,2) AS avg_speed_kmh,
    p.peak_hour
FROM samples s
JOIN peak p ON p.route_id = s.route_id
GROUP BY s.route_id, p.peak_hour
ORDER BY s.route_id
"""


class PostgresSampleReader:
    """`SourceReader` bound to one open connection."""

    def __init__(
        self,
        conn: psycopg.Connection,
        *,
        samples_table: str,
        bookings_table: str,
        timezone: str,
    ) -> None:
        self._conn = conn
        self._samples = table_identifier(samples_table)
        self._bookings = table_identifier(bookings_table)
        self._timezone = timezone

    def _fetchall(self, query: sql.Composable, params: Any = None) -> list[dict[str, Any]]:
        try:
            with self._conn.cursor() as cur:
                cur.execute(query, params)
                return list(cur.fetchall())
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            raise TransportError(f"PostgreSQL query failed: {exc}") from exc
        except psycopg.Error as exc:
            raise StorageError(f"PostgreSQL rejected query: {exc}") from exc

    @staticmethod
    def _where(filters: SampleFilters) -> tuple[sql.Composable, list[Any]]:
        clauses: list[sql.Composable] = [sql.SQL("1=1")]
        params: list[Any] = []
        if filters.start is not None:
            clauses.append(sql.SQL("timestamp >= %s"))
            params.append(filters.start)
        if filters.end is not None:
            clauses.append(sql.SQL("timestamp <= %s"))
            params.append(filters.end)
        if filters.route_ids:
            clauses.append(sql.SQL("route_id = ANY(%s)"))
            params.append(list(filters.route_ids))
        return sql.SQL(" AND ").join(clauses), params

    def count(self, filters: SampleFilters) -> int:
        where, params = self._where(filters)
        query = sql.SQL("SELECT COUNT(*) AS count FROM {} WHERE {}").format(self._samples, where)
        rows = self._fetchall(query, params)
        return int(rows[0]["count"]) if rows else 0

    def fetch_page(self, filters: SampleFilters, *, limit: int, offset: int) -> list[dict[str, Any]]:
        where, params = self._where(filters)
        query = sql.SQL("SELECT {} FROM {} WHERE {} ORDER BY timestamp ASC LIMIT %s OFFSET %s").format(
            sql.SQL(", ").join(sql.Identifier(column) for column in SAMPLE_COLUMNS),
            self._samples,
            where,
        )
        return self._fetchall(query, [*params, int(limit), int(offset)])

    def time_range(self) -> tuple[Optional[datetime], Optional[datetime]]:
        query = sql.SQL("SELECT MIN(timestamp) AS min_date, MAX(timestamp) AS max_date FROM {}").format(
            self._samples
        )
        rows = self._fetchall(query)
        if not rows:
            return None, None
        return rows[0]["min_date"], rows[0]["max_date"]

    def weekly_summaries(self, week_offset: int) -> list[dict[str, Any]]:
        query = sql.SQL(WEEKLY_SUMMARY_SQL).format(table=self._samples)
        return self._fetchall(query, {"tz": self._timezone, "days": int(week_offset) * 7})

    def booking_timestamps(self, since: datetime, route_id: Optional[int] = None) -> list[datetime]:
        clauses: list[sql.Composable] = [sql.SQL("created_at >= %s")]
        params: list[Any] = [since]
        if route_id is not None:
            clauses.append(sql.SQL("route_id = %s"))
            params.append(int(route_id))
        query = sql.SQL("SELECT created_at FROM {} WHERE {} ORDER BY created_at ASC").format(
            self._bookings, sql.SQL(" AND ").join(clauses)
        )
        return [row["created_at"] for row in self._fetchall(query, params)]


class PostgresStore:
    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout_seconds: int = 30,
        samples_table: str = "public.traffic_analytics",
        bookings_table: str = "public.bookings",
        timezone: str = "Asia/Manila",
    ) -> None:
        if not dsn:
            raise ConfigurationError("PostgreSQL connection string is required")
        self.dsn = dsn
        self.connect_timeout_seconds = int(connect_timeout_seconds)
        self.samples_table = samples_table
        self.bookings_table = bookings_table
        self.timezone = timezone
        table_identifier(samples_table)
        table_identifier(bookings_table)

    @classmethod
    def from_config(cls, config: AppConfig) -> "PostgresStore":
        return cls(
            config.postgres.dsn,
            connect_timeout_seconds=config.postgres.connect_timeout_seconds,
            samples_table=config.postgres.samples_table,
            bookings_table=config.postgres.bookings_table,
            timezone=config.app.timezone,
        )

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        try:
            conn = psycopg.connect(
                self.dsn, connect_timeout=self.connect_timeout_seconds, row_factory=dict_row
            )
        except psycopg.OperationalError as exc:
            raise TransportError(f"Failed to connect to PostgreSQL: {exc}") from exc
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def reader(self) -> Iterator[PostgresSampleReader]:
        with self.connection() as conn:
            yield PostgresSampleReader(
                conn,
                samples_table=self.samples_table,
                bookings_table=self.bookings_table,
                timezone=self.timezone,
            )

    def booking_timestamps(self, since: datetime, route_id: Optional[int] = None) -> list[datetime]:
        with self.reader() as reader:
            return reader.booking_timestamps(since, route_id)

    def save_samples(self, samples: Sequence[TrafficSample]) -> None:
        if not samples:
            return
        query = sql.SQL("INSERT INTO {} ({}) VALUES ({})").format(
            table_identifier(self.samples_table),
            sql.SQL(", ").join(sql.Identifier(column) for column in SAMPLE_COLUMNS),
            sql.SQL(", ").join(sql.Placeholder() for _ in SAMPLE_COLUMNS),
        )
        rows = [tuple(getattr(sample, column) for column in SAMPLE_COLUMNS) for sample in samples]
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.executemany(query, rows)
                conn.commit()
            except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
                raise TransportError(f"Failed to save traffic data to PostgreSQL: {exc}") from exc
            except psycopg.Error as exc:
                raise StorageError(f"PostgreSQL rejected traffic data: {exc}") from exc
        logger.info("Saved %s traffic samples to PostgreSQL", len(rows))
