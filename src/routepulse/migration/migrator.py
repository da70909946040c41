"""Historical backfill from PostgreSQL into QuestDB.

State machine: INIT -> COUNTING -> (no rows: DONE) -> BATCH_LOOP -> DONE | FAILED.

- INIT validates options and, for real runs, checks that QuestDB answers `SELECT 1`.
- COUNTING runs the count query with the same filters every page query uses. The total is a
  snapshot estimate used for progress only.
- BATCH_LOOP fetches `batch_size` rows ordered by timestamp from the current offset, converts them
  to `TrafficSample` records and (unless dry-run) writes them as one line-protocol batch. The offset
  advances by `batch_size` after every batch. The loop ends on an empty or short page.
- Any error fetching, converting or writing a batch aborts the run. Batches already written stay
  in QuestDB; nothing is rolled back, and replaying a batch duplicates its rows.

When requested, a weekly rollup phase follows the row migration: one source-side aggregation per
week offset, written through the same gateway. A week that fails is logged and skipped.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence
from zoneinfo import ZoneInfo

from routepulse.errors import ConfigurationError, TransportError, ValidationError, classify_error
from routepulse.ingestion.line_protocol import encode_lines, encode_samples, encode_weekly_summary
from routepulse.ingestion.schemas import TrafficSample, WeeklyRouteSummary
from routepulse.migration.checkpoint import CheckpointFile, MigrationCheckpoint
from routepulse.migration.ledger import safe_append_ledger_entry
from routepulse.migration.source import SampleFilters, SourceReader
from routepulse.settings import AppConfig
from routepulse.storage.questdb_gateway import (
    TimeSeriesGateway,
    cell_datetime,
    cell_float,
    cell_int,
    ensure_reachable,
)
from routepulse.storage.tables import ROUTE_WEEKLY_SUMMARY_DDL, TRAFFIC_ANALYTICS_DDL
from routepulse.utils.time import DEFAULT_TZ, utc_now

logger = logging.getLogger(__name__)


class MigrationState(str, Enum):
    INIT = "init"
    COUNTING = "counting"
    BATCH_LOOP = "batch_loop"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class MigrationOptions:
    dry_run: bool = False
    batch_size: int = 1000
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    route_ids: tuple[int, ...] = ()
    include_weekly_summaries: bool = False
    resume: bool = False

    def validate(self) -> None:
        if int(self.batch_size) < 1:
            raise ValidationError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValidationError("start_date must not be after end_date")
        for route_id in self.route_ids:
            if isinstance(route_id, bool) or not isinstance(route_id, int) or route_id < 0:
                raise ValidationError(f"route_ids must be non-negative integers, got {route_id!r}")

    def filters(self) -> SampleFilters:
        return SampleFilters(start=self.start_date, end=self.end_date, route_ids=tuple(self.route_ids))


@dataclass
class MigrationResult:
    dry_run: bool
    total_records: int = 0
    migrated_count: int = 0
    processed_count: int = 0
    batches: int = 0
    summaries_written: int = 0
    failed_weeks: list[int] = field(default_factory=list)
    state: MigrationState = MigrationState.INIT

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["state"] = self.state.value
        return payload


@dataclass(frozen=True)
class MigrationValidation:
    traffic_records: int
    summary_records: int
    earliest: Optional[datetime]
    latest: Optional[datetime]
    unique_routes: int
    avg_density: Optional[float]


class BatchMigrator:
    def __init__(
        self,
        source: SourceReader,
        gateway: Optional[TimeSeriesGateway],
        *,
        inter_batch_delay_seconds: float = 0.1,
        checkpoint_file: Optional[CheckpointFile] = None,
        ledger_path: Optional[Path] = None,
        tz: ZoneInfo = DEFAULT_TZ,
    ) -> None:
        self.source = source
        self.gateway = gateway
        self.inter_batch_delay_seconds = max(0.0, float(inter_batch_delay_seconds))
        self.checkpoint_file = checkpoint_file
        self.ledger_path = ledger_path
        self.tz = tz
        self.state = MigrationState.INIT

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        source: SourceReader,
        gateway: Optional[TimeSeriesGateway],
    ) -> "BatchMigrator":
        section = config.migration
        return cls(
            source,
            gateway,
            inter_batch_delay_seconds=section.inter_batch_delay_seconds,
            checkpoint_file=CheckpointFile(section.checkpoint_path) if section.checkpoint_path else None,
            ledger_path=section.ledger_path,
            tz=ZoneInfo(config.app.timezone),
        )

    def _ledger(self, event: str, **fields: Any) -> None:
        safe_append_ledger_entry(
            self.ledger_path, {"ts": utc_now().isoformat(), "event": event, **fields}
        )

    def run(self, options: MigrationOptions) -> MigrationResult:
        self.state = MigrationState.INIT
        options.validate()
        if not options.dry_run:
            self._require_gateway()

        result = MigrationResult(dry_run=options.dry_run)
        logger.info(
            "Starting QuestDB migration (dry_run=%s, batch_size=%s, range=%s..%s, routes=%s)",
            options.dry_run,
            options.batch_size,
            options.start_date or "all",
            options.end_date or "all",
            list(options.route_ids) or "all",
        )

        try:
            if not options.dry_run:
                self._check_destination()

            self.state = MigrationState.COUNTING
            filters = options.filters()
            result.total_records = int(self.source.count(filters))
            logger.info("Total records to migrate: %s", result.total_records)

            if result.total_records > 0:
                self.state = MigrationState.BATCH_LOOP
                self._migrate_rows(options, filters, result)
                if options.include_weekly_summaries and not options.dry_run:
                    self._migrate_weekly_summaries(result)
            else:
                logger.info("No records found to migrate")
        except Exception as exc:
            self.state = MigrationState.FAILED
            result.state = MigrationState.FAILED
            info = classify_error(exc)
            logger.error("Migration failed (%s): %s", info.code, info.message)
            self._ledger("failed", code=info.code, message=info.message, **result.as_dict())
            raise

        self.state = MigrationState.DONE
        result.state = MigrationState.DONE
        self._ledger("done", **result.as_dict())
        logger.info(
            "Migration completed: %s/%s records (%s batches)",
            result.processed_count,
            result.total_records,
            result.batches,
        )
        return result

    def _require_gateway(self) -> TimeSeriesGateway:
        if self.gateway is None:
            raise ConfigurationError("A time-series gateway is required unless dry_run is set")
        return self.gateway

    def _check_destination(self) -> None:
        ensure_reachable(self._require_gateway(), "migration")

    def _starting_checkpoint(
        self, options: MigrationOptions, filters: SampleFilters, total: int
    ) -> MigrationCheckpoint:
        checkpoint = MigrationCheckpoint(
            offset=0, total_count_at_start=total, batch_size=int(options.batch_size)
        )
        if options.resume and self.checkpoint_file is not None:
            saved = self.checkpoint_file.load(filters.fingerprint(), options.batch_size)
            if saved is not None:
                checkpoint.offset = saved.offset
                logger.info("Resuming migration at offset %s", checkpoint.offset)
        return checkpoint

    def _migrate_rows(
        self, options: MigrationOptions, filters: SampleFilters, result: MigrationResult
    ) -> None:
        batch_size = int(options.batch_size)
        checkpoint = self._starting_checkpoint(options, filters, result.total_records)
        fingerprint = filters.fingerprint()

        gateway = None if options.dry_run else self._require_gateway()
        if gateway is not None:
            gateway.ensure_table(TRAFFIC_ANALYTICS_DDL)

        while True:
            rows: Sequence[Any] = self.source.fetch_page(filters, limit=batch_size, offset=checkpoint.offset)
            if not rows:
                break

            logger.info(
                "Processing batch: %s-%s of %s",
                checkpoint.offset + 1,
                checkpoint.offset + len(rows),
                result.total_records,
            )
            samples = [TrafficSample.from_row(row) for row in rows]

            if gateway is not None:
                gateway.write(encode_samples(samples, tz=self.tz))
                result.migrated_count += len(samples)

            result.processed_count += len(samples)
            result.batches += 1
            offset = checkpoint.offset
            checkpoint.advance()

            if self.checkpoint_file is not None and not options.dry_run:
                self.checkpoint_file.save(fingerprint, checkpoint)
            self._ledger("batch", offset=offset, rows=len(samples), dry_run=options.dry_run)
            logger.info(
                "Progress: %s%% (%s/%s)",
                checkpoint.progress_pct,
                result.processed_count,
                result.total_records,
            )

            if len(rows) < batch_size:
                break
            time.sleep(self.inter_batch_delay_seconds)

        if self.checkpoint_file is not None and not options.dry_run:
            self.checkpoint_file.clear()
        logger.info("Traffic analytics migration completed: %s records", result.processed_count)

    def _migrate_weekly_summaries(self, result: MigrationResult) -> None:
        gateway = self._require_gateway()
        min_date, max_date = self.source.time_range()
        if not min_date or not max_date:
            logger.info("No data found for weekly summaries")
            return

        weeks = max(1, math.ceil((max_date - min_date) / timedelta(days=7)))
        logger.info("Generating weekly summaries for %s weeks (%s to %s)", weeks, min_date, max_date)
        gateway.ensure_table(ROUTE_WEEKLY_SUMMARY_DDL)

        for week_offset in range(1, weeks + 1):
            try:
                rows = self.source.weekly_summaries(week_offset)
                summaries = [WeeklyRouteSummary.from_row(row) for row in rows]
                if summaries:
                    gateway.write(
                        encode_lines(encode_weekly_summary(row, tz=self.tz) for row in summaries)
                    )
                    result.summaries_written += len(summaries)
                    logger.info("Week %s: generated %s route summaries", week_offset, len(summaries))
            except (TransportError, ValidationError) as exc:
                logger.warning("Failed to process week %s: %s", week_offset, exc)
                result.failed_weeks.append(week_offset)
                self._ledger("week_failed", week_offset=week_offset, code=classify_error(exc).code)

        logger.info("Weekly summaries completed: %s summaries generated", result.summaries_written)


def validate_migration(gateway: TimeSeriesGateway) -> MigrationValidation:
    """Summarize what landed in QuestDB (row counts and basic data-quality figures)."""

    traffic = gateway.execute("SELECT COUNT(*) AS count FROM traffic_analytics").first() or [None]
    summary = gateway.execute("SELECT COUNT(*) AS count FROM route_weekly_summary").first() or [None]
    quality = gateway.execute(
        "SELECT MIN(timestamp) AS earliest, MAX(timestamp) AS latest, "
        "COUNT(DISTINCT route_id) AS unique_routes, AVG(traffic_density) AS avg_density "
        "FROM traffic_analytics"
    ).first() or [None, None, None, None]

    validation = MigrationValidation(
        traffic_records=cell_int(traffic[0]) or 0,
        summary_records=cell_int(summary[0]) or 0,
        earliest=cell_datetime(quality[0]),
        latest=cell_datetime(quality[1]),
        unique_routes=cell_int(quality[2]) or 0,
        avg_density=cell_float(quality[3]),
    )
    logger.info(
        "Validation: %s traffic records, %s weekly summaries, %s routes, range %s to %s",
        validation.traffic_records,
        validation.summary_records,
        validation.unique_routes,
        validation.earliest,
        validation.latest,
    )
    return validation
