from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence
from zoneinfo import ZoneInfo

from routepulse.errors import ConfigurationError, PartialFailureError
from routepulse.ingestion.line_protocol import encode_samples
from routepulse.ingestion.schemas import TrafficSample
from routepulse.storage.questdb_gateway import TimeSeriesGateway
from routepulse.storage.tables import TRAFFIC_ANALYTICS_DDL
from routepulse.utils.time import DEFAULT_TZ

logger = logging.getLogger(__name__)

RELATIONAL = "relational"
TIMESERIES = "timeseries"


class RelationalSink(Protocol):
    def save_samples(self, samples: Sequence[TrafficSample]) -> None: ...


@dataclass(frozen=True)
class DualWriteOutcome:
    sinks_written: tuple[str, ...] = ()
    records: int = 0


class DualWriteCoordinator:
    """Write samples to the system of record first, then mirror them into the time-series store.

    The relational write is authoritative: if it fails the error propagates and the time-series
    store is never touched. A time-series failure after a relational success never undoes the
    relational write; it is raised as `PartialFailureError` so callers can reconcile with a
    migration run.
    """

    def __init__(
        self,
        relational: Optional[RelationalSink] = None,
        gateway: Optional[TimeSeriesGateway] = None,
        *,
        tz: ZoneInfo = DEFAULT_TZ,
    ) -> None:
        if relational is None and gateway is None:
            raise ConfigurationError("At least one sink (relational or time-series) must be configured")
        self.relational = relational
        self.gateway = gateway
        self.tz = tz

    def save(self, samples: Sequence[TrafficSample]) -> DualWriteOutcome:
        if not samples:
            return DualWriteOutcome()

        written: list[str] = []
        if self.relational is not None:
            self.relational.save_samples(samples)
            written.append(RELATIONAL)

        if self.gateway is not None:
            try:
                lines = encode_samples(samples, tz=self.tz)
                self.gateway.ensure_table(TRAFFIC_ANALYTICS_DDL)
                self.gateway.write(lines)
            except Exception as exc:
                if not written:
                    raise
                logger.error(
                    "Time-series write failed after %s samples were saved to %s: %s",
                    len(samples),
                    ", ".join(written),
                    exc,
                )
                raise PartialFailureError(
                    f"Saved {len(samples)} samples to {', '.join(written)} but the time-series write failed: {exc}",
                    failed_sink=TIMESERIES,
                    succeeded_sinks=tuple(written),
                ) from exc
            written.append(TIMESERIES)

        logger.info("Saved %s traffic samples to %s", len(samples), ", ".join(written))
        return DualWriteOutcome(sinks_written=tuple(written), records=len(samples))
