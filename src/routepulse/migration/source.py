from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol, Sequence

from routepulse.utils.time import to_utc


@dataclass(frozen=True)
class SampleFilters:
    """Row filters applied identically to the count query and every page query."""

    start: Optional[datetime] = None
    end: Optional[datetime] = None
    route_ids: tuple[int, ...] = ()

    def fingerprint(self) -> str:
        payload = {
            "start": to_utc(self.start).isoformat() if self.start else None,
            "end": to_utc(self.end).isoformat() if self.end else None,
            "route_ids": sorted(self.route_ids),
        }
        text = json.dumps(payload, sort_keys=True)
        return hashlib.sha256(text.encode("utf-8")).hexdigest()


class SourceReader(Protocol):
    """Read access to the system of record used by the migrator."""

    def count(self, filters: SampleFilters) -> int: ...

    def fetch_page(
        self, filters: SampleFilters, *, limit: int, offset: int
    ) -> Sequence[Mapping[str, Any]]: ...

    def time_range(self) -> tuple[Optional[datetime], Optional[datetime]]: ...

    def weekly_summaries(self, week_offset: int) -> Sequence[Mapping[str, Any]]: ...
