from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional


@dataclass
class MigrationCheckpoint:
    """Progress of one migration run. The offset only moves forward, one batch at a time."""

    offset: int
    total_count_at_start: int
    batch_size: int

    def advance(self) -> None:
        self.offset += self.batch_size

    @property
    def progress_pct(self) -> int:
        if self.total_count_at_start <= 0:
            return 100
        return min(100, round(self.offset / self.total_count_at_start * 100))


@dataclass(frozen=True)
class CheckpointFile:
    """A checkpoint persisted as JSON, keyed by the fingerprint of the migration filters."""

    path: Path

    def load(self, fingerprint: str, batch_size: int) -> Optional[MigrationCheckpoint]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(data, dict):
            return None
        if data.get("fingerprint") != fingerprint or int(data.get("batch_size", -1)) != int(batch_size):
            return None
        return MigrationCheckpoint(
            offset=int(data.get("offset", 0)),
            total_count_at_start=int(data.get("total_count_at_start", 0)),
            batch_size=int(batch_size),
        )

    def save(self, fingerprint: str, checkpoint: MigrationCheckpoint) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"fingerprint": fingerprint, **asdict(checkpoint)}
        self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
