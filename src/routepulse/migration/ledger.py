from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)


def safe_append_ledger_entry(path: Optional[Path], entry: dict[str, Any]) -> None:
    """Append a single JSON line to the migration progress ledger.

    This is best-effort: a migration should not fail if the ledger cannot be written.
    """

    if path is None:
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=str)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(payload + "\n")
    except OSError as exc:
        logger.warning("Could not append to migration ledger %s: %s", path, exc)


def read_latest_ledger_entry(path: Path) -> dict[str, Any] | None:
    """Return the latest valid JSON entry from a JSONL ledger, or None if not available."""

    if not path.exists():
        return None

    try:
        lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError:
        return None

    for raw_line in reversed(lines):
        line = raw_line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
