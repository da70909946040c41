from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any

import yaml

from routepulse.settings import project_root


def _default_logging_config(level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s"}
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "level": level,
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            }
        },
        "root": {"level": level, "handlers": ["console"]},
    }


def configure_logging(logging_config_path: str | Path | None = None, *, level: str = "INFO") -> None:
    root = project_root()
    candidate = logging_config_path or os.getenv(
        "ROUTEPULSE_LOGGING_CONFIG", "configs/logging.yaml"
    )
    path = Path(candidate)
    if not path.is_absolute():
        path = root / path
    if not path.exists():
        logging.config.dictConfig(_default_logging_config(level.upper()))
        return

    config: dict[str, Any] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    logging.config.dictConfig(config)
