from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from routepulse.errors import ConfigurationError


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(root: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (root / path)


class AppSection(BaseModel):
    name: str = "routepulse"
    timezone: str = "Asia/Manila"
    environment: str = "development"


class QuestdbSection(BaseModel):
    # Base URL of the REST API; queries go to `<http_endpoint>/exec`.
    http_endpoint: str = ""
    # Full URL of the line-protocol write endpoint (e.g. http://localhost:9000/write).
    ilp_endpoint: str = ""
    request_timeout_seconds: float = 30
    user_agent: str = "RoutePulse-Analytics/1.0"


class PostgresSection(BaseModel):
    dsn: str = ""
    connect_timeout_seconds: int = 30
    samples_table: str = "public.traffic_analytics"
    bookings_table: str = "public.bookings"


class RetrySection(BaseModel):
    attempts: int = 3
    delay_seconds: float = 0.25

    @field_validator("attempts")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("retry.attempts must be >= 1")
        return value


class MigrationSection(BaseModel):
    batch_size: int = 1000
    inter_batch_delay_seconds: float = 0.1
    checkpoint_path: Optional[Path] = None
    ledger_path: Optional[Path] = Path("data/cache/migration_ledger.jsonl")


class ForecastSection(BaseModel):
    key_hours: list[int] = Field(default_factory=lambda: [7, 9, 12, 17, 19, 22])
    horizon_days: int = 7
    lookback_weeks: int = 4
    trend_window_days: int = 14
    history_days: int = 90
    weekday_saturation_samples: int = 8


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    questdb: QuestdbSection = Field(default_factory=QuestdbSection)
    postgres: PostgresSection = Field(default_factory=PostgresSection)
    retry: RetrySection = Field(default_factory=RetrySection)
    migration: MigrationSection = Field(default_factory=MigrationSection)
    forecast: ForecastSection = Field(default_factory=ForecastSection)

    @property
    def questdb_configured(self) -> bool:
        return bool(self.questdb.http_endpoint and self.questdb.ilp_endpoint)

    @property
    def postgres_configured(self) -> bool:
        return bool(self.postgres.dsn)

    def resolve_paths(self, root: Optional[Path] = None) -> "AppConfig":
        repo_root = project_root() if root is None else root
        updates: dict[str, Any] = {}
        if self.migration.checkpoint_path is not None:
            updates["checkpoint_path"] = _resolve_path(repo_root, self.migration.checkpoint_path)
        if self.migration.ledger_path is not None:
            updates["ledger_path"] = _resolve_path(repo_root, self.migration.ledger_path)
        return self.model_copy(update={"migration": self.migration.model_copy(update=updates)})

    def with_env_overrides(self, environ: Optional[dict[str, str]] = None) -> "AppConfig":
        """Apply endpoint and credential overrides from the environment."""

        env = os.environ if environ is None else environ
        questdb_updates: dict[str, Any] = {}
        if env.get("QUESTDB_HTTP"):
            questdb_updates["http_endpoint"] = env["QUESTDB_HTTP"].strip()
        if env.get("QUESTDB_ILP"):
            questdb_updates["ilp_endpoint"] = env["QUESTDB_ILP"].strip()

        updated = self
        if questdb_updates:
            updated = updated.model_copy(
                update={"questdb": updated.questdb.model_copy(update=questdb_updates)}
            )
        if env.get("PG_CONN"):
            updated = updated.model_copy(
                update={"postgres": updated.postgres.model_copy(update={"dsn": env["PG_CONN"].strip()})}
            )
        if env.get("ROUTEPULSE_ENV"):
            updated = updated.model_copy(
                update={"app": updated.app.model_copy(update={"environment": env["ROUTEPULSE_ENV"].strip()})}
            )
        return updated


def require_questdb(config: AppConfig) -> None:
    if not config.questdb.http_endpoint:
        raise ConfigurationError("QuestDB HTTP endpoint is required (questdb.http_endpoint / QUESTDB_HTTP).")
    if not config.questdb.ilp_endpoint:
        raise ConfigurationError("QuestDB ILP endpoint is required (questdb.ilp_endpoint / QUESTDB_ILP).")


def require_postgres(config: AppConfig) -> None:
    if not config.postgres.dsn:
        raise ConfigurationError("PostgreSQL connection string is required (postgres.dsn / PG_CONN).")


def _maybe_load_dotenv() -> None:
    from dotenv import load_dotenv

    load_dotenv()


def load_config(config_path: str | Path | None = None) -> AppConfig:
    _maybe_load_dotenv()

    root = project_root()
    candidate = config_path or os.getenv("ROUTEPULSE_CONFIG", "configs/config.yaml")
    path = _resolve_path(root, candidate)
    if not path.exists():
        path = root / "configs/config.example.yaml"

    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data).with_env_overrides().resolve_paths(root)
