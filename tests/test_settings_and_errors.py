from __future__ import annotations

import httpx
import pytest

from routepulse.errors import (
    ConfigurationError,
    PartialFailureError,
    TransportError,
    ValidationError,
    classify_error,
)
from routepulse.settings import AppConfig, load_config, require_postgres, require_questdb
from routepulse.utils.retry import RetryPolicy, call_with_retry


def test_load_config_reads_yaml_and_env_overrides(tmp_path, monkeypatch) -> None:
    for name in ("QUESTDB_HTTP", "QUESTDB_ILP", "PG_CONN", "ROUTEPULSE_ENV"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUESTDB_ILP", "http://questdb.test:9000/write")
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        "\n".join(
            [
                "questdb:",
                "  http_endpoint: http://questdb.test:9000",
                "migration:",
                "  batch_size: 250",
                "  checkpoint_path: cache/checkpoint.json",
            ]
        ),
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.questdb.http_endpoint == "http://questdb.test:9000"
    assert config.questdb.ilp_endpoint == "http://questdb.test:9000/write"
    assert config.migration.batch_size == 250
    assert config.migration.checkpoint_path is not None and config.migration.checkpoint_path.is_absolute()
    assert config.questdb_configured is True
    assert config.postgres_configured is False
    assert config.app.timezone == "Asia/Manila"


def test_env_overrides_do_not_mutate_original() -> None:
    base = AppConfig()
    updated = base.with_env_overrides({"PG_CONN": "postgresql://db/test", "ROUTEPULSE_ENV": "production"})
    assert updated.postgres.dsn == "postgresql://db/test"
    assert updated.app.environment == "production"
    assert base.postgres.dsn == ""


def test_required_sections_raise_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        require_questdb(AppConfig())
    with pytest.raises(ConfigurationError):
        require_postgres(AppConfig())


def test_invalid_retry_attempts_rejected() -> None:
    with pytest.raises(Exception):
        AppConfig.model_validate({"retry": {"attempts": 0}})


@pytest.mark.parametrize(
    "exc,code",
    [
        (ConfigurationError("missing"), "configuration"),
        (ValidationError("bad row"), "invalid_record"),
        (PartialFailureError("x", failed_sink="timeseries"), "partial_timeseries"),
        (TransportError("slow down", status_code=429), "rate_limited"),
        (TransportError("denied", status_code=401), "auth"),
        (TransportError("server", status_code=502), "http_502"),
        (TransportError("plain"), "transport"),
        (RuntimeError("??"), "unknown"),
    ],
)
def test_classify_error_codes(exc, code) -> None:
    assert classify_error(exc).code == code


def test_classify_error_uses_transport_cause() -> None:
    request = httpx.Request("GET", "http://questdb.test/exec")
    try:
        try:
            raise httpx.ConnectTimeout("timed out", request=request)
        except httpx.HTTPError as inner:
            raise TransportError(f"QuestDB query failed: {inner}") from inner
    except TransportError as exc:
        assert classify_error(exc).code == "timeout"


def test_retry_stops_on_success(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("routepulse.utils.retry.time.sleep", lambda seconds: sleeps.append(seconds))
    attempts = {"count": 0}

    def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise TransportError("blip")
        return "ok"

    assert call_with_retry(flaky, RetryPolicy(delay_seconds=0.25)) == "ok"
    assert sleeps == [0.25]


def test_retry_never_retries_validation_errors(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("routepulse.utils.retry.time.sleep", lambda seconds: sleeps.append(seconds))
    attempts = {"count": 0}

    def invalid() -> None:
        attempts["count"] += 1
        raise ValidationError("bad")

    with pytest.raises(ValidationError):
        call_with_retry(invalid)
    assert attempts["count"] == 1
    assert sleeps == []
