from __future__ import annotations

import httpx
import pytest

from routepulse.errors import ConfigurationError, TransportError
from routepulse.settings import AppConfig
from routepulse.storage.questdb_gateway import QuestDBHttpGateway, cell_datetime, cell_float, cell_int

HTTP = "http://questdb.test:9000"
ILP = "http://questdb.test:9000/write"


def _gateway(handler) -> QuestDBHttpGateway:
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return QuestDBHttpGateway(HTTP, ILP, http_client=http_client)


def test_execute_returns_string_cells() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "query": "SELECT hour, avg FROM t",
                "columns": [{"name": "hour", "type": "INT"}, {"name": "avg", "type": "DOUBLE"}],
                "dataset": [[7, 0.5], [8, None]],
                "count": 2,
            },
        )

    gateway = _gateway(handler)
    try:
        result = gateway.execute("SELECT hour, avg FROM t", {"limit": "10"})
    finally:
        gateway.close()

    assert result.rows == [["7", "0.5"], ["8", None]]
    assert result.count == 2
    assert result.column_index("avg") == 1
    assert result.records()[0] == {"hour": "7", "avg": "0.5"}

    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/exec"
    assert request.url.params["query"] == "SELECT hour, avg FROM t"
    assert request.url.params["limit"] == "10"
    assert request.headers["accept"] == "application/json"


def test_execute_retries_with_linear_backoff(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("routepulse.utils.retry.time.sleep", lambda seconds: sleeps.append(seconds))

    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"columns": [{"name": "1"}], "dataset": [[1]], "count": 1})

    gateway = _gateway(handler)
    try:
        gateway.ping()
    finally:
        gateway.close()

    assert calls["count"] == 3
    assert sleeps == [0.25, 0.5]


def test_execute_gives_up_after_three_attempts(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("routepulse.utils.retry.time.sleep", lambda seconds: sleeps.append(seconds))

    gateway = _gateway(lambda request: httpx.Response(500, text="boom"))
    try:
        with pytest.raises(TransportError) as excinfo:
            gateway.execute("SELECT 1")
    finally:
        gateway.close()

    assert excinfo.value.status_code == 500
    assert "boom" in str(excinfo.value)
    assert sleeps == [0.25, 0.5]


def test_write_posts_plain_text_once() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    gateway = _gateway(handler)
    try:
        gateway.write("m,route_id=1 v=1i 1\nm,route_id=2 v=2i 2")
        gateway.write("")
    finally:
        gateway.close()

    assert len(seen) == 1
    assert seen[0].method == "POST"
    assert str(seen[0].url) == ILP
    assert seen[0].headers["content-type"].startswith("text/plain")
    assert seen[0].content == b"m,route_id=1 v=1i 1\nm,route_id=2 v=2i 2"


def test_write_failure_is_not_retried(monkeypatch) -> None:
    sleeps: list[float] = []
    monkeypatch.setattr("routepulse.utils.retry.time.sleep", lambda seconds: sleeps.append(seconds))
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(400, text="invalid line")

    gateway = _gateway(handler)
    try:
        with pytest.raises(TransportError) as excinfo:
            gateway.write("bad line")
    finally:
        gateway.close()

    assert excinfo.value.status_code == 400
    assert calls["count"] == 1
    assert sleeps == []


def test_missing_endpoints_are_configuration_errors() -> None:
    with pytest.raises(ConfigurationError):
        QuestDBHttpGateway("", ILP)
    with pytest.raises(ConfigurationError):
        QuestDBHttpGateway.from_config(AppConfig())


def test_cell_parsers() -> None:
    assert cell_float("0.25") == 0.25
    assert cell_float(None) is None
    assert cell_float("NaN") is None
    assert cell_int("42") == 42
    assert cell_int("3.0") == 3
    parsed = cell_datetime("2024-01-01T00:00:00.000000Z")
    assert parsed is not None and parsed.utcoffset().total_seconds() == 0
    assert cell_datetime("garbage") is None


def test_ping_rejects_empty_select_one() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"columns": [{"name": "1"}], "dataset": [], "count": 0})

    gateway = _gateway(handler)
    try:
        with pytest.raises(TransportError, match="no results"):
            gateway.ping()
    finally:
        gateway.close()
