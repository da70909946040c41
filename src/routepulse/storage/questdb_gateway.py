"""Thin HTTP transport for QuestDB.

Two endpoints sit behind one `TimeSeriesGateway` interface:
- Query execution: `GET <http_endpoint>/exec?query=...` returning `{query, columns, dataset, count}`.
  Used for DDL (`CREATE TABLE IF NOT EXISTS`) and analytical SELECTs. Retried with linear backoff.
- Line-protocol write: `POST <ilp_endpoint>` with a `text/plain` body of newline-joined lines.
  Any non-2xx response fails the whole batch. Writes are never retried here.

Cells in a `QueryResult` are always strings (None stays None); callers parse them.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional, Protocol
from zoneinfo import ZoneInfo

import httpx

from routepulse.errors import ConfigurationError, TransportError
from routepulse.settings import AppConfig
from routepulse.utils.retry import RetryPolicy, call_with_retry
from routepulse.utils.time import parse_datetime

logger = logging.getLogger(__name__)


def cell_float(value: Optional[str]) -> Optional[float]:
    if value is None or value == "" or value.lower() == "null":
        return None
    try:
        number = float(value)
    except ValueError:
        return None
    return None if math.isnan(number) else number


def cell_int(value: Optional[str]) -> Optional[int]:
    number = cell_float(value)
    return None if number is None or math.isinf(number) else int(number)


def cell_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parse_datetime(value, ZoneInfo("UTC"))
    except ValueError:
        return None


@dataclass(frozen=True)
class Column:
    name: str
    type: str = ""


@dataclass(frozen=True)
class QueryResult:
    query: str
    columns: list[Column] = field(default_factory=list)
    dataset: list[list[Optional[str]]] = field(default_factory=list)
    count: int = 0

    @property
    def rows(self) -> list[list[Optional[str]]]:
        return self.dataset

    def first(self) -> Optional[list[Optional[str]]]:
        return self.dataset[0] if self.dataset else None

    def column_index(self, name: str) -> int:
        for index, column in enumerate(self.columns):
            if column.name == name:
                return index
        raise KeyError(name)

    def records(self) -> list[dict[str, Optional[str]]]:
        names = [column.name for column in self.columns]
        return [dict(zip(names, row)) for row in self.dataset]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], query: str) -> "QueryResult":
        columns = [
            Column(name=str(item.get("name", "")), type=str(item.get("type", "")))
            for item in payload.get("columns") or []
            if isinstance(item, Mapping)
        ]
        dataset = [
            [None if cell is None else str(cell) for cell in row]
            for row in payload.get("dataset") or []
        ]
        count = payload.get("count")
        return cls(
            query=str(payload.get("query", query)),
            columns=columns,
            dataset=dataset,
            count=int(count) if count is not None else len(dataset),
        )


class TimeSeriesGateway(Protocol):
    def execute(self, query: str, params: Optional[Mapping[str, str]] = None) -> QueryResult: ...

    def write(self, lines: str) -> None: ...

    def ensure_table(self, ddl: str) -> None: ...

    def close(self) -> None: ...


def ensure_reachable(gateway: TimeSeriesGateway, purpose: str) -> None:
    """Raise TransportError unless `SELECT 1` answers with at least one row."""

    try:
        reachable = gateway.execute("SELECT 1").first() is not None
    except TransportError as exc:
        raise TransportError(
            f"QuestDB is not accessible - {purpose} cannot proceed: {exc}",
            status_code=exc.status_code,
        ) from exc
    if not reachable:
        raise TransportError(f"QuestDB query returned no results - {purpose} cannot proceed")


class QuestDBHttpGateway:
    """QuestDB REST + ILP-over-HTTP client. Owns its httpx client unless one is injected."""

    def __init__(
        self,
        http_endpoint: str,
        ilp_endpoint: str,
        *,
        timeout_seconds: float = 30,
        user_agent: str = "RoutePulse-Analytics/1.0",
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        if not http_endpoint:
            raise ConfigurationError("QuestDB HTTP endpoint is required")
        if not ilp_endpoint:
            raise ConfigurationError("QuestDB ILP endpoint is required")

        self.http_endpoint = http_endpoint.rstrip("/")
        self.ilp_endpoint = ilp_endpoint
        self.retry_policy = retry_policy or RetryPolicy()
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout_seconds)
        self._headers = {"user-agent": user_agent}

    @classmethod
    def from_config(
        cls, config: AppConfig, http_client: Optional[httpx.Client] = None
    ) -> "QuestDBHttpGateway":
        return cls(
            config.questdb.http_endpoint,
            config.questdb.ilp_endpoint,
            timeout_seconds=config.questdb.request_timeout_seconds,
            user_agent=config.questdb.user_agent,
            retry_policy=RetryPolicy.from_config(config),
            http_client=http_client,
        )

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "QuestDBHttpGateway":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _exec_once(self, query: str, params: Mapping[str, str]) -> QueryResult:
        request_params = {"query": query, **params}
        try:
            response = self._http.get(
                f"{self.http_endpoint}/exec",
                params=request_params,
                headers={**self._headers, "accept": "application/json"},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            status = int(exc.response.status_code)
            raise TransportError(
                f"QuestDB query failed: {status} - {exc.response.text}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"QuestDB query failed: {exc}") from exc
        except ValueError as exc:
            raise TransportError(f"QuestDB returned a non-JSON response: {exc}") from exc

        if not isinstance(payload, Mapping):
            raise TransportError("QuestDB returned an unexpected response shape")
        return QueryResult.from_payload(payload, query)

    def execute(self, query: str, params: Optional[Mapping[str, str]] = None) -> QueryResult:
        extra = dict(params or {})
        return call_with_retry(
            lambda: self._exec_once(query, extra),
            self.retry_policy,
            description="QuestDB query",
        )

    def ensure_table(self, ddl: str) -> None:
        self.execute(ddl)

    def write(self, lines: str) -> None:
        if not lines.strip():
            return
        try:
            response = self._http.post(
                self.ilp_endpoint,
                content=lines.encode("utf-8"),
                headers={**self._headers, "content-type": "text/plain; charset=utf-8"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = int(exc.response.status_code)
            raise TransportError(
                f"QuestDB ILP failed: {status} - {exc.response.text}", status_code=status
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"QuestDB ILP failed: {exc}") from exc
        logger.debug("Wrote %s line(s) to QuestDB", lines.count("\n") + 1)

    def ping(self) -> None:
        ensure_reachable(self, "connectivity check")
