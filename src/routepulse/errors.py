"""Error taxonomy shared by the ingestion, migration and forecasting layers.

- `ConfigurationError`: a required endpoint or credential is missing. Raised at construction.
- `ValidationError`: a record or batch is malformed. Rejects that record/batch only.
- `TransportError`: network or HTTP failure talking to a store. Read paths retry it.
- `StorageError`: the relational database rejected a statement, e.g. a missing table. Never
  retried.
- `PartialFailureError`: one sink of a dual write failed after the other succeeded.

ValidationError, ConfigurationError and StorageError are never retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

import httpx


class RoutePulseError(RuntimeError):
    """Base class for all pipeline errors."""


class ConfigurationError(RoutePulseError):
    pass


class ValidationError(RoutePulseError, ValueError):
    pass


class TransportError(RoutePulseError):
    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(RoutePulseError):
    pass


class PartialFailureError(RoutePulseError):
    """Raised when a secondary sink failed; `succeeded_sinks` were already written and kept."""

    def __init__(
        self,
        message: str,
        *,
        failed_sink: str,
        succeeded_sinks: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.failed_sink = failed_sink
        self.succeeded_sinks = tuple(succeeded_sinks)


@dataclass(frozen=True)
class ErrorInfo:
    code: str
    kind: str
    message: str


def classify_error(exc: BaseException) -> ErrorInfo:
    """Classify pipeline failures into stable codes for ledgers and log lines."""

    text = str(exc)
    lower = text.lower()

    if isinstance(exc, ConfigurationError):
        return ErrorInfo(code="configuration", kind="config", message=text)
    if isinstance(exc, ValidationError):
        return ErrorInfo(code="invalid_record", kind="validation", message=text)
    if isinstance(exc, PartialFailureError):
        return ErrorInfo(code=f"partial_{exc.failed_sink}", kind="partial", message=text)
    if isinstance(exc, StorageError):
        return ErrorInfo(code="storage", kind="database", message=text)

    if isinstance(exc, TransportError) and exc.status_code is not None:
        status = int(exc.status_code)
        if status == 429:
            return ErrorInfo(code="rate_limited", kind="http", message=f"HTTP 429 rate limited: {text}")
        if status in {401, 403}:
            return ErrorInfo(code="auth", kind="http", message=f"HTTP {status} auth error: {text}")
        return ErrorInfo(code=f"http_{status}", kind="http", message=f"HTTP {status}: {text}")

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        return ErrorInfo(code=f"http_{status}", kind="http", message=f"HTTP {status}: {text}")

    cause = exc.__cause__ if isinstance(exc, TransportError) else exc
    if isinstance(cause, httpx.TimeoutException):
        return ErrorInfo(code="timeout", kind="network", message=text)
    if isinstance(cause, httpx.ConnectError):
        if "name or service not known" in lower or "temporary failure in name resolution" in lower:
            return ErrorInfo(code="dns", kind="network", message=text)
        return ErrorInfo(code="connect_error", kind="network", message=text)
    if isinstance(exc, TransportError):
        return ErrorInfo(code="transport", kind="network", message=text)

    return ErrorInfo(code="unknown", kind="unknown", message=text)
