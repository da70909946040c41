"""Bounded retry with linear backoff for read-only store queries.

Attempt `n` (1-based) that fails with a retryable error sleeps `delay_seconds * n` before the next
attempt; after the last attempt the final error is raised unchanged. There is no jitter and no
circuit breaker. Writes are not routed through this helper.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from routepulse.errors import TransportError
from routepulse.settings import AppConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    delay_seconds: float = 0.25
    retry_on: tuple[type[BaseException], ...] = (TransportError,)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, self.delay_seconds * attempt)

    @classmethod
    def from_config(cls, config: AppConfig) -> "RetryPolicy":
        return cls(attempts=int(config.retry.attempts), delay_seconds=float(config.retry.delay_seconds))


def call_with_retry(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    *,
    description: str = "request",
) -> T:
    resolved = policy or RetryPolicy()
    attempts = max(1, int(resolved.attempts))

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except resolved.retry_on as exc:
            if attempt >= attempts:
                raise
            delay = resolved.delay_for(attempt)
            logger.warning(
                "%s failed (%s). Retrying in %.2fs (attempt %s/%s).",
                description,
                exc,
                delay,
                attempt,
                attempts,
            )
            time.sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
