from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from scorewatch.core.config import get_settings
from scorewatch.services.telemetry import increment_counter


TransientException = (TimeoutError, OSError)


def _default_retryable(exc: Exception) -> bool:
    # Retry only transient network/timeout failures by default.
    if isinstance(exc, TransientException):
        return True
    status = getattr(exc, "status_code", None)
    if isinstance(status, int) and status >= 500:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def score_source_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.score_source_timeout_ms,
        max_attempts=settings.score_source_retry_max_attempts,
        backoff_ms=settings.score_source_retry_backoff_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
) -> Any:
    # Bound each attempt by the policy timeout and back off with jitter between attempts.
    policy = policy or score_source_retry_policy()
    retryable = retryable or _default_retryable
    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - caller handles non-transient failures
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            increment_counter("external_retries_total")
            jitter = random.uniform(0.5, 1.5)
            sleep_s = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter
            await asyncio.sleep(sleep_s)
            attempt += 1
