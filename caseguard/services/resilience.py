from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from caseguard.core.config import get_settings
from caseguard.services.telemetry import increment_counter


T = TypeVar("T")

TransientException = (TimeoutError, OSError, OperationalError)


def _default_retryable(exc: Exception) -> bool:
    if isinstance(exc, TransientException):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


@dataclass(frozen=True)
class RetryPolicy:
    timeout_ms: int
    max_attempts: int
    backoff_ms: int


def persistence_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        timeout_ms=settings.guardian_persist_timeout_ms,
        max_attempts=settings.guardian_persist_max_attempts,
        backoff_ms=settings.guardian_persist_backoff_ms,
    )


def backoff_delay_s(policy: RetryPolicy, attempt: int) -> float:
    # Exponential in the attempt number with +/-50% jitter.
    base = (policy.backoff_ms / 1000.0) * (2 ** (attempt - 1))
    return base * random.uniform(0.5, 1.5)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    retryable: Callable[[Exception], bool] | None = None,
    counter: str = "persistence_retries_total",
) -> T:
    """Run ``func`` under a per-attempt timeout, retrying transient failures.

    The last exception propagates once attempts run out or a failure is not
    retryable.
    """
    policy = policy or persistence_retry_policy()
    is_retryable = retryable or _default_retryable
    max_attempts = max(policy.max_attempts, 1)
    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(func(), timeout=policy.timeout_ms / 1000.0)
        except Exception as exc:  # noqa: BLE001 - re-raised unless retryable
            if attempt == max_attempts or not is_retryable(exc):
                raise
            increment_counter(counter)
            await asyncio.sleep(backoff_delay_s(policy, attempt))
    raise AssertionError("unreachable")


async def bounded_lookup(func: Callable[[], Awaitable[T]], *, timeout_ms: int | None = None) -> T:
    # External reads are one round trip with a hard timeout; callers decide fail-open vs fail-closed.
    timeout = timeout_ms if timeout_ms is not None else get_settings().guardian_lookup_timeout_ms
    return await asyncio.wait_for(func(), timeout=max(1, int(timeout)) / 1000.0)
