from __future__ import annotations

import asyncio

import pytest

from caseguard.services.resilience import RetryPolicy, bounded_lookup, retry_async
from caseguard.services.telemetry import counters_snapshot


FAST = RetryPolicy(timeout_ms=500, max_attempts=3, backoff_ms=1)


@pytest.mark.asyncio
async def test_retry_async_recovers_from_transient_errors() -> None:
    attempts = {"count": 0}

    async def flaky() -> str:
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise OSError("connection reset")
        return "ok"

    assert await retry_async(flaky, policy=FAST, counter="test_retries_total") == "ok"
    assert attempts["count"] == 3
    assert counters_snapshot()["test_retries_total"] == 2


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_logic_errors() -> None:
    attempts = {"count": 0}

    async def broken() -> None:
        attempts["count"] += 1
        raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await retry_async(broken, policy=FAST)
    assert attempts["count"] == 1


@pytest.mark.asyncio
async def test_retry_async_gives_up_after_max_attempts() -> None:
    attempts = {"count": 0}

    async def down() -> None:
        attempts["count"] += 1
        raise TimeoutError()

    with pytest.raises(TimeoutError):
        await retry_async(down, policy=FAST)
    assert attempts["count"] == FAST.max_attempts


@pytest.mark.asyncio
async def test_bounded_lookup_enforces_timeout() -> None:
    async def slow() -> str:
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(TimeoutError):
        await bounded_lookup(slow, timeout_ms=10)


@pytest.mark.asyncio
async def test_bounded_lookup_uses_configured_timeout(monkeypatch) -> None:
    monkeypatch.setenv("GUARDIAN_LOOKUP_TIMEOUT_MS", "10")

    async def slow() -> None:
        await asyncio.sleep(1)

    with pytest.raises(TimeoutError):
        await bounded_lookup(slow)
