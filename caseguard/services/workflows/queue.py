from __future__ import annotations

import asyncio
from datetime import datetime
import logging

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings

from caseguard.core.config import get_settings


logger = logging.getLogger(__name__)

FIRE_JOB_FUNCTION = "fire_scheduled_job"

# One pool per event loop; test loops come and go.
_pools: dict[asyncio.AbstractEventLoop, ArqRedis] = {}


def _inline_mode() -> bool:
    return get_settings().scheduler_execution_mode.lower() == "inline"


async def get_arq_pool() -> ArqRedis:
    loop = asyncio.get_running_loop()
    pool = _pools.get(loop)
    if pool is None:
        settings = get_settings()
        pool = await create_pool(
            RedisSettings.from_dsn(settings.redis_url),
            default_queue_name=settings.workflow_queue_name,
        )
        # Drop pools bound to loops that have since closed.
        for stale in [key for key in _pools if key.is_closed()]:
            _pools.pop(stale, None)
        _pools[loop] = pool
    return pool


def fire_job_key(job_id: str, attempt: int = 0) -> str:
    # arq ignores an enqueue whose id it still holds a result for, so retries get their own id.
    return f"fire:{job_id}" if attempt <= 0 else f"fire:{job_id}:{attempt}"


async def enqueue_fire_job(job_id: str, *, execute_at: datetime, attempt: int = 0) -> bool:
    """Defer a fire call to ``execute_at``; False when the queue is skipped, unreachable or deduplicated.

    The scheduled_jobs row stays the source of truth, so a lost enqueue is
    recovered by the worker's due-job poll.
    """
    if _inline_mode():
        return False
    try:
        pool = await get_arq_pool()
        queued = await pool.enqueue_job(
            FIRE_JOB_FUNCTION,
            job_id,
            _job_id=fire_job_key(job_id, attempt),
            _queue_name=get_settings().workflow_queue_name,
            _defer_until=execute_at,
        )
    except Exception as exc:  # noqa: BLE001 - poller recovers missed deliveries
        logger.warning("workflow_job_enqueue_failed job_id=%s error=%s", job_id, type(exc).__name__)
        return False
    if queued is None:
        logger.warning("workflow_job_enqueue_duplicate job_id=%s attempt=%s", job_id, attempt)
        return False
    return True
