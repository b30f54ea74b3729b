from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from caseguard.core.config import get_settings
from caseguard.core.logging import configure_logging
from caseguard.persistence.db import SessionLocal
from caseguard.services.workflows.scheduler import Scheduler
from caseguard.services.workflows.sla import escalate_overdue_cases


logger = logging.getLogger(__name__)


async def fire_scheduled_job(ctx, job_id: str) -> str:
    # arq delivers a wake-up; the job row decides whether anything happens.
    scheduler: Scheduler = ctx.get("scheduler") or Scheduler()
    outcome = await scheduler.fire(job_id)
    return outcome.outcome or outcome.status


async def run_due_job_loop(scheduler: Scheduler) -> None:
    # Fire due jobs on a bounded cadence so lost or delayed queue deliveries still run.
    settings = get_settings()
    interval_s = max(1, int(settings.scheduler_poll_interval_s))
    batch = max(1, int(settings.scheduler_batch_size))
    while True:
        try:
            outcomes = await scheduler.run_due_jobs(limit=batch)
            if outcomes:
                logger.info("workflow_due_jobs_processed count=%s", len(outcomes))
        except Exception:  # noqa: BLE001 - keep the poller alive while surfacing failures in worker logs.
            logger.exception("workflow due-job poll failed")
        await asyncio.sleep(interval_s)


async def sweep_overdue_cases_once() -> list[str]:
    async with SessionLocal() as session:
        escalated = await escalate_overdue_cases(session)
        await session.commit()
    return escalated


async def run_sla_sweep_loop() -> None:
    # Hourly by default; a case escalates once because the sweep stamps sla_breached_at.
    interval_s = max(1, int(get_settings().case_sla_sweep_interval_s))
    while True:
        try:
            await sweep_overdue_cases_once()
        except Exception:  # noqa: BLE001 - keep the sweep alive across transient database failures.
            logger.exception("case SLA sweep failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    scheduler = Scheduler()
    ctx["scheduler"] = scheduler
    ctx["scheduler_task"] = asyncio.create_task(run_due_job_loop(scheduler))
    ctx["sla_sweep_task"] = asyncio.create_task(run_sla_sweep_loop())


async def _shutdown(ctx) -> None:
    for key in ("scheduler_task", "sla_sweep_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.workflow_queue_name
    max_tries = max(1, int(settings.scheduler_max_attempts))
    functions = [fire_scheduled_job]
    on_startup = _startup
    on_shutdown = _shutdown
