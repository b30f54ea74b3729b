from __future__ import annotations

import asyncio

from caseguard.core.logging import configure_logging
from caseguard.services.workflows.scheduler import Scheduler
from caseguard.workers.scheduler_worker import run_due_job_loop


async def _main() -> None:
    # Poll-only mode for deployments without Redis (scheduler_execution_mode=inline).
    configure_logging()
    await run_due_job_loop(Scheduler())


if __name__ == "__main__":
    asyncio.run(_main())
