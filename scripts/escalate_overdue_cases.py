from __future__ import annotations

import argparse
import asyncio
import logging

from caseguard.core.logging import configure_logging
from caseguard.persistence.db import SessionLocal
from caseguard.services.workflows.sla import escalate_overdue_cases


logger = logging.getLogger(__name__)


async def _sweep(*, limit: int | None, dry_run: bool) -> list[str]:
    async with SessionLocal() as session:
        escalated = await escalate_overdue_cases(session, limit=limit)
        if dry_run:
            await session.rollback()
        else:
            await session.commit()
    logger.info("case_sla_sweep_completed escalated=%s dry_run=%s", len(escalated), dry_run)
    return escalated


def main() -> None:
    parser = argparse.ArgumentParser(description="Escalate open cases that are past their SLA.")
    parser.add_argument("--limit", type=int, default=None, help="Override CASE_SLA_SWEEP_BATCH_SIZE.")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    escalated = asyncio.run(_sweep(limit=args.limit, dry_run=args.dry_run))
    for case_id in escalated:
        print(case_id)
    print(f"escalated_cases={len(escalated)} dry_run={str(args.dry_run).lower()}")


if __name__ == "__main__":
    main()
