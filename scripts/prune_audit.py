from __future__ import annotations

import argparse
import asyncio
import logging

from caseguard.core.logging import configure_logging
from caseguard.persistence.db import SessionLocal
from caseguard.services.audit import prune_audit_events


logger = logging.getLogger(__name__)


async def _prune(*, retention_days: int | None, dry_run: bool) -> int:
    async with SessionLocal() as session:
        deleted = await prune_audit_events(session, retention_days=retention_days)
        if dry_run:
            # Report what would go without touching the table.
            await session.rollback()
        else:
            await session.commit()
    logger.info("audit_prune_completed deleted=%s dry_run=%s", deleted, dry_run)
    return deleted


def main() -> None:
    parser = argparse.ArgumentParser(description="Delete audit events older than the retention window.")
    parser.add_argument("--retention-days", type=int, default=None, help="Override AUDIT_RETENTION_DAYS.")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()
    configure_logging()
    deleted = asyncio.run(_prune(retention_days=args.retention_days, dry_run=args.dry_run))
    print(f"pruned_audit_events={deleted} dry_run={str(args.dry_run).lower()}")


if __name__ == "__main__":
    main()
