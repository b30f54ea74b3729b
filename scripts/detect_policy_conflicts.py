from __future__ import annotations

import argparse
import asyncio
import json

from caseguard.persistence.db import SessionLocal
from caseguard.persistence.repos.rules import list_tenant_active_rules
from caseguard.services.guardian.conflicts import detect_conflicts


async def _report(tenant_id: str) -> int:
    async with SessionLocal() as session:
        rules = await list_tenant_active_rules(session, tenant_id=tenant_id)
    conflicts = detect_conflicts(rules)
    for conflict in conflicts:
        print(json.dumps(conflict.to_dict(), sort_keys=True))
    print(f"tenant_id={tenant_id} active_rules={len(rules)} conflicts={len(conflicts)}")
    # Non-zero exit lets CI gate on critical collisions.
    return 1 if any(conflict.severity == "critical" for conflict in conflicts) else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Report policy rule conflicts for a tenant.")
    parser.add_argument("--tenant", required=True)
    args = parser.parse_args()
    raise SystemExit(asyncio.run(_report(args.tenant)))


if __name__ == "__main__":
    main()
