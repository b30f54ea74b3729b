from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, Header, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.persistence.db import get_session
from caseguard.services.guardian.engine import EvaluationEngine
from caseguard.services.workflows.engine import WorkflowEngine
from caseguard.services.workflows.scheduler import Scheduler


ROLE_ORDER = {"reader": 0, "member": 1, "admin": 2}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity resolved by the upstream auth gateway and forwarded as headers.
    tenant_id: str
    actor_id: str | None = None
    role: str = "member"


async def get_principal(
    x_tenant_id: str | None = Header(default=None),
    x_actor_id: str | None = Header(default=None),
    x_actor_role: str | None = Header(default=None),
) -> Principal:
    if not x_tenant_id or not x_tenant_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-Tenant-Id header"},
        )
    role = (x_actor_role or "member").strip().lower()
    if role not in ROLE_ORDER:
        role = "reader"
    return Principal(tenant_id=x_tenant_id.strip(), actor_id=x_actor_id, role=role)


def require_role(minimum_role: str) -> Callable[..., Principal]:
    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if ROLE_ORDER.get(principal.role, 0) < ROLE_ORDER[minimum_role]:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"code": "AUTH_FORBIDDEN", "message": f"{minimum_role} role required"},
            )
        return principal

    return _dependency


# Service factories are dependencies so tests can swap in fakes via dependency_overrides.
def get_evaluation_engine() -> EvaluationEngine:
    return EvaluationEngine()


def get_scheduler() -> Scheduler:
    return Scheduler()


def get_workflow_engine(scheduler: Scheduler = Depends(get_scheduler)) -> WorkflowEngine:
    return WorkflowEngine(scheduler=scheduler)
