from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import (
    Principal,
    get_db,
    get_principal,
    get_scheduler,
    get_workflow_engine,
    require_role,
)
from caseguard.apps.api.response import SuccessEnvelope, page_response, success_response
from caseguard.apps.api.routes.guardian import GuardianEventRequest
from caseguard.domain.models import ComplianceWorkflow, ScheduledJob
from caseguard.services.workflows.engine import WorkflowEngine
from caseguard.services.workflows.scheduler import Scheduler


router = APIRouter(tags=["workflows"])


class WorkflowDraft(BaseModel):
    id: str = Field(default="draft", min_length=1)
    name: str = ""
    trigger_event: str = Field(min_length=1)
    condition: dict[str, Any] | None = None
    action: str = Field(min_length=1)
    action_params: dict[str, Any] | None = None
    sla_hours: float | None = None

    def to_model(self, tenant_id: str) -> ComplianceWorkflow:
        # Transient row used only for compilation; never added to a session.
        return ComplianceWorkflow(
            id=self.id,
            tenant_id=tenant_id,
            name=self.name,
            trigger_event=self.trigger_event,
            condition_json=self.condition,
            action=self.action,
            action_params_json=self.action_params,
            sla_hours=self.sla_hours,
            enabled=True,
        )


class ValidateWorkflowsRequest(BaseModel):
    # Omit to validate every stored workflow for the tenant.
    workflows: list[WorkflowDraft] | None = None


def _job_payload(row: ScheduledJob) -> dict[str, Any]:
    return {
        "id": row.id,
        "workflow_id": row.workflow_id,
        "subject_type": row.subject_type,
        "subject_id": row.subject_id,
        "execute_at": row.execute_at.isoformat() if row.execute_at else None,
        "status": row.status,
        "outcome": row.outcome,
        "attempts": int(row.attempts or 0),
        "last_error": row.last_error,
        "fired_at": row.fired_at.isoformat() if row.fired_at else None,
        "cancelled_at": row.cancelled_at.isoformat() if row.cancelled_at else None,
    }


@router.post("/workflows/trigger", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def trigger_workflows(
    request: Request,
    payload: GuardianEventRequest,
    principal: Principal = Depends(get_principal),
    engine: WorkflowEngine = Depends(get_workflow_engine),
) -> dict[str, Any]:
    outcomes = await engine.handle_event(payload.to_event(principal))
    return success_response(request=request, data={"items": [outcome.to_dict() for outcome in outcomes]})


@router.get("/workflows/jobs", response_model=SuccessEnvelope[dict[str, Any]])
async def get_jobs(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    subject_id: str | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    rows = await scheduler.list_jobs(
        tenant_id=principal.tenant_id,
        status=status_filter,
        subject_id=subject_id,
        offset=offset,
        limit=limit,
    )
    return page_response(request=request, items=[_job_payload(row) for row in rows], offset=offset, limit=limit)


@router.post("/workflows/jobs/{job_id}/cancel", response_model=SuccessEnvelope[dict[str, Any]])
async def cancel_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    scheduler: Scheduler = Depends(get_scheduler),
) -> dict[str, Any]:
    cancelled = await scheduler.cancel(tenant_id=principal.tenant_id, job_id=job_id)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Pending job not found"},
        )
    return success_response(request=request, data={"job_id": job_id, "status": "cancelled"})


@router.post("/admin/workflows/validate", response_model=SuccessEnvelope[dict[str, Any]])
async def validate_workflows(
    request: Request,
    payload: ValidateWorkflowsRequest,
    principal: Principal = Depends(require_role("admin")),
    engine: WorkflowEngine = Depends(get_workflow_engine),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    if payload.workflows is not None:
        workflows = [draft.to_model(principal.tenant_id) for draft in payload.workflows]
    else:
        result = await db.execute(
            select(ComplianceWorkflow)
            .where(ComplianceWorkflow.tenant_id == principal.tenant_id)
            .order_by(ComplianceWorkflow.id.asc())
        )
        workflows = list(result.scalars().all())
    warnings = engine.validate_workflows(workflows)
    return success_response(
        request=request,
        data={
            "checked": len(workflows),
            "valid": not warnings,
            "warnings": [warning.to_dict() for warning in warnings],
        },
    )
