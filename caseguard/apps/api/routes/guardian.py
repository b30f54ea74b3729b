from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from caseguard.apps.api.deps import Principal, get_db, get_evaluation_engine, get_principal, require_role
from caseguard.apps.api.response import SuccessEnvelope, page_response, success_response
from caseguard.domain.events import GuardianEvent
from caseguard.domain.models import GuardianFinding
from caseguard.persistence.repos.findings import list_findings
from caseguard.persistence.repos.rules import list_tenant_active_rules
from caseguard.services.guardian.conflicts import detect_conflicts
from caseguard.services.guardian.engine import EvaluationEngine


router = APIRouter(tags=["guardian"])


class GuardianEventRequest(BaseModel):
    # Tenant and actor come from identity headers, never from the body.
    event_type: str = Field(min_length=1)
    subject_type: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    timestamp: datetime | None = None
    context: dict[str, Any] = Field(default_factory=dict)

    def to_event(self, principal: Principal) -> GuardianEvent:
        timestamp = self.timestamp or datetime.now(timezone.utc)
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        return GuardianEvent(
            tenant_id=principal.tenant_id,
            event_type=self.event_type,
            subject_type=self.subject_type,
            subject_id=self.subject_id,
            actor_id=principal.actor_id,
            timestamp=timestamp,
            context=self.context,
        )


def _finding_payload(row: GuardianFinding) -> dict[str, Any]:
    return {
        "id": row.id,
        "rule_id": row.rule_id,
        "event_type": row.event_type,
        "subject_type": row.subject_type,
        "subject_id": row.subject_id,
        "actor_id": row.actor_id,
        "severity": row.severity,
        "message": row.message,
        "remediation": row.remediation,
        "status": row.status,
        "blocking": bool(row.blocking),
        "simulated": bool(row.simulated),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


@router.post("/guardian/evaluate", response_model=SuccessEnvelope[dict[str, Any]])
async def evaluate_event(
    request: Request,
    payload: GuardianEventRequest,
    principal: Principal = Depends(get_principal),
    engine: EvaluationEngine = Depends(get_evaluation_engine),
) -> dict[str, Any]:
    # Always 200: a blocked decision is a normal answer the caller acts on.
    result = await engine.evaluate(payload.to_event(principal))
    return success_response(request=request, data=result.to_dict())


@router.get("/guardian/findings", response_model=SuccessEnvelope[dict[str, Any]])
async def get_findings(
    request: Request,
    subject_id: str | None = Query(default=None),
    rule_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    blocking: bool | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rows = await list_findings(
        db,
        tenant_id=principal.tenant_id,
        subject_id=subject_id,
        rule_id=rule_id,
        status=status,
        blocking=blocking,
        offset=offset,
        limit=limit,
    )
    return page_response(
        request=request, items=[_finding_payload(row) for row in rows], offset=offset, limit=limit
    )


@router.get("/admin/guardian/conflicts", response_model=SuccessEnvelope[dict[str, list[dict[str, Any]]]])
async def get_policy_conflicts(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    rules = await list_tenant_active_rules(db, tenant_id=principal.tenant_id)
    conflicts = detect_conflicts(rules)
    return success_response(request=request, data={"items": [conflict.to_dict() for conflict in conflicts]})
