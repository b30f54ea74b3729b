from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Callable, ClassVar, Mapping
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseguard.core.config import get_settings
from caseguard.core.errors import UnknownActionError
from caseguard.domain.events import ActionIntent, ActionResult, GuardianEvent, thaw
from caseguard.domain.models import Case, CaseTimelineEvent, ComplianceWorkflow, Notification
from caseguard.persistence.db import SessionLocal
from caseguard.services.audit import AUDIT_ACTION_EXECUTED, record_event
from caseguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Bump when a handler's payload shape changes; stored with every executed action.
ACTION_SCHEMA_VERSION = 1

ACTION_CREATE_CASE = "create_case"
ACTION_NOTIFY_DSL = "notify_dsl"
ACTION_ESCALATE_INCIDENT = "escalate_incident"
# Closed set; tenants may swap handlers for these types but never add new types.
ACTION_WHITELIST = frozenset({ACTION_CREATE_CASE, ACTION_NOTIFY_DSL, ACTION_ESCALATE_INCIDENT})

ACTION_STATUS_EXECUTED = "executed"

SYSTEM_ACTOR = "system_workflow_engine"
CASE_STATUS_TRIAGE = "triage"
OPEN_CASE_STATUSES = ("triage", "active", "waiting")
ESCALATED_TAG = "escalated"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _subject_label(event: GuardianEvent) -> str:
    context = event.context
    return str(context.get("studentName") or context.get("subjectName") or event.subject_id)


def _params(workflow: ComplianceWorkflow) -> Mapping[str, Any]:
    return workflow.action_params_json or {}


class ActionHandler:
    """One whitelisted action type.

    ``build`` is pure and runs while workflows are evaluated; ``execute``
    performs the side effect and runs only inside the ActionExecutor.
    """

    action_type: ClassVar[str] = ""

    def build(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> dict[str, Any]:
        raise NotImplementedError

    async def execute(
        self,
        payload: Mapping[str, Any],
        *,
        tenant_id: str,
        session: AsyncSession,
        now: datetime,
    ) -> ActionResult:
        raise NotImplementedError


class CreateCaseHandler(ActionHandler):
    action_type = ACTION_CREATE_CASE

    def build(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> dict[str, Any]:
        params = _params(workflow)
        label = _subject_label(event)
        return {
            "schema_version": ACTION_SCHEMA_VERSION,
            "subject_type": event.subject_type,
            "subject_id": event.subject_id,
            "title": params.get("title") or f"{workflow.name or 'Compliance alert'}: {label}",
            "description": params.get("description")
            or f"Raised by workflow {workflow.name or workflow.id} on {event.event_type}. Verify immediately.",
            "priority": params.get("priority") or "high",
            "source_workflow_id": workflow.id,
        }

    async def execute(
        self,
        payload: Mapping[str, Any],
        *,
        tenant_id: str,
        session: AsyncSession,
        now: datetime,
    ) -> ActionResult:
        case = Case(
            id=uuid4().hex,
            tenant_id=tenant_id,
            subject_type=str(payload.get("subject_type") or ""),
            subject_id=str(payload.get("subject_id") or ""),
            title=str(payload.get("title") or "Compliance alert"),
            description=payload.get("description"),
            priority=str(payload.get("priority") or "high"),
            status=CASE_STATUS_TRIAGE,
            tags_json=[str(tag) for tag in thaw(payload.get("tags") or [])],
            source_workflow_id=payload.get("source_workflow_id"),
            created_by=SYSTEM_ACTOR,
            sla_due_at=now + timedelta(hours=get_settings().case_default_sla_hours),
        )
        session.add(case)
        session.add(
            CaseTimelineEvent(
                case_id=case.id,
                tenant_id=tenant_id,
                event_type="created",
                content="Case opened by compliance workflow.",
                actor_id=SYSTEM_ACTOR,
                metadata_json={"source_workflow_id": case.source_workflow_id},
                created_at=now,
            )
        )
        return ActionResult(
            action_type=self.action_type,
            status=ACTION_STATUS_EXECUTED,
            reference_id=case.id,
            detail={"priority": case.priority, "sla_due_at": case.sla_due_at.isoformat()},
        )


class NotifyDslHandler(ActionHandler):
    action_type = ACTION_NOTIFY_DSL

    def build(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> dict[str, Any]:
        params = _params(workflow)
        reason = event.context.get("reason")
        body = f"Safeguarding Alert: {reason}" if reason else f"Safeguarding Alert for {_subject_label(event)}"
        return {
            "schema_version": ACTION_SCHEMA_VERSION,
            "recipient_role": params.get("recipient_role") or "dsl",
            "title": params.get("title") or "Safeguarding Alert",
            "body": body,
            "subject_type": event.subject_type,
            "subject_id": event.subject_id,
            "source_workflow_id": workflow.id,
        }

    async def execute(
        self,
        payload: Mapping[str, Any],
        *,
        tenant_id: str,
        session: AsyncSession,
        now: datetime,
    ) -> ActionResult:
        notification = Notification(
            id=uuid4().hex,
            tenant_id=tenant_id,
            type="safeguarding_alert",
            recipient_role=str(payload.get("recipient_role") or "dsl"),
            title=str(payload.get("title") or "Safeguarding Alert"),
            body=payload.get("body"),
            subject_id=payload.get("subject_id"),
            payload_json={
                "subject_type": payload.get("subject_type"),
                "source_workflow_id": payload.get("source_workflow_id"),
            },
            read=False,
            created_at=now,
        )
        session.add(notification)
        return ActionResult(
            action_type=self.action_type,
            status=ACTION_STATUS_EXECUTED,
            reference_id=notification.id,
            detail={"recipient_role": notification.recipient_role},
        )


class EscalateIncidentHandler(ActionHandler):
    action_type = ACTION_ESCALATE_INCIDENT

    def build(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> dict[str, Any]:
        params = _params(workflow)
        return {
            "schema_version": ACTION_SCHEMA_VERSION,
            "subject_type": event.subject_type,
            "subject_id": event.subject_id,
            "title": params.get("title") or f"Escalated incident: {_subject_label(event)}",
            "reason": params.get("reason") or f"Workflow {workflow.name or workflow.id} escalated {event.event_type}.",
            "source_workflow_id": workflow.id,
        }

    async def execute(
        self,
        payload: Mapping[str, Any],
        *,
        tenant_id: str,
        session: AsyncSession,
        now: datetime,
    ) -> ActionResult:
        subject_id = str(payload.get("subject_id") or "")
        reason = str(payload.get("reason") or "Incident escalated.")
        result = await session.execute(
            select(Case)
            .where(
                Case.tenant_id == tenant_id,
                Case.subject_id == subject_id,
                Case.status.in_(OPEN_CASE_STATUSES),
            )
            .order_by(Case.created_at.asc(), Case.id.asc())
        )
        cases = list(result.scalars().all())
        created = False
        if not cases:
            # Nothing open to bump; open a critical case so the escalation is not lost.
            case = Case(
                id=uuid4().hex,
                tenant_id=tenant_id,
                subject_type=str(payload.get("subject_type") or ""),
                subject_id=subject_id,
                title=str(payload.get("title") or "Escalated incident"),
                description=reason,
                priority="critical",
                status=CASE_STATUS_TRIAGE,
                tags_json=[ESCALATED_TAG],
                source_workflow_id=payload.get("source_workflow_id"),
                created_by=SYSTEM_ACTOR,
                sla_due_at=now + timedelta(hours=get_settings().case_default_sla_hours),
            )
            session.add(case)
            cases = [case]
            created = True
        else:
            for case in cases:
                case.priority = "critical"
                tags = list(case.tags_json or [])
                if ESCALATED_TAG not in tags:
                    tags.append(ESCALATED_TAG)
                # Reassign so the JSON column is flagged dirty.
                case.tags_json = tags
                case.updated_at = now
        for case in cases:
            session.add(
                CaseTimelineEvent(
                    case_id=case.id,
                    tenant_id=tenant_id,
                    event_type="status_change",
                    content="Incident escalated. Priority raised to Critical.",
                    actor_id=SYSTEM_ACTOR,
                    metadata_json={"reason": reason, "source_workflow_id": payload.get("source_workflow_id")},
                    created_at=now,
                )
            )
        case_ids = [case.id for case in cases]
        return ActionResult(
            action_type=self.action_type,
            status=ACTION_STATUS_EXECUTED,
            reference_id=case_ids[0],
            detail={"case_ids": case_ids, "created": created},
        )


class ActionRegistry:
    """Handlers keyed by action type with optional per-tenant replacements."""

    def __init__(self, handlers: list[ActionHandler] | None = None) -> None:
        self._handlers: dict[str, ActionHandler] = {}
        self._tenant_handlers: dict[tuple[str, str], ActionHandler] = {}
        for handler in handlers or [CreateCaseHandler(), NotifyDslHandler(), EscalateIncidentHandler()]:
            self.register(handler.action_type, handler)

    def register(self, action_type: str, handler: ActionHandler, *, tenant_id: str | None = None) -> None:
        if action_type not in ACTION_WHITELIST:
            raise UnknownActionError(f"action type not in whitelist v{ACTION_SCHEMA_VERSION}: {action_type!r}")
        if tenant_id is None:
            self._handlers[action_type] = handler
        else:
            self._tenant_handlers[(tenant_id, action_type)] = handler

    def is_supported(self, action_type: str) -> bool:
        return action_type in ACTION_WHITELIST and action_type in self._handlers

    def resolve(self, action_type: str, *, tenant_id: str | None = None) -> ActionHandler:
        if tenant_id is not None:
            handler = self._tenant_handlers.get((tenant_id, action_type))
            if handler is not None:
                return handler
        handler = self._handlers.get(action_type)
        if handler is None or action_type not in ACTION_WHITELIST:
            raise UnknownActionError(f"unknown action type: {action_type!r}")
        return handler


default_action_registry = ActionRegistry()


class ActionExecutor:
    def __init__(
        self,
        registry: ActionRegistry | None = None,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._registry = registry or default_action_registry
        self._session_factory = session_factory or SessionLocal
        self._clock = clock or _utc_now

    @property
    def registry(self) -> ActionRegistry:
        return self._registry

    def build_intent(self, event: GuardianEvent, workflow: ComplianceWorkflow) -> ActionIntent:
        # Pure: resolves the handler and builds its payload without touching storage.
        handler = self._registry.resolve(workflow.action, tenant_id=event.tenant_id)
        return ActionIntent(type=workflow.action, payload=handler.build(event, workflow), workflow_id=workflow.id)

    async def execute(self, intent: ActionIntent, *, tenant_id: str) -> ActionResult:
        handler = self._registry.resolve(intent.type, tenant_id=tenant_id)
        now = self._clock()
        async with self._session_factory() as session:
            result = await handler.execute(intent.payload, tenant_id=tenant_id, session=session, now=now)
            # The audit row commits together with the action's own writes.
            await record_event(
                session=session,
                occurred_at=now,
                tenant_id=tenant_id,
                actor_type="system",
                actor_id=SYSTEM_ACTOR,
                event_type=AUDIT_ACTION_EXECUTED,
                outcome="success",
                resource_type=intent.type,
                resource_id=result.reference_id,
                metadata={
                    "workflow_id": intent.workflow_id,
                    "schema_version": ACTION_SCHEMA_VERSION,
                    "detail": thaw(result.detail),
                },
            )
            await session.commit()
        increment_counter("workflow_actions_executed_total")
        logger.info(
            "workflow_action_executed action=%s tenant_id=%s workflow_id=%s reference_id=%s",
            intent.type,
            tenant_id,
            intent.workflow_id,
            result.reference_id,
        )
        return result
