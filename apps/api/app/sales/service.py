from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from app import events
from app.metrics import observe_lead_transition
from app.otel import mark_span_failed
from app.platform.security import (
    ActorUser,
    CapabilityDeniedError,
    ResourceAction,
    require_capability,
    to_auth_context,
)
from app.projects.service import ProvisioningError, SqlProjectProvisioner
from app.quotations.service import SqlQuotationGateway, quotation_service
from app.sales.lead_state import LeadStateMutator
from app.sales.models import Lead, LeadActivity
from app.sales.properties import PropertyResolver, property_snapshot
from app.sales.provisioning import (
    ProvisioningOrchestrator,
    ProvisioningOutcome,
    ProvisioningPlan,
    SqlTenantSettingsReader,
)
from app.sales.schemas import LeadActivityRead, LeadRead, StageTransitionRequest, StageTransitionResponse
from app.sales.stages import (
    INVALID_TRANSITION,
    MISSING_FIELDS,
    VALID_STAGE_TRANSITIONS,
    WON,
    validate,
)


logger = logging.getLogger("app.sales.service")
tracer = trace.get_tracer("app.sales")

PROJECT_CREATION_FAILED = "PROJECT_CREATION_FAILED"

# lead columns consulted when a transition body omits a required field
STORED_LEAD_FIELDS = (
    "service_type",
    "target_start_date",
    "target_end_date",
    "budget_range",
    "selected_quotation_id",
    "won_amount",
    "contract_signed_date",
    "expected_project_start",
    "disqualification_reason",
    "lost_reason",
    "lost_notes",
)


def build_orchestrator(session: Session) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(
        SqlProjectProvisioner(session),
        SqlQuotationGateway(session),
        SqlTenantSettingsReader(session),
    )


def stored_values(lead: Lead) -> dict[str, Any]:
    return {**property_snapshot(lead.property), **{name: getattr(lead, name) for name in STORED_LEAD_FIELDS}}


def _project_name(lead: Lead) -> str:
    property_name = lead.property.property_name if lead.property is not None else None
    return f"{lead.client_name} - {property_name}" if property_name else lead.client_name


@dataclass(slots=True)
class LeadTransitionService:
    orchestrator_factory: Callable[[Session], ProvisioningOrchestrator] = field(default=build_orchestrator)

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadRead:
        return LeadRead.model_validate(self._get_scoped(session, actor_user, lead_id))

    def list_activities(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[LeadActivityRead]:
        lead = self._get_scoped(session, actor_user, lead_id)
        rows = session.scalars(
            select(LeadActivity)
            .where(and_(LeadActivity.lead_id == lead.id, LeadActivity.tenant_id == lead.tenant_id))
            .order_by(LeadActivity.created_at.desc())
        ).all()
        return [LeadActivityRead.model_validate(row) for row in rows]

    def transition(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: StageTransitionRequest,
    ) -> StageTransitionResponse:
        started = time.perf_counter()
        with tracer.start_as_current_span("sales.lead.transition") as span:
            span.set_attribute("lead_id", str(lead_id))
            span.set_attribute("to_stage", dto.to_stage)
            span.set_attribute("correlation_id", actor_user.correlation_id or "")
            lead = self._get_scoped(session, actor_user, lead_id)
            from_stage = lead.stage
            span.set_attribute("from_stage", from_stage)
            try:
                response = self._transition(session, actor_user, lead, dto)
            except HTTPException as exc:
                code = exc.detail.get("code", "error") if isinstance(exc.detail, dict) else "error"
                mark_span_failed(span, exc, code=code)
                observe_lead_transition(from_stage, dto.to_stage, code.lower())
                logger.info(
                    "sales.lead.transition_rejected",
                    extra={
                        "lead_id": str(lead_id),
                        "from_stage": from_stage,
                        "to_stage": dto.to_stage,
                        "error_code": code,
                    },
                )
                raise

            observe_lead_transition(from_stage, dto.to_stage, "ok", time.perf_counter() - started)
            logger.info(
                "sales.lead.transitioned",
                extra={
                    "lead_id": str(lead_id),
                    "from_stage": from_stage,
                    "to_stage": dto.to_stage,
                    "project_id": str(response.project_id) if response.project_id else None,
                },
            )
            return response

    def _transition(
        self,
        session: Session,
        actor_user: ActorUser,
        lead: Lead,
        dto: StageTransitionRequest,
    ) -> StageTransitionResponse:
        from_stage, to_stage = lead.stage, dto.to_stage
        fields = dto.model_dump(exclude={"to_stage", "skip_project_creation"})

        validation = validate(from_stage, to_stage, fields, stored_values(lead))
        if validation.error_code == INVALID_TRANSITION:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": INVALID_TRANSITION,
                    "message": f"cannot move lead from '{from_stage}' to '{to_stage}'",
                    "allowed_stages": sorted(VALID_STAGE_TRANSITIONS.get(from_stage, set())),
                },
            )

        if to_stage == WON:
            try:
                require_capability(to_auth_context(actor_user), "sales.leads", ResourceAction.CLOSE_WON)
            except CapabilityDeniedError as exc:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={"code": "FORBIDDEN", "message": "not allowed to close won deals", "capability": exc.capability},
                ) from exc

        quotation_id = fields.get("selected_quotation_id") or lead.selected_quotation_id
        if to_stage == WON and quotation_id is not None:
            quotation_service.ensure_eligible_for_won(
                session, tenant_id=lead.tenant_id, lead_id=lead.id, quotation_id=quotation_id
            )

        if validation.error_code == MISSING_FIELDS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": MISSING_FIELDS,
                    "message": f"Missing required fields: {', '.join(validation.missing_fields)}",
                    "missing_fields": validation.missing_fields,
                },
            )

        warnings: list[str] = []
        resolution = PropertyResolver(session).resolve(lead, fields, actor_user.user_id)
        if resolution.warning:
            warnings.append(resolution.warning)

        mutator = LeadStateMutator(session)
        mutation = mutator.apply(lead, to_stage, fields, actor_user, property_id=resolution.property_id)

        outcome = ProvisioningOutcome()
        if to_stage == WON:
            plan = ProvisioningPlan(
                tenant_id=lead.tenant_id,
                lead_id=lead.id,
                actor_user_id=actor_user.user_id,
                project_name=_project_name(lead),
                service_type=lead.service_type,
                quotation_id=quotation_id,
                property_id=lead.property_id,
                project_manager_id=dto.project_manager_id,
                priority=dto.project_priority,
                start_date=lead.expected_project_start,
                expected_end_date=dto.expected_project_end,
                skip=dto.skip_project_creation,
            )

            def compensate(error: ProvisioningError) -> None:
                mutator.revert(lead, mutation, actor_user, reason=f"project provisioning failed: {error.message}")

            outcome = self.orchestrator_factory(session).run(plan, compensate)
            if outcome.rolled_back:
                error = outcome.error
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail={
                        "code": PROJECT_CREATION_FAILED,
                        "message": "Lead could not be marked won because project creation failed",
                        "error": error.message if error else None,
                        "error_code": error.code if error else None,
                    },
                )
            warnings.extend(outcome.warnings)
            events.publish(
                events.envelope(
                    "sales.lead.won",
                    actor_user.user_id,
                    {
                        "project_id": str(outcome.project_id) if outcome.project_id else None,
                        "baseline_quotation_id": (
                            str(outcome.baseline_quotation_id) if outcome.baseline_quotation_id else None
                        ),
                        "saga_state": outcome.state.value,
                    },
                    lead_id=str(lead.id),
                    tenant_id=lead.tenant_id,
                )
            )

        return StageTransitionResponse(
            lead=LeadRead.model_validate(lead),
            project_id=outcome.project_id,
            project_created=outcome.project_created,
            baseline_quotation_id=outcome.baseline_quotation_id,
            warnings=warnings,
        )

    def _get_scoped(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> Lead:
        lead = session.scalar(select(Lead).where(and_(Lead.id == lead_id, Lead.tenant_id == actor_user.tenant_id)))
        if lead is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "LEAD_NOT_FOUND", "message": "lead not found"},
            )
        return lead


lead_transition_service = LeadTransitionService()
