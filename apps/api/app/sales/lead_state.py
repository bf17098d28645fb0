from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.platform.security.context import ActorUser
from app.sales.models import Lead, LeadActivity
from app.sales.stages import (
    DISQUALIFIED,
    LOST,
    PROPOSAL_DISCUSSION,
    QUALIFIED,
    REQUIREMENT_DISCUSSION,
    STAGE_LABELS,
    WON,
    is_present,
)


logger = logging.getLogger("app.sales.lead_state")

_QUALIFIED_FIELDS = ("service_type", "target_start_date", "target_end_date")
_REQUIREMENT_FIELDS = (*_QUALIFIED_FIELDS, "budget_range", "project_scope")

STAGE_FIELD_PROJECTION: dict[str, tuple[str, ...]] = {
    QUALIFIED: _QUALIFIED_FIELDS,
    REQUIREMENT_DISCUSSION: _REQUIREMENT_FIELDS,
    PROPOSAL_DISCUSSION: _REQUIREMENT_FIELDS,
    WON: (*_REQUIREMENT_FIELDS, "selected_quotation_id", "won_amount", "contract_signed_date", "expected_project_start"),
    LOST: ("lost_reason", "lost_to_competitor", "lost_notes"),
    DISQUALIFIED: ("disqualification_reason", "disqualification_notes"),
}
# exit stages write their whole projection, clearing optional notes that were not sent
OVERWRITE_STAGES = frozenset({LOST, DISQUALIFIED})

ACTIVITY_TITLES: dict[str, str] = {
    WON: "Lead won",
    LOST: "Lead lost",
    DISQUALIFIED: "Lead disqualified",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class LeadMutation:
    lead_id: uuid.UUID
    from_stage: str
    to_stage: str
    previous_values: dict[str, Any] = field(default_factory=dict)
    applied_values: dict[str, Any] = field(default_factory=dict)


def _jsonable(values: Mapping[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(dict(values), default=str))


class LeadStateMutator:
    """Applies a validated stage change to the lead row and emits its activity records."""

    def __init__(self, session: Session):
        self.session = session

    def project_fields(self, to_stage: str, fields: Mapping[str, Any]) -> dict[str, Any]:
        projection = STAGE_FIELD_PROJECTION.get(to_stage, ())
        if to_stage in OVERWRITE_STAGES:
            return {name: fields.get(name) for name in projection}
        return {name: fields[name] for name in projection if is_present(fields.get(name))}

    def apply(
        self,
        lead: Lead,
        to_stage: str,
        fields: Mapping[str, Any],
        actor_user: ActorUser,
        *,
        property_id: uuid.UUID | None = None,
    ) -> LeadMutation:
        now = utcnow()
        updates: dict[str, Any] = {"stage": to_stage, **self.project_fields(to_stage, fields)}
        if to_stage == QUALIFIED:
            updates["assigned_to"] = fields.get("assigned_to") or actor_user.user_id
            updates["assigned_at"] = now
            updates["assigned_by"] = actor_user.user_id
        if to_stage == WON:
            updates["won_at"] = now
        if property_id is not None and property_id != lead.property_id:
            updates["property_id"] = property_id

        mutation = LeadMutation(
            lead_id=lead.id,
            from_stage=lead.stage,
            to_stage=to_stage,
            previous_values={name: getattr(lead, name) for name in updates},
            applied_values=updates,
        )
        self._write(lead, updates)

        self._record_transition_activity(lead, mutation, fields, actor_user)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="sales.lead",
            entity_id=str(lead.id),
            action="stage_transition",
            before=_jsonable(mutation.previous_values),
            after=_jsonable(mutation.applied_values),
            correlation_id=actor_user.correlation_id,
            tenant_id=lead.tenant_id,
        )
        events.publish(
            events.envelope(
                "sales.lead.stage_changed",
                actor_user.user_id,
                {"from_stage": mutation.from_stage, "to_stage": to_stage},
                lead_id=str(lead.id),
                tenant_id=lead.tenant_id,
            )
        )
        return mutation

    def revert(self, lead: Lead, mutation: LeadMutation, actor_user: ActorUser, reason: str) -> None:
        """Compensating write: restores every column the mutation touched."""
        self._write(lead, dict(mutation.previous_values))

        self._add_activity(
            lead,
            actor_user,
            activity_type="stage_reverted",
            title=f"Stage reverted to {STAGE_LABELS.get(mutation.from_stage, mutation.from_stage)}",
            description=reason,
            metadata={"from_stage": mutation.to_stage, "to_stage": mutation.from_stage},
        )
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="sales.lead",
            entity_id=str(lead.id),
            action="stage_reverted",
            before=_jsonable(mutation.applied_values),
            after=_jsonable(mutation.previous_values),
            correlation_id=actor_user.correlation_id,
            tenant_id=lead.tenant_id,
        )
        events.publish(
            events.envelope(
                "sales.lead.stage_reverted",
                actor_user.user_id,
                {"from_stage": mutation.to_stage, "to_stage": mutation.from_stage, "reason": reason},
                lead_id=str(lead.id),
                tenant_id=lead.tenant_id,
            )
        )

    def _write(self, lead: Lead, values: Mapping[str, Any]) -> None:
        for name, value in values.items():
            setattr(lead, name, value)
        lead.row_version = lead.row_version + 1
        lead.updated_at = utcnow()
        self.session.add(lead)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail={"code": "LEAD_UPDATE_FAILED", "message": "failed to update lead stage", "error": str(exc)[:500]},
            ) from exc

    def _record_transition_activity(
        self,
        lead: Lead,
        mutation: LeadMutation,
        fields: Mapping[str, Any],
        actor_user: ActorUser,
    ) -> None:
        to_stage = mutation.to_stage
        stage_values = {
            name: value for name, value in mutation.applied_values.items() if name in STAGE_FIELD_PROJECTION.get(to_stage, ())
        }
        change_reason = fields.get("change_reason")

        if to_stage in ACTIVITY_TITLES:
            description = {
                WON: change_reason,
                LOST: fields.get("lost_notes"),
                DISQUALIFIED: fields.get("disqualification_notes"),
            }[to_stage]
            self._add_activity(
                lead,
                actor_user,
                activity_type=to_stage,
                title=ACTIVITY_TITLES[to_stage],
                description=description,
                metadata={"from_stage": mutation.from_stage, **stage_values},
            )
        elif is_present(change_reason):
            self._add_activity(
                lead,
                actor_user,
                activity_type="note",
                title=f"Stage changed to {STAGE_LABELS.get(to_stage, to_stage)}",
                description=change_reason,
                metadata={"from_stage": mutation.from_stage, "to_stage": to_stage},
            )

    def _add_activity(
        self,
        lead: Lead,
        actor_user: ActorUser,
        *,
        activity_type: str,
        title: str,
        description: str | None,
        metadata: Mapping[str, Any],
    ) -> None:
        lead_id = lead.id
        self.session.add(
            LeadActivity(
                id=uuid.uuid4(),
                tenant_id=lead.tenant_id,
                lead_id=lead_id,
                activity_type=activity_type,
                title=title,
                description=description,
                metadata_json=json.dumps(dict(metadata), default=str),
                created_by=actor_user.user_id,
            )
        )
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(
                "sales.lead.activity_failed",
                extra={"lead_id": str(lead_id), "error_code": activity_type, "error": str(exc)},
            )
