from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from app import audit, events
from app.core.config import get_settings
from app.platform.security.context import ActorUser
from app.quotations.materializer import (
    MaterializationSummary,
    QuotationMaterializer,
    load_quotation_source,
    load_template_source,
)
from app.quotations.models import Quotation, QuotationTemplate
from app.quotations.schemas import MaterializationSummaryRead, QuotationFromTemplateCreate, QuotationRead


logger = logging.getLogger("app.quotations")
tracer = trace.get_tracer("app.quotations")

QUOTATION_STATUSES = {
    "draft",
    "sent",
    "viewed",
    "negotiating",
    "approved",
    "rejected",
    "expired",
    "cancelled",
    "locked",
    "project_baseline",
}
STATUS_APPROVED = "approved"
STATUS_LOCKED = "locked"
STATUS_BASELINE = "project_baseline"
IMMUTABLE_STATUSES = {STATUS_LOCKED, STATUS_BASELINE}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuotationOperationError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(slots=True)
class QuotationService:
    def get_quotation(self, session: Session, actor_user: ActorUser, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_scoped(session, actor_user, quotation_id, with_hierarchy=True)
        return self._to_read(quotation)

    def create_from_template(
        self,
        session: Session,
        actor_user: ActorUser,
        payload: QuotationFromTemplateCreate,
    ) -> QuotationRead:
        template = session.scalar(
            select(QuotationTemplate).where(
                and_(
                    QuotationTemplate.id == payload.template_id,
                    QuotationTemplate.tenant_id == actor_user.tenant_id,
                    QuotationTemplate.is_active.is_(True),
                )
            )
        )
        if template is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "TEMPLATE_NOT_FOUND", "message": "quotation template not found"},
            )

        quotation = Quotation(
            id=uuid.uuid4(),
            tenant_id=actor_user.tenant_id,
            quotation_number=self._next_number(session, actor_user.tenant_id),
            version=1,
            template_id=template.id,
            lead_id=payload.lead_id,
            title=payload.title or template.name,
            status="draft",
            created_by=actor_user.user_id,
        )
        session.add(quotation)
        session.flush()

        spaces, entries = load_template_source(session, template.id)
        summary = QuotationMaterializer(session, source="template").materialize(spaces, entries, quotation.id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="quotations.quotation",
            entity_id=str(quotation.id),
            action="create_from_template",
            before=None,
            after={"template_id": str(template.id), **summary.as_dict()},
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )
        session.commit()
        return self._read_with_summary(session, actor_user, quotation.id, summary)

    def create_revision(self, session: Session, actor_user: ActorUser, quotation_id: uuid.UUID) -> QuotationRead:
        source = self._get_scoped(session, actor_user, quotation_id, with_hierarchy=False)
        if source.status in IMMUTABLE_STATUSES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail={"code": "QUOTATION_LOCKED", "message": f"quotation in status '{source.status}' cannot be revised"},
            )

        latest_version = session.scalar(
            select(func.max(Quotation.version)).where(
                and_(
                    Quotation.tenant_id == source.tenant_id,
                    Quotation.quotation_number == source.quotation_number,
                )
            )
        )
        revision = Quotation(
            id=uuid.uuid4(),
            tenant_id=source.tenant_id,
            quotation_number=source.quotation_number,
            version=(latest_version or source.version) + 1,
            parent_quotation_id=source.id,
            template_id=source.template_id,
            lead_id=source.lead_id,
            title=source.title,
            status="draft",
            created_by=actor_user.user_id,
        )
        session.add(revision)
        session.flush()

        spaces, entries = load_quotation_source(session, source.id)
        summary = QuotationMaterializer(session, source="revision").materialize(spaces, entries, revision.id)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="quotations.quotation",
            entity_id=str(revision.id),
            action="create_revision",
            before={"quotation_id": str(source.id), "version": source.version},
            after={"version": revision.version, **summary.as_dict()},
            correlation_id=actor_user.correlation_id,
            tenant_id=actor_user.tenant_id,
        )
        session.commit()
        return self._read_with_summary(session, actor_user, revision.id, summary)

    def ensure_eligible_for_won(
        self,
        session: Session,
        *,
        tenant_id: str,
        lead_id: uuid.UUID,
        quotation_id: uuid.UUID,
    ) -> Quotation:
        quotation = session.scalar(
            select(Quotation).where(and_(Quotation.id == quotation_id, Quotation.tenant_id == tenant_id))
        )
        if quotation is None or quotation.lead_id != lead_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "INELIGIBLE_QUOTATION", "message": "selected quotation does not belong to this lead"},
            )
        if quotation.status != STATUS_APPROVED:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "INELIGIBLE_QUOTATION",
                    "message": f"selected quotation must be approved, found '{quotation.status}'",
                },
            )
        return quotation

    def lock_for_project(self, session: Session, quotation_id: uuid.UUID, project_id: uuid.UUID) -> str:
        """Locks the quotation to the project and returns the status it had before."""
        quotation = session.get(Quotation, quotation_id)
        if quotation is None:
            raise QuotationOperationError("QUOTATION_NOT_FOUND", f"quotation {quotation_id} not found")
        previous_status = quotation.status
        quotation.status = STATUS_LOCKED
        quotation.locked_for_project_id = project_id
        quotation.locked_at = utcnow()
        quotation.project_id = project_id
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise QuotationOperationError("QUOTATION_LOCK_FAILED", str(exc)) from exc
        return previous_status

    def release_lock(
        self,
        session: Session,
        quotation_id: uuid.UUID,
        project_id: uuid.UUID,
        previous_status: str,
    ) -> None:
        quotation = session.get(Quotation, quotation_id)
        if quotation is None or quotation.locked_for_project_id != project_id:
            return
        quotation.status = previous_status
        quotation.locked_for_project_id = None
        quotation.locked_at = None
        quotation.project_id = None
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise QuotationOperationError("QUOTATION_UNLOCK_FAILED", str(exc)) from exc

    def create_baseline_copy(
        self,
        session: Session,
        source_quotation_id: uuid.UUID,
        project_id: uuid.UUID,
        actor_user_id: str,
    ) -> tuple[uuid.UUID, MaterializationSummary]:
        with tracer.start_as_current_span("quotations.baseline_copy") as span:
            span.set_attribute("source_quotation_id", str(source_quotation_id))
            span.set_attribute("project_id", str(project_id))
            source = session.get(Quotation, source_quotation_id)
            if source is None:
                raise QuotationOperationError("MATERIALIZATION_FAILED", f"source quotation {source_quotation_id} not found")

            try:
                baseline = Quotation(
                    id=uuid.uuid4(),
                    tenant_id=source.tenant_id,
                    quotation_number=source.quotation_number,
                    version=source.version,
                    source_quotation_id=source.id,
                    template_id=source.template_id,
                    lead_id=source.lead_id,
                    project_id=project_id,
                    title=source.title,
                    status=STATUS_BASELINE,
                    created_by=actor_user_id,
                )
                session.add(baseline)
                session.flush()

                spaces, entries = load_quotation_source(session, source.id)
                summary = QuotationMaterializer(session, source="baseline").materialize(spaces, entries, baseline.id)
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                raise QuotationOperationError("MATERIALIZATION_FAILED", str(exc)) from exc

            span.set_attribute("quotation_id", str(baseline.id))
            events.publish(
                events.envelope(
                    "quotations.baseline.created",
                    actor_user_id,
                    {"project_id": str(project_id), **summary.as_dict()},
                    quotation_id=str(baseline.id),
                    source_quotation_id=str(source.id),
                )
            )
            return baseline.id, summary

    def _get_scoped(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        *,
        with_hierarchy: bool,
    ) -> Quotation:
        stmt = select(Quotation).where(and_(Quotation.id == quotation_id, Quotation.tenant_id == actor_user.tenant_id))
        if with_hierarchy:
            stmt = stmt.options(
                selectinload(Quotation.spaces),
                selectinload(Quotation.components),
                selectinload(Quotation.line_items),
            )
        quotation = session.scalar(stmt)
        if quotation is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail={"code": "QUOTATION_NOT_FOUND", "message": "quotation not found"},
            )
        return quotation

    def _read_with_summary(
        self,
        session: Session,
        actor_user: ActorUser,
        quotation_id: uuid.UUID,
        summary: MaterializationSummary,
    ) -> QuotationRead:
        quotation = self._get_scoped(session, actor_user, quotation_id, with_hierarchy=True)
        read = self._to_read(quotation)
        read.materialization = MaterializationSummaryRead(**summary.as_dict())
        return read

    def _to_read(self, quotation: Quotation) -> QuotationRead:
        return QuotationRead.model_validate(quotation)

    def _next_number(self, session: Session, tenant_id: str) -> str:
        prefix = f"{get_settings().quotation_number_prefix}-{utcnow().year}-"
        counter = session.scalar(
            select(func.count(func.distinct(Quotation.quotation_number))).where(
                and_(Quotation.tenant_id == tenant_id, Quotation.quotation_number.like(f"{prefix}%"))
            )
        ) or 0
        return f"{prefix}{counter + 1:05d}"


class SqlQuotationGateway:
    """Quotation collaborator used by the won-transition saga."""

    def __init__(self, session: Session, service: QuotationService | None = None) -> None:
        self.session = session
        self.service = service or quotation_service

    def lock_for_project(self, quotation_id: uuid.UUID, project_id: uuid.UUID) -> str:
        return self.service.lock_for_project(self.session, quotation_id, project_id)

    def release_lock(self, quotation_id: uuid.UUID, project_id: uuid.UUID, previous_status: str) -> None:
        self.service.release_lock(self.session, quotation_id, project_id, previous_status)

    def create_baseline_copy(self, quotation_id: uuid.UUID, project_id: uuid.UUID, actor_user_id: str) -> uuid.UUID:
        baseline_id, _summary = self.service.create_baseline_copy(self.session, quotation_id, project_id, actor_user_id)
        return baseline_id


quotation_service = QuotationService()
