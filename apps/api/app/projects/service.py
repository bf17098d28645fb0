from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from opentelemetry import trace
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.core.config import get_settings
from app.projects.models import Project


tracer = trace.get_tracer("app.projects")

PROJECT_NUMBER_CONFLICT = "PROJECT_NUMBER_CONFLICT"
PROJECT_STORE_ERROR = "PROJECT_STORE_ERROR"
PROJECT_NOT_FOUND = "PROJECT_NOT_FOUND"


class ProvisioningError(Exception):
    """A project-side store failure; only number collisions are retryable."""

    def __init__(self, code: str, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable


@dataclass(slots=True)
class ProjectCreationRequest:
    tenant_id: str
    lead_id: uuid.UUID
    created_by: str
    project_category: str
    name: str
    quotation_id: uuid.UUID | None = None
    property_id: uuid.UUID | None = None
    project_manager_id: str | None = None
    priority: str | None = None
    start_date: date | None = None
    expected_end_date: date | None = None


def _is_project_number_collision(exc: IntegrityError) -> bool:
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return "project_number" in message


class SqlProjectProvisioner:
    """Creates and links project rows; each call is its own committed unit."""

    def __init__(self, session: Session):
        self.session = session

    def create_project_from_lead(self, request: ProjectCreationRequest) -> uuid.UUID:
        with tracer.start_as_current_span("projects.create_from_lead") as span:
            span.set_attribute("lead_id", str(request.lead_id))
            span.set_attribute("correlation_id", get_correlation_id() or "")
            project = Project(
                id=uuid.uuid4(),
                tenant_id=request.tenant_id,
                name=request.name,
                project_category=request.project_category,
                status="planning",
                priority=request.priority,
                lead_id=request.lead_id,
                property_id=request.property_id,
                quotation_id=request.quotation_id,
                project_manager_id=request.project_manager_id,
                start_date=request.start_date,
                expected_end_date=request.expected_end_date,
                created_by=request.created_by,
            )
            try:
                project.project_number = self.next_project_number(request.tenant_id)
                self.session.add(project)
                self.session.commit()
            except IntegrityError as exc:
                self.session.rollback()
                if _is_project_number_collision(exc):
                    raise ProvisioningError(
                        PROJECT_NUMBER_CONFLICT,
                        f"project number {project.project_number} already taken",
                        retryable=True,
                    ) from exc
                raise ProvisioningError(PROJECT_STORE_ERROR, str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                self.session.rollback()
                raise ProvisioningError(PROJECT_STORE_ERROR, str(exc)) from exc

            span.set_attribute("project_id", str(project.id))
            span.set_attribute("project_number", project.project_number)
            return project.id

    def link_baseline(self, project_id: uuid.UUID, baseline_quotation_id: uuid.UUID) -> None:
        project = self.session.get(Project, project_id)
        if project is None:
            raise ProvisioningError(PROJECT_NOT_FOUND, f"project {project_id} not found")
        project.baseline_quotation_id = baseline_quotation_id
        project.quotation_id = baseline_quotation_id
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ProvisioningError(PROJECT_STORE_ERROR, str(exc)) from exc

    def discard_project(self, project_id: uuid.UUID) -> None:
        """Deletes a project created by a saga that was then rolled back."""
        project = self.session.get(Project, project_id)
        if project is None:
            return
        self.session.delete(project)
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise ProvisioningError(PROJECT_STORE_ERROR, str(exc)) from exc

    def next_project_number(self, tenant_id: str) -> str:
        prefix = f"{get_settings().project_number_prefix}-{datetime.now(timezone.utc).year}-"
        latest = self.session.scalar(
            select(func.max(Project.project_number)).where(
                and_(Project.tenant_id == tenant_id, Project.project_number.like(f"{prefix}%"))
            )
        )
        sequence = int(latest.removeprefix(prefix)) if latest else 0
        return f"{prefix}{sequence + 1:05d}"
