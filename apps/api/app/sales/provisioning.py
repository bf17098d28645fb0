from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
from typing import Protocol

from opentelemetry import trace
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.metrics import (
    observe_project_creation_attempt,
    observe_saga_outcome,
    observe_side_channel_failure,
)
from app.otel import mark_span_failed
from app.projects.service import ProjectCreationRequest, ProvisioningError
from app.quotations.service import QuotationOperationError
from app.sales.models import TenantSettings


logger = logging.getLogger("app.sales.provisioning")
tracer = trace.get_tracer("app.sales.provisioning")

MATERIALIZATION_FAILED = "MATERIALIZATION_FAILED"


class SagaState(StrEnum):
    NOT_STARTED = "not_started"
    PROJECT_CREATED = "project_created"
    QUOTATION_LOCKED = "quotation_locked"
    BASELINE_COPIED = "baseline_copied"
    LINKED = "linked"
    DONE = "done"
    ROLLED_BACK = "rolled_back"
    SKIPPED = "skipped"


class ProjectProvisioner(Protocol):
    def create_project_from_lead(self, request: ProjectCreationRequest) -> uuid.UUID: ...

    def link_baseline(self, project_id: uuid.UUID, baseline_quotation_id: uuid.UUID) -> None: ...

    def discard_project(self, project_id: uuid.UUID) -> None: ...


class QuotationGateway(Protocol):
    def lock_for_project(self, quotation_id: uuid.UUID, project_id: uuid.UUID) -> str: ...

    def release_lock(self, quotation_id: uuid.UUID, project_id: uuid.UUID, previous_status: str) -> None: ...

    def create_baseline_copy(self, quotation_id: uuid.UUID, project_id: uuid.UUID, actor_user_id: str) -> uuid.UUID: ...


class TenantSettingsReader(Protocol):
    def auto_create_project_on_won(self, tenant_id: str) -> bool: ...


class SqlTenantSettingsReader:
    def __init__(self, session: Session):
        self.session = session

    def auto_create_project_on_won(self, tenant_id: str) -> bool:
        default = get_settings().auto_create_project_on_won_default
        try:
            row = self.session.get(TenantSettings, tenant_id)
        except SQLAlchemyError as exc:
            self.session.rollback()
            observe_side_channel_failure("tenant_settings")
            logger.warning("provisioning.tenant_settings.unreadable", extra={"error": str(exc)})
            return default
        if row is None or row.auto_create_project_on_won is None:
            return default
        return bool(row.auto_create_project_on_won)


def derive_project_category(service_type: str | None) -> str:
    return "modular" if service_type == "modular" else "turnkey"


@dataclass(slots=True)
class ProvisioningPlan:
    tenant_id: str
    lead_id: uuid.UUID
    actor_user_id: str
    project_name: str
    service_type: str | None
    quotation_id: uuid.UUID | None
    property_id: uuid.UUID | None = None
    project_manager_id: str | None = None
    priority: str | None = None
    start_date: date | None = None
    expected_end_date: date | None = None
    skip: bool = False

    def creation_request(self) -> ProjectCreationRequest:
        return ProjectCreationRequest(
            tenant_id=self.tenant_id,
            lead_id=self.lead_id,
            created_by=self.actor_user_id,
            project_category=derive_project_category(self.service_type),
            name=self.project_name,
            quotation_id=self.quotation_id,
            property_id=self.property_id,
            project_manager_id=self.project_manager_id,
            priority=self.priority,
            start_date=self.start_date,
            expected_end_date=self.expected_end_date,
        )


@dataclass(slots=True)
class ProvisioningOutcome:
    state: SagaState = SagaState.NOT_STARTED
    project_id: uuid.UUID | None = None
    baseline_quotation_id: uuid.UUID | None = None
    # status of the source quotation before the saga locked it
    unlocked_status: str | None = None
    attempts: int = 0
    warnings: list[str] = field(default_factory=list)
    error: ProvisioningError | None = None

    @property
    def project_created(self) -> bool:
        return self.project_id is not None and self.state != SagaState.ROLLED_BACK

    @property
    def rolled_back(self) -> bool:
        return self.state == SagaState.ROLLED_BACK


class ProvisioningOrchestrator:
    """Won-transition saga.

    Project creation and the baseline copy are hard steps: their failure releases the
    quotation lock, discards the created project, then triggers ``compensate`` and
    leaves the outcome in ``ROLLED_BACK``. The quotation lock and the project
    back-link are side channels whose failure is only recorded as a warning.
    """

    def __init__(
        self,
        projects: ProjectProvisioner,
        quotations: QuotationGateway,
        tenant_settings: TenantSettingsReader,
        *,
        max_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.projects = projects
        self.quotations = quotations
        self.tenant_settings = tenant_settings
        self.max_attempts = max_attempts if max_attempts is not None else settings.project_creation_max_attempts
        self.backoff_base_seconds = (
            backoff_base_seconds
            if backoff_base_seconds is not None
            else settings.project_creation_backoff_base_ms / 1000
        )
        self.sleep = sleep

    def should_provision(self, plan: ProvisioningPlan) -> bool:
        if plan.skip:
            return False
        return self.tenant_settings.auto_create_project_on_won(plan.tenant_id)

    def run(self, plan: ProvisioningPlan, compensate: Callable[[ProvisioningError], None]) -> ProvisioningOutcome:
        outcome = ProvisioningOutcome()
        with tracer.start_as_current_span("sales.provisioning") as span:
            span.set_attribute("lead_id", str(plan.lead_id))
            if not self.should_provision(plan):
                outcome.state = SagaState.SKIPPED
                span.set_attribute("saga_state", outcome.state.value)
                observe_saga_outcome(outcome.state.value)
                logger.info("provisioning.skipped", extra={"lead_id": str(plan.lead_id), "saga_state": outcome.state.value})
                return outcome

            try:
                self._create_project(plan, outcome)
                if plan.quotation_id is not None:
                    self._lock_quotation(plan, outcome)
                    self._copy_baseline(plan, outcome)
                    self._link_baseline(plan, outcome)
                outcome.state = SagaState.DONE
            except ProvisioningError as exc:
                outcome.error = exc
                mark_span_failed(span, exc, code=exc.code)
                logger.error(
                    "provisioning.failed",
                    extra={
                        "lead_id": str(plan.lead_id),
                        "project_id": str(outcome.project_id) if outcome.project_id else None,
                        "saga_state": outcome.state.value,
                        "error_code": exc.code,
                        "error": exc.message,
                    },
                )
                self._undo(plan, outcome)
                compensate(exc)
                outcome.state = SagaState.ROLLED_BACK

            span.set_attribute("saga_state", outcome.state.value)
            observe_saga_outcome(outcome.state.value)
            return outcome

    def _create_project(self, plan: ProvisioningPlan, outcome: ProvisioningOutcome) -> None:
        request = plan.creation_request()
        for attempt in range(1, self.max_attempts + 1):
            outcome.attempts = attempt
            try:
                with tracer.start_as_current_span("sales.provisioning.create_project") as span:
                    span.set_attribute("attempt", attempt)
                    project_id = self.projects.create_project_from_lead(request)
            except ProvisioningError as exc:
                observe_project_creation_attempt("collision" if exc.retryable else "error")
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_base_seconds * 2 ** (attempt - 1)
                logger.warning(
                    "provisioning.project.retry",
                    extra={
                        "lead_id": str(plan.lead_id),
                        "attempt": attempt,
                        "delay_ms": round(delay * 1000, 2),
                        "error_code": exc.code,
                    },
                )
                self.sleep(delay)
                continue

            observe_project_creation_attempt("created")
            outcome.project_id = project_id
            outcome.state = SagaState.PROJECT_CREATED
            logger.info(
                "provisioning.project.created",
                extra={"lead_id": str(plan.lead_id), "project_id": str(project_id), "attempt": attempt},
            )
            events.publish(
                events.envelope(
                    "projects.project.created",
                    plan.actor_user_id,
                    {"project_category": request.project_category, "attempts": attempt},
                    project_id=str(project_id),
                    lead_id=str(plan.lead_id),
                    tenant_id=plan.tenant_id,
                )
            )
            return

    def _lock_quotation(self, plan: ProvisioningPlan, outcome: ProvisioningOutcome) -> None:
        with tracer.start_as_current_span("sales.provisioning.lock_quotation") as span:
            try:
                outcome.unlocked_status = self.quotations.lock_for_project(plan.quotation_id, outcome.project_id)
            except QuotationOperationError as exc:
                mark_span_failed(span, exc, code=exc.code)
                self._side_channel_failed("quotation_lock", plan, outcome, exc.code, exc.message)
                return
        outcome.state = SagaState.QUOTATION_LOCKED

    def _copy_baseline(self, plan: ProvisioningPlan, outcome: ProvisioningOutcome) -> None:
        with tracer.start_as_current_span("sales.provisioning.baseline_copy") as span:
            try:
                baseline_id = self.quotations.create_baseline_copy(
                    plan.quotation_id, outcome.project_id, plan.actor_user_id
                )
            except QuotationOperationError as exc:
                mark_span_failed(span, exc, code=exc.code)
                raise ProvisioningError(MATERIALIZATION_FAILED, exc.message) from exc
        outcome.baseline_quotation_id = baseline_id
        outcome.state = SagaState.BASELINE_COPIED

    def _link_baseline(self, plan: ProvisioningPlan, outcome: ProvisioningOutcome) -> None:
        with tracer.start_as_current_span("sales.provisioning.link_baseline") as span:
            try:
                self.projects.link_baseline(outcome.project_id, outcome.baseline_quotation_id)
            except ProvisioningError as exc:
                mark_span_failed(span, exc, code=exc.code)
                self._side_channel_failed("project_link", plan, outcome, exc.code, exc.message)
                return
        outcome.state = SagaState.LINKED

    def _undo(self, plan: ProvisioningPlan, outcome: ProvisioningOutcome) -> None:
        """Releases the quotation lock and removes the project before the lead is reverted."""
        if outcome.project_id is None:
            return
        if plan.quotation_id is not None and outcome.unlocked_status is not None:
            try:
                self.quotations.release_lock(plan.quotation_id, outcome.project_id, outcome.unlocked_status)
            except QuotationOperationError as exc:
                self._side_channel_failed("quotation_unlock", plan, outcome, exc.code, exc.message)
        try:
            self.projects.discard_project(outcome.project_id)
        except ProvisioningError as exc:
            self._side_channel_failed("project_discard", plan, outcome, exc.code, exc.message)

    def _side_channel_failed(
        self,
        step: str,
        plan: ProvisioningPlan,
        outcome: ProvisioningOutcome,
        code: str,
        message: str,
    ) -> None:
        observe_side_channel_failure(step)
        logger.warning(
            "provisioning.side_channel_failed",
            extra={
                "lead_id": str(plan.lead_id),
                "project_id": str(outcome.project_id),
                "saga_state": outcome.state.value,
                "error_code": code,
                "error": message,
            },
        )
        outcome.warnings.append(f"{step} failed: {message}")
