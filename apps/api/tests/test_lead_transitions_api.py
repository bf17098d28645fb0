from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Generator
from datetime import date
from decimal import Decimal

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.api.deps import get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.platform.security.context import ActorUser
from app.projects.models import Project
from app.projects.service import SqlProjectProvisioner
from app.quotations.models import (
    ComponentType,
    CostItem,
    Quotation,
    QuotationComponent,
    QuotationLineItem,
    QuotationSpace,
    SpaceType,
)
from app.quotations.service import QuotationOperationError, SqlQuotationGateway
from app.sales import service as sales_service
from app.sales import stages
from app.sales.models import Lead, LeadActivity, Property, TenantSettings
from app.sales.provisioning import ProvisioningOrchestrator, SqlTenantSettingsReader
from app.sales.service import lead_transition_service


TENANT = "tenant-a"


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "manager": ("manager-1", ["sales_manager"]),
        "executive": ("exec-1", ["sales_executive"]),
    }
    state = {"current": "manager"}

    def override_get_current_user(request: Request) -> ActorUser:
        user_id, roles = actors[state["current"]]
        return ActorUser(
            user_id=user_id,
            tenant_id=TENANT,
            permissions={"sales.leads.read", "sales.leads.transition"},
            roles=roles,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _seed_lead(db_session: Session, stage: str = "new", *, with_details: bool = False) -> Lead:
    property_row = None
    if with_details:
        property_row = Property(
            id=uuid.uuid4(),
            tenant_id=TENANT,
            property_name="Palm Grove",
            property_category="residential",
            property_type="apartment",
            property_subtype="3bhk",
            unit_number="B-1203",
            carpet_area=Decimal("1450"),
            city="Pune",
            created_by="seed",
        )
        db_session.add(property_row)
    lead = Lead(
        id=uuid.uuid4(),
        tenant_id=TENANT,
        client_name="Anita Rao",
        stage=stage,
        property_id=property_row.id if property_row is not None else None,
        service_type="modular" if with_details else None,
        budget_range="around_30l" if with_details else None,
        target_start_date=date(2026, 11, 1) if with_details else None,
        target_end_date=date(2027, 3, 1) if with_details else None,
        created_by="seed",
    )
    db_session.add(lead)
    db_session.commit()
    return lead


def _seed_quotation(db_session: Session, lead_id: uuid.UUID, status: str = "approved") -> Quotation:
    space_type = SpaceType(id=uuid.uuid4(), tenant_id=TENANT, name="Master Bedroom", slug=f"mbr-{uuid.uuid4().hex[:6]}")
    component_type = ComponentType(id=uuid.uuid4(), tenant_id=TENANT, name="Wardrobe", slug=f"wd-{uuid.uuid4().hex[:6]}")
    cost_item = CostItem(
        id=uuid.uuid4(),
        tenant_id=TENANT,
        name="Plywood",
        slug=f"ply-{uuid.uuid4().hex[:6]}",
        unit_code="sqft",
        default_rate=Decimal("95"),
    )
    quotation = Quotation(
        id=uuid.uuid4(),
        tenant_id=TENANT,
        quotation_number="QT-2026-00001",
        version=1,
        lead_id=lead_id,
        title="Master bedroom interiors",
        status=status,
        created_by="seed",
    )
    db_session.add_all([space_type, component_type, cost_item, quotation])
    db_session.flush()

    space = QuotationSpace(id=uuid.uuid4(), quotation_id=quotation.id, space_type_id=space_type.id, name="Master Bedroom")
    db_session.add(space)
    db_session.flush()
    component = QuotationComponent(
        id=uuid.uuid4(),
        quotation_id=quotation.id,
        space_id=space.id,
        component_type_id=component_type.id,
        name="Wardrobe",
    )
    db_session.add(component)
    db_session.flush()
    db_session.add_all(
        [
            QuotationLineItem(
                id=uuid.uuid4(),
                quotation_id=quotation.id,
                space_id=space.id,
                component_id=component.id,
                cost_item_id=cost_item.id,
                name="Plywood",
                unit_code="sqft",
                rate=Decimal("110"),
                display_order=0,
            ),
            QuotationLineItem(
                id=uuid.uuid4(),
                quotation_id=quotation.id,
                space_id=space.id,
                component_id=None,
                cost_item_id=cost_item.id,
                name="Site cleaning",
                unit_code="lot",
                rate=Decimal("2500"),
                display_order=1,
            ),
        ]
    )
    db_session.commit()
    return quotation


def _won_payload(quotation_id: uuid.UUID, **overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "to_stage": "won",
        "selected_quotation_id": str(quotation_id),
        "won_amount": "1250000",
        "contract_signed_date": "2026-10-18",
        "expected_project_start": "2026-11-02",
        "change_reason": "Contract signed at site visit",
    }
    payload.update(overrides)
    return payload


def _activity_types(db_session: Session, lead_id: uuid.UUID) -> list[str]:
    return list(
        db_session.scalars(
            select(LeadActivity.activity_type).where(LeadActivity.lead_id == lead_id).order_by(LeadActivity.created_at)
        )
    )


def test_invalid_transition_is_rejected_without_touching_the_lead(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session)

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json={"to_stage": "proposal_discussion"})

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "INVALID_TRANSITION"
    assert set(body["details"]["allowed_stages"]) == {"qualified", "lost", "disqualified"}
    db_session.expire_all()
    stored = db_session.get(Lead, lead.id)
    assert stored is not None
    assert stored.stage == "new"
    assert stored.row_version == 1


def test_qualified_transition_creates_property_and_assigns_actor(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session)

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={
            "to_stage": "qualified",
            "property_category": "residential",
            "property_type": "villa",
            "property_subtype": "independent",
            "property_name": "Lake View",
            "service_type": "turnkey",
            "target_start_date": "2026-11-01",
            "target_end_date": "2027-02-15",
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["lead"]["stage"] == "qualified"
    assert body["lead"]["assigned_to"] == "manager-1"
    assert body["lead"]["assigned_by"] == "manager-1"
    assert body["lead"]["service_type"] == "turnkey"
    assert body["lead"]["property"]["property_name"] == "Lake View"
    assert body["lead"]["property"]["city"] == "Unknown"
    assert body["project_created"] is False
    assert body["warnings"] == []
    assert any(entry["action"] == "stage_transition" for entry in audit.audit_entries)


def test_missing_fields_are_cumulative(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion")

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "won", "won_amount": "900000", "change_reason": "signed"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "MISSING_FIELDS"
    missing = body["details"]["missing_fields"]
    assert "Won Amount" not in missing
    assert {"Selected Quotation", "Contract Signed Date", "Expected Project Start"} <= set(missing)
    assert {"Property Name", "Service Type", "Carpet Area", "Budget Range"} <= set(missing)


def test_transition_rules_come_from_the_stage_validator(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls: list[tuple[str, str]] = []

    def recording_validate(from_stage, to_stage, requested, existing):
        calls.append((from_stage, to_stage))
        return stages.ValidationResult(ok=False, missing_fields=["Site Survey"], error_code=stages.MISSING_FIELDS)

    monkeypatch.setattr(sales_service, "validate", recording_validate)
    test_client, _ = client
    lead = _seed_lead(db_session, "new")

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "disqualified", "disqualification_reason": "not_serious_buyer"},
    )

    assert calls == [("new", "disqualified")]
    assert response.status_code == 400
    assert response.json()["details"]["missing_fields"] == ["Site Survey"]
    db_session.expire_all()
    assert db_session.get(Lead, lead.id).stage == "new"


def test_close_won_capability_checked_before_fields(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, set_actor = client
    lead = _seed_lead(db_session, "proposal_discussion")
    set_actor("executive")

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json={"to_stage": "won"})

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "FORBIDDEN"
    assert "missing_fields" not in body["details"]


def test_unapproved_quotation_is_ineligible_regardless_of_fields(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion")
    quotation = _seed_quotation(db_session, lead.id, status="negotiating")

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "won", "selected_quotation_id": str(quotation.id)},
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INELIGIBLE_QUOTATION"


def test_quotation_of_another_lead_is_ineligible(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    other = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, other.id)

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))

    assert response.status_code == 400
    assert response.json()["code"] == "INELIGIBLE_QUOTATION"


def test_stored_fields_satisfy_proposal_with_change_note_only(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "requirement_discussion", with_details=True)

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "proposal_discussion", "change_reason": "Shared the first proposal"},
    )

    assert response.status_code == 200
    assert response.json()["lead"]["stage"] == "proposal_discussion"
    assert _activity_types(db_session, lead.id) == ["note"]


def test_lost_transition_records_reason_activity(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "qualified")

    missing = test_client.post(f"/api/sales/leads/{lead.id}/transition", json={"to_stage": "lost", "lost_reason": "price_too_high"})
    assert missing.status_code == 400
    assert missing.json()["details"]["missing_fields"] == ["Lost Notes"]

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={
            "to_stage": "lost",
            "lost_reason": "chose_competitor",
            "lost_to_competitor": "Studio Nine",
            "lost_notes": "Went with a cheaper vendor",
        },
    )
    assert response.status_code == 200
    assert response.json()["lead"]["lost_to_competitor"] == "Studio Nine"

    activity = db_session.scalar(select(LeadActivity).where(LeadActivity.lead_id == lead.id))
    assert activity is not None
    assert activity.activity_type == "lost"
    assert activity.description == "Went with a cheaper vendor"
    assert json.loads(activity.metadata_json or "{}")["lost_reason"] == "chose_competitor"


def test_won_transition_provisions_project_and_baseline(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json=_won_payload(quotation.id, project_priority="high"),
        headers={"X-Correlation-Id": "corr-won-1"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["lead"]["stage"] == "won"
    assert body["lead"]["won_at"] is not None
    assert body["project_created"] is True
    assert body["warnings"] == []

    db_session.expire_all()
    project = db_session.get(Project, uuid.UUID(body["project_id"]))
    assert project is not None
    assert project.project_category == "modular"
    assert project.priority == "high"
    assert project.project_number.startswith("PRJ-")
    assert project.name == "Anita Rao - Palm Grove"
    assert str(project.baseline_quotation_id) == body["baseline_quotation_id"]

    source = db_session.get(Quotation, quotation.id)
    assert source is not None
    assert source.status == "locked"
    assert source.locked_for_project_id == project.id

    baseline = db_session.get(Quotation, project.baseline_quotation_id)
    assert baseline is not None
    assert baseline.status == "project_baseline"
    assert baseline.source_quotation_id == quotation.id
    assert baseline.project_id == project.id
    assert len(baseline.spaces) == 1
    assert len(baseline.components) == 1
    assert len(baseline.line_items) == 2
    assert sum(1 for item in baseline.line_items if item.component_id is None) == 1

    assert _activity_types(db_session, lead.id) == ["won"]
    won_events = [event for event in events.published_events if event["event_type"] == "sales.lead.won"]
    assert won_events
    assert won_events[-1]["correlation_id"] == "corr-won-1"


def test_baseline_failure_reverts_stage_and_reports_project_creation_failed(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    class FailingBaselineGateway(SqlQuotationGateway):
        def create_baseline_copy(self, quotation_id: uuid.UUID, project_id: uuid.UUID, actor_user_id: str) -> uuid.UUID:
            raise QuotationOperationError("MATERIALIZATION_FAILED", "baseline copy aborted")

    def failing_orchestrator(session: Session) -> ProvisioningOrchestrator:
        return ProvisioningOrchestrator(
            SqlProjectProvisioner(session),
            FailingBaselineGateway(session),
            SqlTenantSettingsReader(session),
            sleep=lambda _: None,
        )

    monkeypatch.setattr(lead_transition_service, "orchestrator_factory", failing_orchestrator)
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "PROJECT_CREATION_FAILED"
    assert body["details"]["error_code"] == "MATERIALIZATION_FAILED"
    assert body["details"]["error"] == "baseline copy aborted"

    db_session.expire_all()
    stored = db_session.get(Lead, lead.id)
    assert stored is not None
    assert stored.stage == "proposal_discussion"
    assert stored.won_amount is None
    assert stored.won_at is None
    assert sorted(_activity_types(db_session, lead.id)) == ["stage_reverted", "won"]
    assert any(event["event_type"] == "sales.lead.stage_reverted" for event in events.published_events)

    source = db_session.get(Quotation, quotation.id)
    assert source is not None
    assert source.status == "approved"
    assert source.locked_for_project_id is None
    assert source.locked_at is None
    assert source.project_id is None
    assert db_session.scalar(select(func.count()).select_from(Project)) == 0


def test_won_can_be_retried_after_a_failed_baseline_copy(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    calls = {"baseline": 0}

    class FlakyBaselineGateway(SqlQuotationGateway):
        def create_baseline_copy(self, quotation_id: uuid.UUID, project_id: uuid.UUID, actor_user_id: str) -> uuid.UUID:
            calls["baseline"] += 1
            if calls["baseline"] == 1:
                raise QuotationOperationError("MATERIALIZATION_FAILED", "baseline copy aborted")
            return super().create_baseline_copy(quotation_id, project_id, actor_user_id)

    def flaky_orchestrator(session: Session) -> ProvisioningOrchestrator:
        return ProvisioningOrchestrator(
            SqlProjectProvisioner(session),
            FlakyBaselineGateway(session),
            SqlTenantSettingsReader(session),
            sleep=lambda _: None,
        )

    monkeypatch.setattr(lead_transition_service, "orchestrator_factory", flaky_orchestrator)
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    first = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))
    assert first.status_code == 400
    assert first.json()["code"] == "PROJECT_CREATION_FAILED"

    db_session.expire_all()
    stored_quotation = db_session.get(Quotation, quotation.id)
    assert stored_quotation is not None
    assert stored_quotation.status == "approved"
    assert stored_quotation.locked_for_project_id is None
    assert db_session.scalar(select(func.count()).select_from(Project)) == 0

    second = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))
    assert second.status_code == 200
    body = second.json()
    assert body["lead"]["stage"] == "won"
    assert body["project_created"] is True

    db_session.expire_all()
    projects = list(db_session.scalars(select(Project)))
    assert len(projects) == 1
    assert str(projects[0].id) == body["project_id"]
    locked = db_session.get(Quotation, quotation.id)
    assert locked is not None
    assert locked.status == "locked"
    assert locked.locked_for_project_id == projects[0].id


def test_project_number_lookup_failure_reverts_stage(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken_lookup(self: SqlProjectProvisioner, tenant_id: str) -> str:
        raise OperationalError("SELECT max(project_number)", {}, Exception("database is locked"))

    monkeypatch.setattr(SqlProjectProvisioner, "next_project_number", broken_lookup)
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "PROJECT_CREATION_FAILED"
    assert body["details"]["error_code"] == "PROJECT_STORE_ERROR"

    db_session.expire_all()
    stored = db_session.get(Lead, lead.id)
    assert stored is not None
    assert stored.stage == "proposal_discussion"
    assert stored.won_at is None
    assert db_session.scalar(select(func.count()).select_from(Project)) == 0
    source = db_session.get(Quotation, quotation.id)
    assert source is not None
    assert source.status == "approved"


def test_skip_flag_commits_stage_without_project(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    response = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json=_won_payload(quotation.id, skip_project_creation=True),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["lead"]["stage"] == "won"
    assert body["project_created"] is False
    assert body["project_id"] is None
    assert db_session.scalar(select(func.count()).select_from(Project)) == 0


def test_tenant_flag_disables_auto_provisioning(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    db_session.add(TenantSettings(tenant_id=TENANT, auto_create_project_on_won=False))
    db_session.commit()
    lead = _seed_lead(db_session, "proposal_discussion", with_details=True)
    quotation = _seed_quotation(db_session, lead.id)

    response = test_client.post(f"/api/sales/leads/{lead.id}/transition", json=_won_payload(quotation.id))

    assert response.status_code == 200
    assert response.json()["project_created"] is False
    assert db_session.scalar(select(func.count()).select_from(Project)) == 0


def test_lead_read_and_activities_are_tenant_scoped(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    lead = _seed_lead(db_session, "requirement_discussion", with_details=True)
    foreign = Lead(id=uuid.uuid4(), tenant_id="tenant-b", client_name="Other", stage="new", created_by="seed")
    db_session.add(foreign)
    db_session.commit()

    transitioned = test_client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "proposal_discussion", "change_reason": "Proposal sent"},
    )
    assert transitioned.status_code == 200

    read = test_client.get(f"/api/sales/leads/{lead.id}")
    assert read.status_code == 200
    assert read.json()["property"]["property_name"] == "Palm Grove"

    activities = test_client.get(f"/api/sales/leads/{lead.id}/activities")
    assert activities.status_code == 200
    assert [row["activity_type"] for row in activities.json()] == ["note"]

    missing = test_client.get(f"/api/sales/leads/{foreign.id}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "LEAD_NOT_FOUND"
