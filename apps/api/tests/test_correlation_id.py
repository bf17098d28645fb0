from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.api.deps import get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.platform.security.context import ActorUser
from app.sales.models import Lead


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            tenant_id=TENANT,
            permissions={"sales.leads.read", "sales.leads.transition"},
            roles=["sales_executive"],
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_lead(db_session: Session) -> Lead:
    lead = Lead(id=uuid.uuid4(), tenant_id=TENANT, client_name="Corr Client", stage="new", created_by="seed")
    db_session.add(lead)
    db_session.commit()
    return lead


def _disqualify(client: TestClient, lead_id: uuid.UUID, correlation_id: str) -> None:
    response = client.post(
        f"/api/sales/leads/{lead_id}/transition",
        json={"to_stage": "disqualified", "disqualification_reason": "duplicate_lead"},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/sales/leads/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["code"] == "LEAD_NOT_FOUND"
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/sales/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_rejected_transition_envelope_carries_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _seed_lead(db_session)

    response = client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "won"},
        headers={"X-Correlation-Id": "corr-reject-1"},
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "INVALID_TRANSITION"
    assert body["correlation_id"] == "corr-reject-1"


def test_audit_uses_request_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _seed_lead(db_session)

    _disqualify(client, lead.id, "corr-audit-1")

    lead_audits = audit.entries_for("sales.lead", str(lead.id))
    assert lead_audits
    assert lead_audits[-1]["correlation_id"] == "corr-audit-1"


def test_event_envelope_includes_correlation_id(client: TestClient, db_session: Session) -> None:
    lead = _seed_lead(db_session)

    _disqualify(client, lead.id, "corr-event-1")

    changed = [item for item in events.published_events if item.get("event_type") == "sales.lead.stage_changed"]
    assert changed
    assert changed[-1].get("correlation_id") == "corr-event-1"
    assert changed[-1]["payload"]["to_stage"] == "disqualified"
