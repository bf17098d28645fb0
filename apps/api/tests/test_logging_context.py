from __future__ import annotations

import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/sales/leads/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/sales/leads/{lead_id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_transition_logs_carry_stage_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = Lead(id=uuid.uuid4(), tenant_id=TENANT, client_name="Log Client", stage="new", created_by="seed")
    db_session.add(lead)
    db_session.commit()

    rejected = client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "proposal_discussion"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert rejected.status_code == 400

    accepted = client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "lost", "lost_reason": "no_response", "lost_notes": "stopped replying"},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert accepted.status_code == 200

    service_records = [record for record in caplog.records if record.name == "app.sales.service"]
    assert any(
        record.getMessage() == "sales.lead.transition_rejected"
        and getattr(record, "lead_id", None) == str(lead.id)
        and getattr(record, "error_code", None) == "INVALID_TRANSITION"
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in service_records
    )
    assert any(
        record.getMessage() == "sales.lead.transitioned"
        and getattr(record, "from_stage", None) == "new"
        and getattr(record, "to_stage", None) == "lost"
        for record in service_records
    )
