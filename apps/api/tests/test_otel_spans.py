from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from app.api.deps import get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.main import app
from app.otel import setup_inmemory_otel
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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
    lead = Lead(id=uuid.uuid4(), tenant_id=TENANT, client_name="OTel Client", stage="new", created_by="seed")
    db_session.add(lead)
    db_session.commit()
    return lead


def test_request_span_contains_correlation_id(
    client: TestClient, db_session: Session, span_exporter: InMemorySpanExporter
) -> None:
    lead = _seed_lead(db_session)

    response = client.get(f"/api/sales/leads/{lead.id}", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_transition_span_carries_lead_and_stage_attributes(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead = _seed_lead(db_session)

    response = client.post(
        f"/api/sales/leads/{lead.id}/transition",
        json={"to_stage": "disqualified", "disqualification_reason": "not_serious_buyer"},
        headers={"X-Correlation-Id": "otel-transition-1"},
    )
    assert response.status_code == 200

    transition_spans = [span for span in span_exporter.get_finished_spans() if span.name == "sales.lead.transition"]
    assert transition_spans
    assert any(
        span.attributes.get("lead_id") == str(lead.id)
        and span.attributes.get("from_stage") == "new"
        and span.attributes.get("to_stage") == "disqualified"
        and span.attributes.get("correlation_id") == "otel-transition-1"
        for span in transition_spans
    )


def test_rejected_transition_marks_span_failed(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    lead = _seed_lead(db_session)

    response = client.post(f"/api/sales/leads/{lead.id}/transition", json={"to_stage": "lost"})
    assert response.status_code == 400
    assert response.json()["code"] == "MISSING_FIELDS"

    failed = [
        span
        for span in span_exporter.get_finished_spans()
        if span.name == "sales.lead.transition" and span.status.status_code == StatusCode.ERROR
    ]
    assert failed
    assert failed[-1].attributes.get("error_code") == "MISSING_FIELDS"
