from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.api.deps import get_current_user
from crmflow.core.config import get_settings
from crmflow.core.database import Base, get_db
from crmflow.core.rbac import ActorUser
from crmflow.main import app
from crmflow.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "automations.read",
    "automations.manage",
    "crm.contacts.read",
    "crm.contacts.write",
}


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "true")
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
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post("/api/crm/contacts", json={"first_name": "Span"}, headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_enrollment_span_carries_automation_and_entity(
    client: TestClient,
    span_exporter: InMemorySpanExporter,
) -> None:
    automation = client.post(
        "/api/automations",
        json={
            "name": "Traced",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "config": {"tag": "traced"}}],
        },
    )
    assert automation.status_code == 201
    contact = client.post("/api/crm/contacts", json={"first_name": "Span"}, headers={"X-Correlation-Id": "otel-job-1"})
    assert contact.status_code == 201

    enrollment_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.enrollment"]
    assert enrollment_spans
    assert any(
        span.attributes.get("automation_id") == automation.json()["id"]
        and span.attributes.get("entity_id") == contact.json()["id"]
        and span.attributes.get("status") == "completed"
        for span in enrollment_spans
    )

    job_spans = [span for span in span_exporter.get_finished_spans() if span.name == "automation.job.run"]
    assert any(
        span.attributes.get("automation_id") == automation.json()["id"]
        and span.attributes.get("correlation_id") == "otel-job-1"
        and span.attributes.get("status") == "Succeeded"
        for span in job_spans
    )
