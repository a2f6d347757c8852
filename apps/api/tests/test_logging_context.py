from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.api.deps import get_current_user
from crmflow.core.config import get_settings
from crmflow.core.database import Base, get_db
from crmflow.core.rbac import ActorUser
from crmflow.logging import JsonLogFormatter
from crmflow.main import app


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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(f"/api/automations/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "crmflow.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/automations/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_enrollment_context_and_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)

    automation = client.post(
        "/api/automations",
        json={
            "name": "Tag",
            "trigger": {"type": "contact_created"},
            "actions": [{"type": "add_contact_tag", "config": {"tag": "logged"}}],
        },
    )
    assert automation.status_code == 201
    contact = client.post("/api/crm/contacts", json={"first_name": "Log"}, headers={"X-Correlation-Id": "abc-123"})
    assert contact.status_code == 201

    queued = [record for record in caplog.records if record.getMessage() == "automation.jobs_queued"]
    assert queued
    assert getattr(queued[-1], "queued_count", None) == 1

    finished = [record for record in caplog.records if record.getMessage() == "automation.enrollment_finished"]
    assert any(
        getattr(record, "automation_id", None) == automation.json()["id"]
        and getattr(record, "entity_id", None) == contact.json()["id"]
        and getattr(record, "status", None) == "completed"
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in finished
    )


def test_json_formatter_keeps_known_fields_and_trims_errors() -> None:
    record = logging.makeLogRecord(
        {
            "name": "crmflow.automation",
            "levelname": "WARNING",
            "msg": "automation.action_failed",
            "action_type": "send_email",
            "error": "x" * 600,
            "unrelated": "dropped",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "automation.action_failed"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["action_type"] == "send_email"
    assert len(payload["fields"]["error"]) == 500
    assert "unrelated" not in payload["fields"]
