from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow import audit, events
from crmflow.api.deps import get_current_user
from crmflow.automation.models import Automation, AutomationEnrollment, AutomationLog
from crmflow.core.config import get_settings
from crmflow.core.database import Base, get_db
from crmflow.core.rbac import ActorUser
from crmflow.main import app


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
    monkeypatch.setenv("AUTO_RUN_AUTOMATION_JOBS", "false")
    monkeypatch.setenv("AUTOMATION_MAX_ACTIONS", "3")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    actors = {
        "admin": ActorUser(
            user_id="owner-1",
            permissions={
                "automations.read",
                "automations.manage",
                "automations.execute",
                "crm.contacts.read",
                "crm.contacts.write",
                "crm.deals.read",
                "crm.deals.write",
                "crm.custom_fields.read",
                "crm.custom_fields.write",
            },
            correlation_id="automation-admin",
        ),
        "viewer": ActorUser(user_id="owner-1", permissions={"automations.read"}, correlation_id="automation-viewer"),
        "other_owner": ActorUser(
            user_id="owner-2",
            permissions={"automations.read", "automations.manage", "automations.execute"},
            correlation_id="automation-other",
        ),
    }
    state = {"current": "admin"}

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def _rule(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "name": "Tag new leads",
        "description": "Adds a tag",
        "trigger": {"type": "contact_created"},
        "conditions": [{"field": "company", "operator": "equals", "value": "Test Company"}],
        "actions": [{"type": "add_contact_tag", "config": {"tag": "new-lead"}}],
    }
    body.update(overrides)
    return body


def _create(test_client: TestClient, **overrides: Any) -> dict[str, Any]:
    response = test_client.post("/api/automations", json=_rule(**overrides))
    assert response.status_code == 201, response.text
    return response.json()


def test_create_read_update_and_list(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = _create(test_client)
    assert created["trigger"] == {"type": "contact_created", "config": None}
    assert created["is_active"] is True
    assert created["execution_count"] == 0
    assert created["conditions"] == [{"field": "company", "operator": "equals", "value": "Test Company"}]

    patched = test_client.patch(
        f"/api/automations/{created['id']}",
        json={"name": "Renamed", "actions": [{"type": "send_email", "config": {"subject": "Hi"}}]},
    )
    assert patched.status_code == 200
    assert patched.json()["name"] == "Renamed"
    assert patched.json()["actions"] == [{"type": "send_email", "config": {"subject": "Hi"}}]

    _create(test_client, name="Deal rule", trigger={"type": "deal_created"})
    listed = test_client.get("/api/automations", params={"trigger_type": "deal_created"})
    assert listed.status_code == 200
    assert [item["name"] for item in listed.json()] == ["Deal rule"]

    actions = [entry["action"] for entry in audit.audit_entries if entry["entity_type"] == "automation"]
    assert actions == ["create", "update", "create"]


def test_toggle_and_soft_delete(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    created = _create(test_client)

    toggled = test_client.patch(f"/api/automations/{created['id']}/toggle")
    assert toggled.status_code == 200
    assert toggled.json()["is_active"] is False
    assert test_client.get("/api/automations", params={"is_active": "false"}).json()[0]["id"] == created["id"]

    deleted = test_client.delete(f"/api/automations/{created['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"status": "deleted"}

    missing = test_client.get(f"/api/automations/{created['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "automation_get_failed"
    assert test_client.get("/api/automations").json() == []

    row = db_session.scalar(select(Automation).where(Automation.id == uuid.UUID(created["id"])))
    assert row is not None
    assert row.deleted_at is not None
    assert row.is_active is False

    logs = test_client.get(f"/api/automations/{created['id']}/logs")
    assert logs.status_code == 200
    assert logs.json()["total"] == 0


def test_validation_rejects_bad_definitions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    bad_trigger = test_client.post("/api/automations", json=_rule(trigger={"type": "lead_created"}))
    assert bad_trigger.status_code == 422

    config_on_wrong_trigger = test_client.post(
        "/api/automations",
        json=_rule(trigger={"type": "contact_created", "config": {"toStageId": "x"}}),
    )
    assert config_on_wrong_trigger.status_code == 422

    unknown_action = test_client.post("/api/automations", json=_rule(actions=[{"type": "launch", "config": {}}]))
    assert unknown_action.status_code == 422

    no_actions = test_client.post("/api/automations", json=_rule(actions=[]))
    assert no_actions.status_code == 422

    too_many = test_client.post(
        "/api/automations",
        json=_rule(actions=[{"type": "add_contact_tag", "config": {"tag": str(index)}} for index in range(4)]),
    )
    assert too_many.status_code == 422
    assert too_many.json()["code"] == "automation_create_failed"
    assert too_many.json()["message"] == "At most 3 actions are allowed"
    assert too_many.json()["correlation_id"]


def test_unknown_operator_is_stored_and_never_matches(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create(test_client, conditions=[{"field": "company", "operator": "starts_with", "value": "Test"}])

    result = test_client.post(f"/api/automations/{created['id']}/test")

    assert result.status_code == 200
    assert result.json()["conditions_met"] is False
    assert result.json()["conditions_evaluated"][0]["result"] is False


def test_permissions_and_ownership(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    created = _create(test_client)

    set_actor("viewer")
    assert test_client.get(f"/api/automations/{created['id']}").status_code == 200
    forbidden = test_client.post("/api/automations", json=_rule())
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "automation_create_failed"
    assert forbidden.json()["message"] == "Missing permission: automations.manage"
    assert test_client.post(f"/api/automations/{created['id']}/test").status_code == 403

    set_actor("other_owner")
    assert test_client.get(f"/api/automations/{created['id']}").status_code == 404
    assert test_client.get("/api/automations").json() == []


def test_available_fields_include_custom_definitions(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    definition = test_client.post(
        "/api/crm/custom-fields/contact",
        json={"field_key": "customerType", "label": "Customer Type", "data_type": "select", "allowed_values": ["Gold", "Silver"]},
    )
    assert definition.status_code == 201
    duplicate = test_client.post(
        "/api/crm/custom-fields/contact",
        json={"field_key": "customerType", "label": "Again", "data_type": "text"},
    )
    assert duplicate.status_code == 409

    fields = test_client.get("/api/automations/fields/contact")
    assert fields.status_code == 200
    by_name = {item["name"]: item for item in fields.json()}
    assert by_name["company"]["is_custom"] is False
    assert by_name["customFields.customerType"] == {
        "name": "customFields.customerType",
        "label": "Customer Type",
        "type": "select",
        "is_custom": True,
        "options": ["Gold", "Silver"],
    }

    deal_fields = test_client.get("/api/automations/fields/deal").json()
    assert "customFields.customerType" not in {item["name"] for item in deal_fields}
    assert test_client.get("/api/automations/fields/lead").status_code == 422


def test_dry_run_uses_sample_data_and_changes_nothing(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    created = _create(
        test_client,
        actions=[
            {"type": "add_contact_tag", "config": {"tag": "new-lead"}},
            {"type": "send_email", "config": {"subject": "Hi {{firstName}}", "body": "From {{company || 'us'}}"}},
            {"type": "send_email", "config": {}},
        ],
    )

    sample = test_client.post(f"/api/automations/{created['id']}/test")
    assert sample.status_code == 200
    body = sample.json()
    assert body["conditions_met"] is True
    assert body["test_data"]["contact"]["email"] == "test@example.com"
    assert body["planned_actions"][1]["rendered"] == {"subject": "Hi Test", "body": "From Test Company"}
    assert body["planned_actions"][2]["rendered"] == {"subject": "Notification", "body": "This is an automated message."}

    custom = test_client.post(
        f"/api/automations/{created['id']}/test",
        json={"test_data": {"contact": {"id": "c-1", "company": "Elsewhere"}}},
    )
    assert custom.status_code == 200
    assert custom.json()["conditions_met"] is False
    assert custom.json()["planned_actions"] == []

    assert db_session.scalar(select(func.count()).select_from(AutomationEnrollment)) == 0
    assert db_session.scalar(select(func.count()).select_from(AutomationLog)) == 0


def test_dry_run_applies_stage_transition_filter(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    created = _create(
        test_client,
        trigger={"type": "deal_stage_changed", "config": {"fromStageId": "old-stage-id"}},
        conditions=[],
        actions=[{"type": "update_deal_field", "config": {"field": "status", "value": "won"}}],
    )

    matched = test_client.post(f"/api/automations/{created['id']}/test").json()
    assert matched["conditions_met"] is True

    unmatched = test_client.post(
        f"/api/automations/{created['id']}/test",
        json={"test_data": {"deal": {"id": "d-1", "stageId": "s-2"}, "previousStageId": "somewhere-else"}},
    ).json()
    assert unmatched["conditions_met"] is False


def test_manual_enrollment(client: tuple[TestClient, Callable[[str], None]], db_session: Session) -> None:
    test_client, _ = client
    created = _create(test_client, trigger={"type": "contact_updated"}, conditions=[])
    contact = test_client.post("/api/crm/contacts", json={"first_name": "Ada", "company": "Acme"}).json()
    busy = test_client.post("/api/crm/contacts", json={"first_name": "Busy"}).json()
    db_session.add(
        AutomationEnrollment(
            automation_id=uuid.UUID(created["id"]),
            user_id="owner-1",
            entity_type="contact",
            entity_id=busy["id"],
            status="active",
        )
    )
    db_session.commit()
    unknown_id = str(uuid.uuid4())

    response = test_client.post(
        f"/api/automations/{created['id']}/enroll",
        json={"entity_type": "contact", "entity_ids": [contact["id"], busy["id"], unknown_id]},
    )

    assert response.status_code == 200
    results = {item["entity_id"]: item for item in response.json()["results"]}
    assert results[contact["id"]]["enrolled"] is True
    assert results[contact["id"]]["status"] == "completed"
    assert results[busy["id"]] == {
        "entity_id": busy["id"],
        "enrolled": False,
        "enrollment_id": None,
        "status": None,
        "reason": "Already enrolled",
    }
    assert results[unknown_id]["enrolled"] is False
    assert results[unknown_id]["reason"] == "Contact not found"
    assert test_client.get(f"/api/crm/contacts/{contact['id']}").json()["tags"] == ["new-lead"]

    wrong_type = test_client.post(
        f"/api/automations/{created['id']}/enroll",
        json={"entity_type": "deal", "entity_ids": [contact["id"]]},
    )
    assert wrong_type.status_code == 422
    assert wrong_type.json()["code"] == "automation_enroll_failed"

    test_client.patch(f"/api/automations/{created['id']}/toggle")
    inactive = test_client.post(
        f"/api/automations/{created['id']}/enroll",
        json={"entity_type": "contact", "entity_ids": [contact["id"]]},
    )
    assert inactive.status_code == 422
    assert inactive.json()["message"] == "Automation is not active"


def test_enrollment_summary_filters_by_status(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client
    created = _create(test_client)
    automation_id = uuid.UUID(created["id"])
    for index, status_value in enumerate(["completed", "failed", "failed"]):
        db_session.add(
            AutomationEnrollment(
                automation_id=automation_id,
                user_id="owner-1",
                entity_type="contact",
                entity_id=f"contact-{index}",
                status=status_value,
            )
        )
    db_session.commit()

    summary = test_client.get(f"/api/automations/{created['id']}/enrollments", params={"status": "failed"})

    assert summary.status_code == 200
    body = summary.json()
    assert body["total"] == 3
    assert body["counts"] == {"active": 0, "completed": 1, "failed": 2}
    assert {item["status"] for item in body["recent"]} == {"failed"}
    assert len(body["recent"]) == 2
