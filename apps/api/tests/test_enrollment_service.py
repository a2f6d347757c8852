from __future__ import annotations

from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.automation.enrollment import EnrollmentService
from crmflow.automation.models import Automation, AutomationEnrollment, AutomationLog
from crmflow.automation.schemas import AutomationEvent
from crmflow.core.database import Base
from crmflow.crm.models import CRMContact
from crmflow.crm.mutations import SqlEntityMutationClient
from crmflow.email.client import OutboxEmailClient
from crmflow.email.models import EmailOutbox


OWNER = "owner-1"


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


def _automation(session: Session, *, conditions: list[dict[str, Any]], actions: list[dict[str, Any]]) -> Automation:
    automation = Automation(
        user_id=OWNER,
        name="Rule",
        trigger_type="contact_created",
        conditions=conditions,
        actions=actions,
    )
    session.add(automation)
    session.commit()
    return automation


def _contact(session: Session, **overrides: Any) -> CRMContact:
    values: dict[str, Any] = {
        "user_id": OWNER,
        "first_name": "Ada",
        "email": "ada@example.com",
        "company": "Acme Corp",
        "tags": [],
        "custom_fields": {},
    }
    values.update(overrides)
    contact = CRMContact(**values)
    session.add(contact)
    session.commit()
    return contact


def _event(contact: CRMContact) -> AutomationEvent:
    return AutomationEvent(
        type="contact_created",
        user_id=OWNER,
        data={
            "contact": {
                "id": str(contact.id),
                "firstName": contact.first_name,
                "email": contact.email,
                "company": contact.company,
                "tags": list(contact.tags),
                "customFields": dict(contact.custom_fields),
            }
        },
    )


def _process(service: EnrollmentService, session: Session, automation: Automation, event: AutomationEvent):
    return service.process(
        session,
        automation,
        event,
        mutation_client=SqlEntityMutationClient(session, OWNER),
        email_client=OutboxEmailClient(session),
    )


def test_successful_run_completes_enrollment_and_counts(db_session: Session) -> None:
    automation = _automation(
        db_session,
        conditions=[{"field": "company", "operator": "equals", "value": "Acme Corp"}],
        actions=[{"type": "add_contact_tag", "config": {"tag": "vip"}}],
    )
    contact = _contact(db_session)

    result = _process(EnrollmentService(), db_session, automation, _event(contact))

    assert result.enrolled is True
    assert result.status == "completed"
    db_session.refresh(contact)
    db_session.refresh(automation)
    assert contact.tags == ["vip"]
    assert automation.enrolled_count == 1
    assert automation.execution_count == 1
    assert automation.completed_enrollments == 1
    assert automation.last_executed_at is not None

    log = db_session.scalar(select(AutomationLog).where(AutomationLog.automation_id == automation.id))
    assert log is not None
    assert log.status == "success"
    assert log.conditions_met is True
    assert log.enrollment_id == result.enrollment_id
    assert log.actions_executed[0]["status"] == "success"


def test_unmet_conditions_complete_without_running_actions(db_session: Session) -> None:
    automation = _automation(
        db_session,
        conditions=[{"field": "company", "operator": "equals", "value": "Other Corp"}],
        actions=[{"type": "add_contact_tag", "config": {"tag": "vip"}}],
    )
    contact = _contact(db_session)

    result = _process(EnrollmentService(), db_session, automation, _event(contact))

    assert result.status == "completed"
    assert result.conditions_met is False
    db_session.refresh(contact)
    db_session.refresh(automation)
    assert contact.tags == []
    assert automation.enrolled_count == 1
    assert automation.execution_count == 1
    assert automation.completed_enrollments == 0

    log = db_session.scalar(select(AutomationLog).where(AutomationLog.automation_id == automation.id))
    assert log is not None
    assert log.status == "skipped"
    assert log.actions_executed == []


def test_active_enrollment_blocks_a_second_one(db_session: Session) -> None:
    automation = _automation(db_session, conditions=[], actions=[{"type": "add_contact_tag", "config": {"tag": "x"}}])
    contact = _contact(db_session)
    db_session.add(
        AutomationEnrollment(
            automation_id=automation.id,
            user_id=OWNER,
            entity_type="contact",
            entity_id=str(contact.id),
            status="active",
        )
    )
    db_session.commit()

    result = _process(EnrollmentService(), db_session, automation, _event(contact))

    assert result.enrolled is False
    assert result.reason == "already_enrolled"
    assert db_session.scalar(select(func.count()).select_from(AutomationEnrollment)) == 1
    assert db_session.scalar(select(func.count()).select_from(AutomationLog)) == 0
    db_session.refresh(automation)
    assert automation.enrolled_count == 0
    assert automation.execution_count == 0


def test_terminal_enrollment_allows_re_enrollment(db_session: Session) -> None:
    automation = _automation(db_session, conditions=[], actions=[{"type": "add_contact_tag", "config": {"tag": "x"}}])
    contact = _contact(db_session)
    service = EnrollmentService()

    first = _process(service, db_session, automation, _event(contact))
    second = _process(service, db_session, automation, _event(contact))

    assert first.enrolled and second.enrolled
    assert first.enrollment_id != second.enrollment_id
    statuses = db_session.scalars(select(AutomationEnrollment.status)).all()
    assert sorted(statuses) == ["completed", "completed"]
    db_session.refresh(automation)
    assert automation.enrolled_count == 2
    assert automation.execution_count == 2
    db_session.refresh(contact)
    assert contact.tags == ["x"]


def test_failed_action_fails_enrollment_but_later_actions_still_run(db_session: Session) -> None:
    automation = _automation(
        db_session,
        conditions=[],
        actions=[
            {"type": "update_contact_field", "config": {"field": "company"}},
            {"type": "move_deal_to_stage", "config": {"stageId": "s-1"}},
            {"type": "add_contact_tag", "config": {"tag": "still-runs"}},
        ],
    )
    contact = _contact(db_session)

    result = _process(EnrollmentService(), db_session, automation, _event(contact))

    assert result.status == "failed"
    assert result.error == "Missing required config field: value"
    enrollment = db_session.scalar(select(AutomationEnrollment).where(AutomationEnrollment.id == result.enrollment_id))
    assert enrollment is not None
    assert enrollment.status == "failed"
    assert enrollment.error == "Missing required config field: value"
    assert enrollment.completed_at is not None

    log = db_session.scalar(select(AutomationLog).where(AutomationLog.automation_id == automation.id))
    assert log is not None
    assert log.status == "failed"
    assert [entry["status"] for entry in log.actions_executed] == ["failed", "failed", "success"]
    assert log.actions_executed[1]["error"] == "No deal ID available for update"

    db_session.refresh(contact)
    db_session.refresh(automation)
    assert contact.tags == ["still-runs"]
    assert automation.execution_count == 1
    assert automation.completed_enrollments == 0


def test_send_email_queues_an_outbox_message(db_session: Session) -> None:
    automation = _automation(
        db_session,
        conditions=[],
        actions=[{"type": "send_email", "config": {"subject": "Hello {{firstName}}", "body": "Welcome!"}}],
    )
    contact = _contact(db_session)

    result = _process(EnrollmentService(), db_session, automation, _event(contact))

    assert result.status == "completed"
    message = db_session.scalar(select(EmailOutbox))
    assert message is not None
    assert message.to_address == "ada@example.com"
    assert message.subject == "Hello Ada"
    assert message.user_id == OWNER
    assert message.status == "Queued"


def test_missing_entity_id_is_not_enrolled(db_session: Session) -> None:
    automation = _automation(db_session, conditions=[], actions=[{"type": "add_contact_tag", "config": {"tag": "x"}}])
    event = AutomationEvent(type="contact_created", user_id=OWNER, data={"contact": {"firstName": "Nobody"}})

    result = _process(EnrollmentService(), db_session, automation, event)

    assert result.enrolled is False
    assert result.reason == "missing_entity_id"
    assert db_session.scalar(select(func.count()).select_from(AutomationEnrollment)) == 0


def test_database_error_in_action_fails_enrollment_and_keeps_session_usable(db_session: Session) -> None:
    automation = _automation(
        db_session,
        conditions=[],
        actions=[
            {"type": "update_contact_field", "config": {"field": "firstName", "value": None}},
            {"type": "add_contact_tag", "config": {"tag": "after"}},
        ],
    )
    contact = _contact(db_session)
    service = EnrollmentService()

    result = _process(service, db_session, automation, _event(contact))

    assert result.enrolled is True
    assert result.status == "failed"
    assert result.error is not None
    assert "NOT NULL" in result.error
    enrollment = db_session.scalar(select(AutomationEnrollment).where(AutomationEnrollment.id == result.enrollment_id))
    assert enrollment is not None
    assert enrollment.status == "failed"
    assert enrollment.completed_at is not None

    log = db_session.scalar(select(AutomationLog).where(AutomationLog.automation_id == automation.id))
    assert log is not None
    assert log.status == "failed"
    assert [entry["status"] for entry in log.actions_executed] == ["failed", "success"]

    db_session.refresh(contact)
    db_session.refresh(automation)
    assert contact.first_name == "Ada"
    assert contact.tags == ["after"]
    assert automation.execution_count == 1
    assert automation.completed_enrollments == 0

    second = _process(service, db_session, automation, _event(contact))
    assert second.enrolled is True
    assert second.status == "failed"
    db_session.refresh(automation)
    assert automation.enrolled_count == 2


class _MissesActiveEnrollment(EnrollmentService):
    def find_active(self, session: Session, automation_id: Any, entity_type: str, entity_id: str) -> None:
        return None


def test_unique_active_index_rejects_a_concurrent_enrollment(db_session: Session) -> None:
    automation = _automation(db_session, conditions=[], actions=[{"type": "add_contact_tag", "config": {"tag": "x"}}])
    contact = _contact(db_session)
    db_session.add(
        AutomationEnrollment(
            automation_id=automation.id,
            user_id=OWNER,
            entity_type="contact",
            entity_id=str(contact.id),
            status="active",
        )
    )
    db_session.commit()

    result = _process(_MissesActiveEnrollment(), db_session, automation, _event(contact))

    assert result.enrolled is False
    assert result.reason == "already_enrolled"
    assert db_session.scalar(select(func.count()).select_from(AutomationEnrollment)) == 1
    db_session.refresh(automation)
    assert automation.enrolled_count == 0
    assert automation.execution_count == 0
    db_session.refresh(contact)
    assert contact.tags == []
