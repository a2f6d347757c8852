from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crmflow import audit
from crmflow.automation.actions import DEFAULT_EMAIL_BODY, DEFAULT_EMAIL_SUBJECT, ActionType
from crmflow.automation.conditions import evaluate_conditions
from crmflow.automation.dispatcher import stage_transition_matches
from crmflow.automation.enrollment import EnrollmentService, enrollment_service
from crmflow.automation.models import Automation, AutomationEnrollment, AutomationLog
from crmflow.automation.schemas import (
    AutomationCreate,
    AutomationEvent,
    AutomationLogPage,
    AutomationLogRead,
    AutomationRead,
    AutomationTestRequest,
    AutomationTestResponse,
    AutomationUpdate,
    AvailableField,
    EnrollmentRead,
    EnrollmentSummary,
    ManualEnrollRequest,
    ManualEnrollResponse,
    ManualEnrollResult,
    entity_type_for_trigger,
)
from crmflow.automation.templates import render_template
from crmflow.core.config import get_settings
from crmflow.core.rbac import ActorUser
from crmflow.crm.mutations import SqlEntityMutationClient
from crmflow.crm.service import ContactService, CustomFieldService, DealService
from crmflow.email.client import OutboxEmailClient


logger = logging.getLogger("crmflow.automation")

ENROLLMENT_STATUSES = ("active", "completed", "failed")
RECENT_ENROLLMENTS_LIMIT = 10

_STANDARD_FIELDS: dict[str, list[AvailableField]] = {
    "contact": [
        AvailableField(name="firstName", label="First Name", type="text", is_custom=False),
        AvailableField(name="lastName", label="Last Name", type="text", is_custom=False),
        AvailableField(name="email", label="Email", type="email", is_custom=False),
        AvailableField(name="phone", label="Phone", type="text", is_custom=False),
        AvailableField(name="company", label="Company", type="text", is_custom=False),
        AvailableField(name="position", label="Position", type="text", is_custom=False),
        AvailableField(name="tags", label="Tags", type="tags", is_custom=False),
        AvailableField(name="createdAt", label="Created At", type="date", is_custom=False),
    ],
    "deal": [
        AvailableField(name="name", label="Deal Name", type="text", is_custom=False),
        AvailableField(name="value", label="Deal Value", type="number", is_custom=False),
        AvailableField(
            name="status",
            label="Status",
            type="select",
            is_custom=False,
            options=["open", "won", "lost"],
        ),
        AvailableField(name="stageId", label="Stage", type="stage", is_custom=False),
        AvailableField(name="contact.email", label="Contact Email", type="email", is_custom=False),
        AvailableField(name="contact.company", label="Contact Company", type="text", is_custom=False),
        AvailableField(name="createdAt", label="Created At", type="date", is_custom=False),
    ],
}

_SAMPLE_EVENT_DATA: dict[str, dict[str, Any]] = {
    "contact": {
        "contact": {
            "id": "test-contact-id",
            "firstName": "Test",
            "lastName": "Contact",
            "email": "test@example.com",
            "phone": "555-0123",
            "company": "Test Company",
            "tags": ["test", "sample"],
            "customFields": {},
        },
        "changedFields": ["email", "phone"],
    },
    "deal": {
        "deal": {
            "id": "test-deal-id",
            "name": "Test Deal",
            "value": 10000,
            "status": "open",
            "stageId": "test-stage-id",
            "customFields": {},
            "contact": {
                "id": "test-contact-id",
                "firstName": "Test",
                "lastName": "Contact",
                "email": "test@example.com",
            },
        },
        "changedFields": ["value", "stageId"],
    },
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sample_event_data(trigger_type: str) -> dict[str, Any]:
    entity_type = entity_type_for_trigger(trigger_type)
    data = {key: (dict(value) if isinstance(value, dict) else list(value)) for key, value in _SAMPLE_EVENT_DATA[entity_type].items()}
    if trigger_type == "deal_stage_changed":
        data["previousStageId"] = "old-stage-id"
        data["changedFields"] = ["stageId"]
    return data


class AutomationService:
    entity_type = "automation"

    def __init__(self, service: EnrollmentService | None = None) -> None:
        self.enrollment_service = service or enrollment_service
        self.contact_service = ContactService()
        self.deal_service = DealService()
        self.custom_field_service = CustomFieldService()

    def create_automation(self, session: Session, actor_user: ActorUser, dto: AutomationCreate) -> AutomationRead:
        conditions = [condition.model_dump(mode="json", exclude_none=True) for condition in dto.conditions]
        actions = [action.model_dump(mode="json") for action in dto.actions]
        self._validate_limits(conditions, actions)

        automation = Automation(
            user_id=actor_user.user_id,
            name=dto.name.strip(),
            description=dto.description,
            trigger_type=dto.trigger.type,
            trigger_config=dto.trigger.config or None,
            conditions=conditions,
            actions=actions,
            is_active=dto.is_active,
        )
        session.add(automation)
        session.flush()

        read_model = AutomationRead.model_validate(automation)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def list_automations(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        is_active: bool | None = None,
        trigger_type: str | None = None,
    ) -> list[AutomationRead]:
        query = select(Automation).where(Automation.user_id == actor_user.user_id, Automation.deleted_at.is_(None))
        if is_active is not None:
            query = query.where(Automation.is_active.is_(is_active))
        if trigger_type:
            query = query.where(Automation.trigger_type == trigger_type)
        rows = session.scalars(query.order_by(Automation.created_at.desc())).all()
        return [AutomationRead.model_validate(row) for row in rows]

    def get_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationRead:
        return AutomationRead.model_validate(self._load(session, actor_user, automation_id))

    def update_automation(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        dto: AutomationUpdate,
    ) -> AutomationRead:
        automation = self._load(session, actor_user, automation_id)
        before = AutomationRead.model_validate(automation).model_dump(mode="json")

        if dto.name is not None:
            automation.name = dto.name.strip()
        if "description" in dto.model_fields_set:
            automation.description = dto.description
        if dto.trigger is not None:
            automation.trigger_type = dto.trigger.type
            automation.trigger_config = dto.trigger.config or None
        if dto.conditions is not None:
            automation.conditions = [condition.model_dump(mode="json", exclude_none=True) for condition in dto.conditions]
        if dto.actions is not None:
            automation.actions = [action.model_dump(mode="json") for action in dto.actions]
        if dto.is_active is not None:
            automation.is_active = dto.is_active
        self._validate_limits(automation.conditions, automation.actions)

        session.flush()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="update",
            before=before,
            after=AutomationRead.model_validate(automation).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def toggle_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> AutomationRead:
        automation = self._load(session, actor_user, automation_id)
        automation.is_active = not automation.is_active
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="activate" if automation.is_active else "deactivate",
            before={"is_active": not automation.is_active},
            after={"is_active": automation.is_active},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()
        session.refresh(automation)
        return AutomationRead.model_validate(automation)

    def soft_delete_automation(self, session: Session, actor_user: ActorUser, automation_id: uuid.UUID) -> None:
        automation = self._load(session, actor_user, automation_id)
        automation.deleted_at = utcnow()
        automation.is_active = False
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(automation.id),
            action="delete",
            before={"deleted_at": None},
            after={"deleted_at": automation.deleted_at.isoformat()},
            correlation_id=actor_user.correlation_id,
        )
        session.commit()

    def list_available_fields(self, session: Session, actor_user: ActorUser, entity_type: str) -> list[AvailableField]:
        standard = _STANDARD_FIELDS.get(entity_type)
        if standard is None:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported entity type")

        custom = [
            AvailableField(
                name=f"customFields.{definition.field_key}",
                label=definition.label,
                type=definition.data_type,
                is_custom=True,
                options=definition.allowed_values,
            )
            for definition in self.custom_field_service.list_definitions(session, actor_user.user_id, entity_type)
        ]
        return [*standard, *custom]

    def list_logs(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> AutomationLogPage:
        automation = self._load(session, actor_user, automation_id, include_deleted=True)
        total = session.scalar(
            select(func.count()).select_from(AutomationLog).where(AutomationLog.automation_id == automation.id)
        )
        rows = session.scalars(
            select(AutomationLog)
            .where(AutomationLog.automation_id == automation.id)
            .order_by(AutomationLog.executed_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return AutomationLogPage(
            items=[AutomationLogRead.model_validate(row) for row in rows],
            total=int(total or 0),
            limit=limit,
            offset=offset,
        )

    def enrollment_summary(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        status_filter: str | None = None,
    ) -> EnrollmentSummary:
        automation = self._load(session, actor_user, automation_id, include_deleted=True)
        counted = session.execute(
            select(AutomationEnrollment.status, func.count())
            .where(AutomationEnrollment.automation_id == automation.id)
            .group_by(AutomationEnrollment.status)
        ).all()
        counts = {status_value: 0 for status_value in ENROLLMENT_STATUSES}
        for status_value, count in counted:
            counts[status_value] = int(count)

        recent_query = select(AutomationEnrollment).where(AutomationEnrollment.automation_id == automation.id)
        if status_filter:
            recent_query = recent_query.where(AutomationEnrollment.status == status_filter)
        recent = session.scalars(
            recent_query.order_by(AutomationEnrollment.enrolled_at.desc()).limit(RECENT_ENROLLMENTS_LIMIT)
        ).all()
        return EnrollmentSummary(
            automation_id=automation.id,
            total=sum(counts.values()),
            counts=counts,
            recent=[EnrollmentRead.model_validate(row) for row in recent],
        )

    def enroll_entities(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        dto: ManualEnrollRequest,
    ) -> ManualEnrollResponse:
        automation = self._load(session, actor_user, automation_id)
        if not automation.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Automation is not active")
        trigger_type = automation.trigger_type
        if entity_type_for_trigger(trigger_type) != dto.entity_type:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Automation trigger {trigger_type} does not accept {dto.entity_type} entities",
            )

        results: list[ManualEnrollResult] = []
        for entity_id in dict.fromkeys(dto.entity_ids):
            try:
                if dto.entity_type == "contact":
                    snapshot = self.contact_service.load_snapshot(session, actor_user, entity_id)
                else:
                    snapshot = self.deal_service.load_snapshot(session, actor_user, entity_id)
            except HTTPException as exc:
                results.append(ManualEnrollResult(entity_id=entity_id, enrolled=False, reason=str(exc.detail)))
                continue

            event = AutomationEvent(
                type=trigger_type,
                user_id=automation.user_id,
                data={dto.entity_type: snapshot},
                correlation_id=actor_user.correlation_id,
            )
            outcome = self.enrollment_service.process(
                session,
                automation,
                event,
                mutation_client=SqlEntityMutationClient(session, automation.user_id),
                email_client=OutboxEmailClient(session, source="automation.manual"),
            )
            results.append(
                ManualEnrollResult(
                    entity_id=entity_id,
                    enrolled=outcome.enrolled,
                    enrollment_id=outcome.enrollment_id,
                    status=outcome.status,
                    reason="Already enrolled" if outcome.reason == "already_enrolled" else outcome.reason,
                )
            )
        return ManualEnrollResponse(results=results)

    def test_automation(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        dto: AutomationTestRequest,
    ) -> AutomationTestResponse:
        """Evaluate an automation against sample data without touching any entity."""
        automation = self._load(session, actor_user, automation_id)
        test_data = dto.test_data or sample_event_data(automation.trigger_type)
        event = AutomationEvent(type=automation.trigger_type, user_id=automation.user_id, data=test_data)

        conditions_met, evaluated = evaluate_conditions(automation.conditions or [], test_data)
        if not stage_transition_matches(automation.trigger_config, event):
            conditions_met = False

        planned: list[dict[str, Any]] = []
        if conditions_met:
            for action in automation.actions or []:
                config = dict(action.get("config") or {})
                entry: dict[str, Any] = {"type": action.get("type"), "config": config}
                if action.get("type") == ActionType.SEND_EMAIL:
                    entry["rendered"] = {
                        "subject": render_template(config.get("subject") or DEFAULT_EMAIL_SUBJECT, test_data),
                        "body": render_template(config.get("body") or DEFAULT_EMAIL_BODY, test_data),
                    }
                planned.append(entry)

        logger.info(
            "automation.test_run",
            extra={"automation_id": str(automation.id), "status": "matched" if conditions_met else "not_matched"},
        )
        return AutomationTestResponse(
            trigger_type=automation.trigger_type,
            test_data=test_data,
            conditions_met=conditions_met,
            conditions_evaluated=evaluated,
            planned_actions=planned,
        )

    def _validate_limits(self, conditions: list[dict[str, Any]], actions: list[dict[str, Any]]) -> None:
        settings = get_settings()
        if len(conditions) > settings.automation_max_conditions:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"At most {settings.automation_max_conditions} conditions are allowed",
            )
        if not actions:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="At least one action is required")
        if len(actions) > settings.automation_max_actions:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"At most {settings.automation_max_actions} actions are allowed",
            )

    def _load(
        self,
        session: Session,
        actor_user: ActorUser,
        automation_id: uuid.UUID,
        *,
        include_deleted: bool = False,
    ) -> Automation:
        query = select(Automation).where(Automation.id == automation_id, Automation.user_id == actor_user.user_id)
        if not include_deleted:
            query = query.where(Automation.deleted_at.is_(None))
        automation = session.scalar(query)
        if automation is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Automation not found")
        return automation


automation_service = AutomationService()
