from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crmflow.automation.actions import ActionContext, ActionExecutor, ActionOutcome, EntityMutationClient
from crmflow.automation.audit_log import AuditLogger, audit_logger
from crmflow.automation.conditions import evaluate_conditions
from crmflow.automation.models import Automation, AutomationEnrollment, AutomationLog
from crmflow.automation.schemas import AutomationEvent
from crmflow.email.client import EmailClient
from crmflow.metrics import observe_enrollment


logger = logging.getLogger("crmflow.automation")
tracer = trace.get_tracer("crmflow.automation.enrollment")

ENROLLMENT_ACTIVE = "active"
ENROLLMENT_COMPLETED = "completed"
ENROLLMENT_FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EnrollmentResult:
    enrolled: bool
    enrollment_id: uuid.UUID | None = None
    status: str | None = None
    conditions_met: bool | None = None
    log_id: uuid.UUID | None = None
    reason: str | None = None
    error: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "enrolled": self.enrolled,
            "enrollment_id": str(self.enrollment_id) if self.enrollment_id else None,
            "status": self.status,
            "conditions_met": self.conditions_met,
            "log_id": str(self.log_id) if self.log_id else None,
            "reason": self.reason,
            "error": self.error,
        }


def increment_counters(
    session: Session,
    automation_id: uuid.UUID,
    *,
    last_executed_at: datetime | None = None,
    **deltas: int,
) -> None:
    values: dict[str, Any] = {
        name: getattr(Automation, name) + delta for name, delta in deltas.items() if delta
    }
    if last_executed_at is not None:
        values["last_executed_at"] = last_executed_at
    if not values:
        return
    values["updated_at"] = Automation.updated_at
    session.execute(
        update(Automation)
        .where(Automation.id == automation_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


class EnrollmentService:
    """Runs one automation for one event and owns the enrollment record.

    ``active`` moves to ``completed`` or ``failed`` exactly once. Nothing raised
    by condition evaluation or actions escapes ``process``.
    """

    def __init__(self, executor: ActionExecutor | None = None, recorder: AuditLogger | None = None) -> None:
        self.executor = executor or ActionExecutor()
        self.recorder = recorder or audit_logger

    def find_active(
        self,
        session: Session,
        automation_id: uuid.UUID,
        entity_type: str,
        entity_id: str,
    ) -> AutomationEnrollment | None:
        return session.scalar(
            select(AutomationEnrollment).where(
                AutomationEnrollment.automation_id == automation_id,
                AutomationEnrollment.entity_type == entity_type,
                AutomationEnrollment.entity_id == entity_id,
                AutomationEnrollment.status == ENROLLMENT_ACTIVE,
            )
        )

    def process(
        self,
        session: Session,
        automation: Automation,
        event: AutomationEvent,
        *,
        mutation_client: EntityMutationClient,
        email_client: EmailClient,
    ) -> EnrollmentResult:
        automation_id = automation.id
        user_id = automation.user_id
        entity_type = event.entity_type
        entity_id = event.entity_id
        if entity_id is None:
            return EnrollmentResult(enrolled=False, reason="missing_entity_id")

        with tracer.start_as_current_span("automation.enrollment") as span:
            span.set_attribute("automation_id", str(automation_id))
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("entity_id", entity_id)

            enrollment = self._start(session, automation, entity_type, entity_id)
            if enrollment is None:
                logger.info(
                    "automation.enrollment_skipped",
                    extra={
                        "automation_id": str(automation_id),
                        "entity_type": entity_type,
                        "entity_id": entity_id,
                        "reason": "already_enrolled",
                    },
                )
                span.set_attribute("status", "already_enrolled")
                return EnrollmentResult(enrolled=False, reason="already_enrolled")

            conditions_met, evaluated = evaluate_conditions(automation.conditions or [], event.data)
            actions_executed: list[dict[str, Any]] = []
            first_error: str | None = None

            if conditions_met:
                context = ActionContext(
                    user_id=user_id,
                    mutation_client=mutation_client,
                    email_client=email_client,
                )
                for action in automation.actions or []:
                    outcome = self._run_action(session, action, event.data, context)
                    config = action.get("config") if isinstance(action, dict) else None
                    actions_executed.append(outcome.to_log_entry(config))
                    if not outcome.succeeded and first_error is None:
                        first_error = outcome.error

            if not conditions_met:
                final_status, log_status = ENROLLMENT_COMPLETED, "skipped"
            elif first_error is None:
                final_status, log_status = ENROLLMENT_COMPLETED, "success"
            else:
                final_status, log_status = ENROLLMENT_FAILED, "failed"

            try:
                log_entry = self._finish(
                    session,
                    automation_id,
                    user_id,
                    event,
                    enrollment,
                    final_status=final_status,
                    log_status=log_status,
                    conditions_met=conditions_met,
                    evaluated=evaluated,
                    actions_executed=actions_executed,
                    error=first_error,
                )
            except SQLAlchemyError as exc:
                session.rollback()
                logger.warning(
                    "automation.enrollment_finalize_failed",
                    extra={"automation_id": str(automation_id), "entity_id": entity_id, "error": str(exc)},
                )
                final_status, log_status = ENROLLMENT_FAILED, "failed"
                first_error = first_error or str(exc)
                log_entry = self._finish(
                    session,
                    automation_id,
                    user_id,
                    event,
                    enrollment,
                    final_status=final_status,
                    log_status=log_status,
                    conditions_met=conditions_met,
                    evaluated=evaluated,
                    actions_executed=actions_executed,
                    error=first_error,
                )

            span.set_attribute("status", final_status)
            observe_enrollment(final_status)
            logger.info(
                "automation.enrollment_finished",
                extra={
                    "automation_id": str(automation_id),
                    "enrollment_id": str(enrollment.id),
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "status": final_status,
                    "error": first_error,
                },
            )
            return EnrollmentResult(
                enrolled=True,
                enrollment_id=enrollment.id,
                status=final_status,
                conditions_met=conditions_met,
                log_id=log_entry.id,
                error=first_error,
                actions=actions_executed,
            )

    def _run_action(
        self,
        session: Session,
        action: dict[str, Any],
        data: dict[str, Any],
        context: ActionContext,
    ) -> ActionOutcome:
        # A failed action only discards its own writes.
        savepoint = session.begin_nested()
        outcome = self.executor.execute(action, data, context)
        if outcome.succeeded and savepoint.is_active:
            savepoint.commit()
        else:
            savepoint.rollback()
        return outcome

    def _finish(
        self,
        session: Session,
        automation_id: uuid.UUID,
        user_id: str,
        event: AutomationEvent,
        enrollment: AutomationEnrollment,
        *,
        final_status: str,
        log_status: str,
        conditions_met: bool,
        evaluated: list[dict[str, Any]],
        actions_executed: list[dict[str, Any]],
        error: str | None,
    ) -> AutomationLog:
        now = utcnow()
        enrollment.status = final_status
        enrollment.completed_at = now
        enrollment.error = error

        increment_counters(
            session,
            automation_id,
            execution_count=1,
            completed_enrollments=1 if log_status == "success" else 0,
            last_executed_at=now,
        )
        log_entry = self.recorder.record(
            session,
            automation_id=automation_id,
            user_id=user_id,
            trigger_type=event.type,
            trigger_data=event.data,
            conditions_met=conditions_met,
            conditions_evaluated=evaluated,
            actions_executed=actions_executed,
            status=log_status,
            error=error,
            enrollment_id=enrollment.id,
        )
        session.commit()
        return log_entry

    def _start(
        self,
        session: Session,
        automation: Automation,
        entity_type: str,
        entity_id: str,
    ) -> AutomationEnrollment | None:
        if self.find_active(session, automation.id, entity_type, entity_id) is not None:
            return None

        enrollment = AutomationEnrollment(
            automation_id=automation.id,
            user_id=automation.user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            status=ENROLLMENT_ACTIVE,
            enrolled_at=utcnow(),
        )
        session.add(enrollment)
        try:
            session.flush()
        except IntegrityError:
            session.rollback()
            return None

        increment_counters(session, automation.id, enrolled_count=1)
        session.commit()
        return enrollment


enrollment_service = EnrollmentService()
