from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from crmflow.automation.audit_log import sanitize_payload
from crmflow.automation.enrollment import EnrollmentService, enrollment_service
from crmflow.automation.models import Automation, AutomationJob
from crmflow.automation.schemas import AutomationEvent
from crmflow.context import reset_correlation_id, set_correlation_id
from crmflow.core.config import get_settings
from crmflow.crm.mutations import SqlEntityMutationClient
from crmflow.email.client import OutboxEmailClient
from crmflow.metrics import observe_automation_job


logger = logging.getLogger("crmflow.automation.jobs")
tracer = trace.get_tracer("crmflow.automation.jobs")

JOB_QUEUED = "Queued"
JOB_RUNNING = "Running"
JOB_SUCCEEDED = "Succeeded"
JOB_FAILED = "Failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def stage_transition_matches(trigger_config: dict[str, Any] | None, event: AutomationEvent) -> bool:
    if event.type != "deal_stage_changed" or not trigger_config:
        return True

    from_stage_id = trigger_config.get("fromStageId")
    if from_stage_id and str(event.data.get("previousStageId")) != str(from_stage_id):
        return False

    to_stage_id = trigger_config.get("toStageId")
    if to_stage_id and str(event.entity.get("stageId")) != str(to_stage_id):
        return False
    return True


class EventDispatcher:
    def find_matching(self, session: Session, event: AutomationEvent) -> list[Automation]:
        automations = session.scalars(
            select(Automation)
            .where(
                Automation.user_id == event.user_id,
                Automation.trigger_type == event.type,
                Automation.is_active.is_(True),
                Automation.deleted_at.is_(None),
            )
            .order_by(Automation.created_at.asc())
        ).all()
        return [automation for automation in automations if stage_transition_matches(automation.trigger_config, event)]

    def dispatch(self, session: Session, event: AutomationEvent) -> list[uuid.UUID]:
        """Queue one job per matching automation and return the job ids."""
        if event.entity_id is None:
            logger.warning("automation.event_without_entity", extra={"event_name": event.type})
            return []

        queued_job_ids: list[uuid.UUID] = []
        params_event = {
            "type": event.type,
            "user_id": event.user_id,
            "data": sanitize_payload(event.data),
            "correlation_id": event.correlation_id,
        }

        for automation in self.find_matching(session, event):
            job = AutomationJob(
                automation_id=automation.id,
                user_id=event.user_id,
                event_type=event.type,
                status=JOB_QUEUED,
                correlation_id=event.correlation_id,
                params_json=json.dumps({"automation_id": str(automation.id), "event": params_event}),
            )
            session.add(job)
            session.flush()
            queued_job_ids.append(job.id)

        session.commit()
        if queued_job_ids:
            logger.info(
                "automation.jobs_queued",
                extra={
                    "event_name": event.type,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id,
                    "queued_count": len(queued_job_ids),
                },
            )
        return queued_job_ids

    def dispatch_envelope(self, session: Session, envelope: dict[str, Any]) -> list[uuid.UUID]:
        event = AutomationEvent.from_envelope(envelope)
        if event is None:
            return []
        return self.dispatch(session, event)


class AutomationJobRunner:
    def __init__(self, service: EnrollmentService | None = None) -> None:
        self.enrollment_service = service or enrollment_service

    def run_automation_job(self, session: Session, job_id: uuid.UUID) -> AutomationJob:
        job = session.scalar(select(AutomationJob).where(AutomationJob.id == job_id))
        if job is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
        if job.status in {JOB_SUCCEEDED, JOB_FAILED}:
            return job

        trigger_type = job.event_type
        correlation_id = str(job.correlation_id or "").strip() or None
        token = set_correlation_id(correlation_id)
        started = time.perf_counter()
        final_status = JOB_FAILED

        with tracer.start_as_current_span("automation.job.run") as job_span:
            job_span.set_attribute("job_id", str(job.id))
            job_span.set_attribute("automation_id", str(job.automation_id))
            job_span.set_attribute("trigger_type", trigger_type)
            job_span.set_attribute("correlation_id", correlation_id or "")
            logger.info(
                "job.started",
                extra={"job_id": str(job.id), "automation_id": str(job.automation_id), "trigger_type": trigger_type},
            )

            try:
                params = json.loads(job.params_json or "{}")
                job.status = JOB_RUNNING
                job.started_at = utcnow()
                job.finished_at = None
                session.add(job)
                session.commit()

                automation = session.scalar(select(Automation).where(Automation.id == job.automation_id))
                if automation is None or automation.deleted_at is not None or not automation.is_active:
                    result_payload: dict[str, Any] = {"status": "skipped", "reason": "automation_inactive"}
                else:
                    event = AutomationEvent.model_validate(params.get("event") or {})
                    result = self.enrollment_service.process(
                        session,
                        automation,
                        event,
                        mutation_client=SqlEntityMutationClient(session, automation.user_id),
                        email_client=OutboxEmailClient(session),
                    )
                    result_payload = {"status": "succeeded", **result.to_dict()}

                job = session.scalar(select(AutomationJob).where(AutomationJob.id == job_id))
                if job is None:
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
                job.status = JOB_SUCCEEDED
                job.finished_at = utcnow()
                job.result_json = json.dumps(result_payload)
                session.add(job)
                session.commit()
                final_status = JOB_SUCCEEDED
                return job
            except Exception as exc:
                session.rollback()
                job = session.scalar(select(AutomationJob).where(AutomationJob.id == job_id))
                if job is None:
                    raise
                logger.exception(
                    "automation.job_failed",
                    extra={"job_id": str(job_id), "automation_id": str(job.automation_id), "error": str(exc)},
                )
                job.status = JOB_FAILED
                job.finished_at = utcnow()
                job.result_json = json.dumps({"status": "failed", "error": str(exc)[:2000]})
                session.add(job)
                session.commit()
                return job
            finally:
                elapsed = time.perf_counter() - started
                job_span.set_attribute("status", final_status)
                observe_automation_job(trigger_type=trigger_type, status=final_status, duration=elapsed)
                logger.info(
                    "job.finished",
                    extra={
                        "job_id": str(job_id),
                        "trigger_type": trigger_type,
                        "status": final_status,
                        "duration_ms": round(elapsed * 1000, 2),
                    },
                )
                reset_correlation_id(token)

    def process_queued_automation_jobs(self, session: Session, limit: int | None = None) -> list[uuid.UUID]:
        batch_size = limit or get_settings().automation_job_batch_size
        job_ids = session.scalars(
            select(AutomationJob.id)
            .where(AutomationJob.status == JOB_QUEUED)
            .order_by(AutomationJob.created_at.asc())
            .limit(batch_size)
        ).all()
        for job_id in job_ids:
            self.run_automation_job(session, job_id)
        return list(job_ids)


event_dispatcher = EventDispatcher()
automation_job_runner = AutomationJobRunner()
