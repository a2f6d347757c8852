import uuid

from celery import Celery

from crmflow.automation.dispatcher import automation_job_runner
from crmflow.core.config import get_settings
from crmflow.core.database import SessionLocal

settings = get_settings()

celery_app = Celery("crmflow", broker=settings.redis_url, backend=settings.redis_url)
celery_app.conf.task_default_queue = "automations"


@celery_app.task(name="crmflow.automation.run_job")
def run_automation_job(job_id: str) -> str:
    with SessionLocal() as session:
        job = automation_job_runner.run_automation_job(session, uuid.UUID(job_id))
        return job.status


@celery_app.task(name="crmflow.automation.process_queued")
def process_queued_automation_jobs() -> list[str]:
    with SessionLocal() as session:
        return [str(job_id) for job_id in automation_job_runner.process_queued_automation_jobs(session)]
