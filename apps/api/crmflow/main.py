from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crmflow.api.routes import router as api_router
from crmflow.automation.dispatcher import automation_job_runner, event_dispatcher
from crmflow.automation.schemas import TRIGGER_TYPES
from crmflow.core.config import get_settings
from crmflow.core.database import SessionLocal, get_db
from crmflow.core.events import InternalEvent, event_bus
from crmflow.logging import configure_logging
from crmflow.middleware.correlation_id import CorrelationIdMiddleware
from crmflow.middleware.request_logging import RequestLoggingMiddleware
from crmflow.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crmflow.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_automation_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    envelope: dict[str, Any] = event.payload
    settings = get_settings()
    try:
        with _session_scope() as session:
            queued_job_ids = event_dispatcher.dispatch_envelope(session, envelope)
            if settings.auto_run_automation_jobs:
                for job_id in queued_job_ids:
                    automation_job_runner.run_automation_job(session, job_id)
            elif settings.automation_jobs_via_celery:
                from crmflow.core.celery_app import run_automation_job

                for job_id in queued_job_ids:
                    run_automation_job.delay(str(job_id))
    except Exception as exc:
        logger.exception("automation_dispatch_failed", extra={"event_name": event.name, "error": str(exc)[:500]})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in TRIGGER_TYPES:
            event_bus.subscribe(event_name, _on_automation_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="CRM Automation API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
