from __future__ import annotations

import uuid
from typing import Protocol

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy.orm import Session

from crmflow.context import get_correlation_id
from crmflow.core.config import get_settings
from crmflow.email.models import EmailOutbox


tracer = trace.get_tracer("crmflow.email.client")


class EmailClient(Protocol):
    def send_email(self, user_id: str, to_address: str, subject: str, body: str) -> uuid.UUID: ...


class OutboxEmailClient:
    """Persists send intents; delivery is owned by whatever drains ``email_outbox``."""

    def __init__(self, session: Session, source: str = "automation"):
        self.session = session
        self.source = source

    def send_email(self, user_id: str, to_address: str, subject: str, body: str) -> uuid.UUID:
        with tracer.start_as_current_span("email.send") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            address = (to_address or "").strip()
            if "@" not in address:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Invalid recipient email: {to_address}",
                )

            settings = get_settings()
            message = EmailOutbox(
                user_id=user_id,
                to_address=address,
                from_address=settings.email_from_address,
                from_name=settings.email_from_name,
                subject=subject,
                body=body,
                source=self.source,
                correlation_id=get_correlation_id(),
            )
            self.session.add(message)
            self.session.flush()
            span.set_attribute("email_outbox_id", str(message.id))
            return message.id
