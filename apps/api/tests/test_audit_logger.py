from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crmflow.automation.audit_log import AuditLogger, sanitize_payload
from crmflow.automation.models import Automation, AutomationLog
from crmflow.core.database import Base


class Color(Enum):
    RED = "red"


class Handle:
    def __repr__(self) -> str:
        return "<Handle socket>"


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


def test_sanitize_replaces_cycles_and_converts_values() -> None:
    contact: dict[str, object] = {"id": uuid.UUID("00000000-0000-0000-0000-000000000001"), "tags": ["a"]}
    deal: dict[str, object] = {"contact": contact, "value": Decimal("10.50"), "color": Color.RED}
    contact["deal"] = deal
    payload = {
        "deal": deal,
        "at": datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        "handle": Handle(),
        "ratio": float("nan"),
        "labels": {"b", "a"},
    }

    sanitized = sanitize_payload(payload)

    assert sanitized["deal"]["contact"]["deal"] == "[Circular]"
    assert sanitized["deal"]["contact"]["id"] == "00000000-0000-0000-0000-000000000001"
    assert sanitized["deal"]["value"] == 10.5
    assert sanitized["deal"]["color"] == "red"
    assert sanitized["at"] == "2026-01-02T03:04:05+00:00"
    assert sanitized["handle"] == "<Handle socket>"
    assert sanitized["ratio"] is None
    assert sanitized["labels"] == ["a", "b"]
    json.dumps(sanitized)


def test_sanitize_keeps_shared_but_acyclic_references() -> None:
    shared = {"name": "shared"}
    sanitized = sanitize_payload({"left": shared, "right": shared})

    assert sanitized == {"left": {"name": "shared"}, "right": {"name": "shared"}}


def test_sanitize_caps_depth() -> None:
    nested: dict[str, object] = {}
    cursor = nested
    for _ in range(20):
        child: dict[str, object] = {}
        cursor["next"] = child
        cursor = child

    sanitized = sanitize_payload(nested, max_depth=3)

    assert sanitized == {"next": {"next": {"next": "[MaxDepth]"}}}


def test_record_adds_a_log_row_with_sanitized_trigger_data(db_session: Session) -> None:
    automation = Automation(
        user_id="owner-1",
        name="Log me",
        trigger_type="contact_created",
        conditions=[],
        actions=[{"type": "add_contact_tag", "config": {"tag": "x"}}],
    )
    db_session.add(automation)
    db_session.commit()

    trigger_data: dict[str, object] = {"contact": {"id": "c-1"}}
    trigger_data["self"] = trigger_data

    entry = AuditLogger().record(
        db_session,
        automation_id=automation.id,
        user_id="owner-1",
        trigger_type="contact_created",
        trigger_data=trigger_data,
        conditions_met=True,
        conditions_evaluated=[],
        actions_executed=[{"type": "add_contact_tag", "config": {"tag": "x"}, "status": "failed", "error": "boom"}],
        status="failed",
        error="boom",
    )
    db_session.commit()

    stored = db_session.scalar(select(AutomationLog).where(AutomationLog.id == entry.id))
    assert stored is not None
    assert stored.trigger_data == {"contact": {"id": "c-1"}, "self": "[Circular]"}
    assert stored.status == "failed"
    assert stored.error == "boom"
    assert stored.actions_executed[0]["error"] == "boom"
