from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from fastapi import HTTPException
from opentelemetry import trace

from crmflow.automation.fields import resolve_path
from crmflow.automation.templates import render_template
from crmflow.email.client import EmailClient
from crmflow.metrics import observe_action


logger = logging.getLogger("crmflow.automation")
tracer = trace.get_tracer("crmflow.automation.actions")

DEFAULT_EMAIL_SUBJECT = "Notification"
DEFAULT_EMAIL_BODY = "This is an automated message."


class ActionType(StrEnum):
    ADD_CONTACT_TAG = "add_contact_tag"
    REMOVE_CONTACT_TAG = "remove_contact_tag"
    UPDATE_CONTACT_FIELD = "update_contact_field"
    UPDATE_DEAL_FIELD = "update_deal_field"
    UPDATE_CUSTOM_FIELD = "update_custom_field"
    MOVE_DEAL_TO_STAGE = "move_deal_to_stage"
    SEND_EMAIL = "send_email"


class ActionConfigError(ValueError):
    pass


class EntityMutationClient(Protocol):
    def add_tags(self, contact_id: str, tags: list[str]) -> list[str]: ...

    def remove_tag(self, contact_id: str, tag: str) -> list[str]: ...

    def update_field(self, entity_type: str, entity_id: str, field: str, value: Any) -> dict[str, Any]: ...

    def update_custom_field(self, entity_type: str, entity_id: str, field_name: str, value: Any) -> dict[str, Any]: ...

    def move_to_stage(self, deal_id: str, stage_id: str) -> dict[str, Any]: ...


@dataclass
class ActionContext:
    user_id: str
    mutation_client: EntityMutationClient
    email_client: EmailClient


@dataclass
class ActionOutcome:
    type: str
    status: str
    error: str | None = None
    result: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "success"

    def to_log_entry(self, config: Any) -> dict[str, Any]:
        entry: dict[str, Any] = {"type": self.type, "config": config, "status": self.status}
        if self.error is not None:
            entry["error"] = self.error
        if self.result:
            entry["result"] = self.result
        return entry


def _require(config: dict[str, Any], key: str) -> Any:
    if key not in config:
        raise ActionConfigError(f"Missing required config field: {key}")
    return config[key]


def _require_text(config: dict[str, Any], key: str) -> str:
    value = _require(config, key)
    if not isinstance(value, str) or not value.strip():
        raise ActionConfigError(f"Missing required config field: {key}")
    return value.strip()


def _as_id(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _contact_id(config: dict[str, Any], data: dict[str, Any]) -> str:
    contact_id = (
        _as_id(config.get("contactId"))
        or _as_id(resolve_path("contact.id", data))
        or _as_id(resolve_path("deal.contactId", data))
    )
    if contact_id is None:
        raise ActionConfigError("No contact ID available for update")
    return contact_id


def _deal_id(config: dict[str, Any], data: dict[str, Any]) -> str:
    deal_id = _as_id(config.get("dealId")) or _as_id(resolve_path("deal.id", data))
    if deal_id is None:
        raise ActionConfigError("No deal ID available for update")
    return deal_id


def _collect_tags(config: dict[str, Any]) -> list[str]:
    raw = config.get("tag")
    if raw is None:
        raw = config.get("tags")
    if raw is None:
        raise ActionConfigError("Missing required config field: tag")
    items = raw if isinstance(raw, list) else [raw]
    tags: list[str] = []
    for item in items:
        text = str(item).strip() if item is not None else ""
        if text and text not in tags:
            tags.append(text)
    if not tags:
        raise ActionConfigError("Missing required config field: tag")
    return tags


def _recipient_email(data: dict[str, Any]) -> str | None:
    for path in ("contact.email", "deal.contact.email"):
        value = resolve_path(path, data)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _error_text(exc: Exception) -> str:
    if isinstance(exc, HTTPException):
        return str(exc.detail)
    text = str(exc)
    return text or exc.__class__.__name__


class ActionExecutor:
    def __init__(self) -> None:
        self._handlers: dict[ActionType, Callable[[dict[str, Any], dict[str, Any], ActionContext], dict[str, Any]]] = {
            ActionType.ADD_CONTACT_TAG: self._add_contact_tag,
            ActionType.REMOVE_CONTACT_TAG: self._remove_contact_tag,
            ActionType.UPDATE_CONTACT_FIELD: self._update_contact_field,
            ActionType.UPDATE_DEAL_FIELD: self._update_deal_field,
            ActionType.UPDATE_CUSTOM_FIELD: self._update_custom_field,
            ActionType.MOVE_DEAL_TO_STAGE: self._move_deal_to_stage,
            ActionType.SEND_EMAIL: self._send_email,
        }

    def execute(self, action: dict[str, Any], data: dict[str, Any], context: ActionContext) -> ActionOutcome:
        raw_type = action.get("type") if isinstance(action, dict) else None
        type_label = str(raw_type) if raw_type is not None else "unknown"
        config = action.get("config") if isinstance(action, dict) else None
        if not isinstance(config, dict):
            config = {}

        with tracer.start_as_current_span("automation.action") as span:
            span.set_attribute("action_type", type_label)
            try:
                action_type = ActionType(raw_type)
            except ValueError:
                outcome = ActionOutcome(type=type_label, status="failed", error=f"Unknown action type: {type_label}")
            else:
                try:
                    result = self._handlers[action_type](config, data or {}, context)
                    outcome = ActionOutcome(type=type_label, status="success", result=result)
                except Exception as exc:
                    outcome = ActionOutcome(type=type_label, status="failed", error=_error_text(exc))

            span.set_attribute("status", outcome.status)

        observe_action(type_label, outcome.status)
        if not outcome.succeeded:
            logger.warning(
                "automation.action_failed",
                extra={"action_type": type_label, "status": outcome.status, "error": outcome.error},
            )
        return outcome

    def _add_contact_tag(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        tags = _collect_tags(config)
        contact_id = _contact_id(config, data)
        current = context.mutation_client.add_tags(contact_id, tags)
        return {"contactId": contact_id, "tags": current}

    def _remove_contact_tag(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        tag = _require_text(config, "tag")
        contact_id = _contact_id(config, data)
        current = context.mutation_client.remove_tag(contact_id, tag)
        return {"contactId": contact_id, "tags": current}

    def _update_contact_field(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        field_path = _require_text(config, "field")
        value = _require(config, "value")
        contact_id = _contact_id(config, data)
        context.mutation_client.update_field("contact", contact_id, field_path, value)
        return {"contactId": contact_id, "field": field_path}

    def _update_deal_field(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        field_path = _require_text(config, "field")
        value = _require(config, "value")
        deal_id = _deal_id(config, data)
        context.mutation_client.update_field("deal", deal_id, field_path, value)
        return {"dealId": deal_id, "field": field_path}

    def _update_custom_field(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        field_name = _require_text(config, "fieldName")
        value = _require(config, "value")
        entity_type = config.get("entityType")
        if entity_type is None:
            entity_type = "deal" if isinstance(data.get("deal"), dict) else "contact"
        if entity_type not in {"contact", "deal"}:
            raise ActionConfigError(f"Unsupported entity type: {entity_type}")

        entity_id = _as_id(config.get("entityId"))
        if entity_id is None:
            entity_id = _contact_id(config, data) if entity_type == "contact" else _deal_id(config, data)
        context.mutation_client.update_custom_field(entity_type, entity_id, field_name, value)
        return {"entityType": entity_type, "entityId": entity_id, "fieldName": field_name}

    def _move_deal_to_stage(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        stage_id = _as_id(_require(config, "stageId"))
        if stage_id is None:
            raise ActionConfigError("Missing required config field: stageId")
        deal_id = _deal_id(config, data)
        context.mutation_client.move_to_stage(deal_id, stage_id)
        return {"dealId": deal_id, "stageId": stage_id}

    def _send_email(self, config: dict[str, Any], data: dict[str, Any], context: ActionContext) -> dict[str, Any]:
        recipient = _recipient_email(data)
        if recipient is None:
            raise ActionConfigError("No recipient email found in trigger data")
        subject = render_template(config.get("subject") or DEFAULT_EMAIL_SUBJECT, data)
        body = render_template(config.get("body") or DEFAULT_EMAIL_BODY, data)
        message_id = context.email_client.send_email(context.user_id, recipient, subject, body)
        return {"recipientEmail": recipient, "subject": subject, "messageId": str(message_id)}
