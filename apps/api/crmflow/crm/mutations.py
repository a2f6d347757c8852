from __future__ import annotations

import uuid
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from crmflow.automation.fields import set_path, split_custom_field_path
from crmflow.context import get_correlation_id
from crmflow.crm.models import CRMContact, CRMDeal, CRMStage


tracer = trace.get_tracer("crmflow.crm.mutations")

_CONTACT_COLUMNS = {
    "firstName": "first_name",
    "lastName": "last_name",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "position": "position",
    "notes": "notes",
    "tags": "tags",
}
_DEAL_COLUMNS = {
    "name": "name",
    "value": "value",
    "status": "status",
    "notes": "notes",
}
_DEAL_STATUSES = {"open", "won", "lost"}


def _parse_uuid(raw: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(raw))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found") from exc


class SqlEntityMutationClient:
    """Applies automation actions to live CRM rows owned by ``user_id``.

    Changes are flushed, never committed; the caller owns the transaction.
    """

    def __init__(self, session: Session, user_id: str):
        self.session = session
        self.user_id = user_id

    def add_tags(self, contact_id: str, tags: list[str]) -> list[str]:
        with tracer.start_as_current_span("crm.contact.add_tags") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            contact = self._get_contact(contact_id)
            current = list(contact.tags or [])
            for tag in tags:
                if tag not in current:
                    current.append(tag)
            contact.tags = current
            self.session.flush()
            return current

    def remove_tag(self, contact_id: str, tag: str) -> list[str]:
        with tracer.start_as_current_span("crm.contact.remove_tag"):
            contact = self._get_contact(contact_id)
            current = [item for item in (contact.tags or []) if item != tag]
            contact.tags = current
            self.session.flush()
            return current

    def update_field(self, entity_type: str, entity_id: str, field: str, value: Any) -> dict[str, Any]:
        custom_path = split_custom_field_path(field)
        if custom_path is not None:
            return self.update_custom_field(entity_type, entity_id, custom_path, value)

        with tracer.start_as_current_span("crm.entity.update_field") as span:
            span.set_attribute("entity_type", entity_type)
            if entity_type == "contact":
                contact = self._get_contact(entity_id)
                column = _CONTACT_COLUMNS.get(field)
                if column is None:
                    raise HTTPException(
                        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                        detail=f"Unknown contact field: {field}",
                    )
                if column == "tags" and not isinstance(value, list):
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="tags must be a list")
                setattr(contact, column, value)
                self.session.flush()
                return {"id": str(contact.id), field: value}

            if entity_type == "deal":
                if field == "stageId":
                    return self.move_to_stage(entity_id, str(value))
                deal = self._get_deal(entity_id)
                column = _DEAL_COLUMNS.get(field)
                if column is None:
                    raise HTTPException(
                        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                        detail=f"Unknown deal field: {field}",
                    )
                setattr(deal, column, self._coerce_deal_value(column, value))
                self.session.flush()
                return {"id": str(deal.id), field: value}

        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unsupported entity type: {entity_type}")

    def update_custom_field(self, entity_type: str, entity_id: str, field_name: str, value: Any) -> dict[str, Any]:
        with tracer.start_as_current_span("crm.entity.update_custom_field") as span:
            span.set_attribute("entity_type", entity_type)
            if entity_type == "contact":
                entity: CRMContact | CRMDeal = self._get_contact(entity_id)
            elif entity_type == "deal":
                entity = self._get_deal(entity_id)
            else:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail=f"Unsupported entity type: {entity_type}",
                )
            entity.custom_fields = set_path(entity.custom_fields, field_name, value)
            self.session.flush()
            return {"id": str(entity.id), "customFields": entity.custom_fields}

    def move_to_stage(self, deal_id: str, stage_id: str) -> dict[str, Any]:
        with tracer.start_as_current_span("crm.deal.move_to_stage"):
            deal = self._get_deal(deal_id)
            stage = self.session.scalar(
                select(CRMStage).where(
                    CRMStage.id == _parse_uuid(stage_id, "Stage"),
                    CRMStage.user_id == self.user_id,
                )
            )
            if stage is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found")
            deal.stage_id = stage.id
            self.session.flush()
            return {"id": str(deal.id), "stageId": str(stage.id)}

    def _get_contact(self, contact_id: str) -> CRMContact:
        contact = self.session.scalar(
            select(CRMContact).where(
                CRMContact.id == _parse_uuid(contact_id, "Contact"),
                CRMContact.user_id == self.user_id,
            )
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return contact

    def _get_deal(self, deal_id: str) -> CRMDeal:
        deal = self.session.scalar(
            select(CRMDeal).where(
                CRMDeal.id == _parse_uuid(deal_id, "Deal"),
                CRMDeal.user_id == self.user_id,
            )
        )
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return deal

    def _coerce_deal_value(self, column: str, value: Any) -> Any:
        if column == "value":
            if isinstance(value, bool):
                raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="value must be numeric")
            try:
                return Decimal(str(value))
            except (InvalidOperation, ValueError) as exc:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="value must be numeric",
                ) from exc
        if column == "status" and value not in _DEAL_STATUSES:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid deal status: {value}")
        return value
