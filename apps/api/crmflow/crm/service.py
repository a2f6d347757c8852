from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crmflow import audit, events
from crmflow.core.rbac import ActorUser
from crmflow.crm.models import CRMContact, CRMCustomFieldDefinition, CRMDeal, CRMStage
from crmflow.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactSnapshot,
    ContactUpdate,
    CustomFieldDefinitionCreate,
    CustomFieldDefinitionRead,
    DealCreate,
    DealRead,
    DealSnapshot,
    DealUpdate,
    StageCreate,
    StageRead,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_CONTACT_FIELD_KEYS = {
    "first_name": "firstName",
    "last_name": "lastName",
    "email": "email",
    "phone": "phone",
    "company": "company",
    "position": "position",
    "notes": "notes",
    "tags": "tags",
}
_DEAL_FIELD_KEYS = {
    "name": "name",
    "value": "value",
    "status": "status",
    "stage_id": "stageId",
    "contact_id": "contactId",
    "notes": "notes",
}


def contact_snapshot(contact: CRMContact) -> dict[str, Any]:
    return ContactSnapshot.model_validate(contact).model_dump(mode="json", by_alias=True)


def deal_snapshot(deal: CRMDeal) -> dict[str, Any]:
    return DealSnapshot.model_validate(deal).model_dump(mode="json", by_alias=True)


def _publish(event_type: str, actor_user: ActorUser, payload: dict[str, Any]) -> None:
    envelope = events.build_envelope(event_type, actor_user.user_id, payload)
    envelope["correlation_id"] = actor_user.correlation_id
    events.publish(envelope)


def _merge_custom_fields(current: dict[str, Any] | None, incoming: dict[str, Any]) -> tuple[dict[str, Any], list[str]]:
    merged = dict(current or {})
    changed: list[str] = []
    for key, value in incoming.items():
        if merged.get(key) != value or key not in merged:
            changed.append(f"customFields.{key}")
        merged[key] = value
    return merged, changed


class StageService:
    entity_type = "crm.stage"

    def create_stage(self, session: Session, actor_user: ActorUser, dto: StageCreate) -> StageRead:
        stage = CRMStage(user_id=actor_user.user_id, name=dto.name.strip(), position=dto.position)
        session.add(stage)
        session.commit()
        session.refresh(stage)
        return StageRead.model_validate(stage)

    def list_stages(self, session: Session, actor_user: ActorUser) -> list[StageRead]:
        rows = session.scalars(
            select(CRMStage)
            .where(CRMStage.user_id == actor_user.user_id, CRMStage.is_active.is_(True))
            .order_by(CRMStage.position.asc(), CRMStage.created_at.asc())
        ).all()
        return [StageRead.model_validate(row) for row in rows]

    def get_owned_stage(self, session: Session, actor_user: ActorUser, stage_id: uuid.UUID) -> CRMStage:
        stage = session.scalar(select(CRMStage).where(CRMStage.id == stage_id, CRMStage.user_id == actor_user.user_id))
        if stage is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found")
        return stage


class ContactService:
    entity_type = "crm.contact"

    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        contact = CRMContact(
            user_id=actor_user.user_id,
            first_name=dto.first_name.strip(),
            last_name=dto.last_name.strip() if dto.last_name else None,
            email=str(dto.email) if dto.email is not None else None,
            phone=dto.phone,
            company=dto.company,
            position=dto.position,
            notes=dto.notes,
            tags=list(dict.fromkeys(dto.tags)),
            custom_fields=dict(dto.custom_fields),
        )
        session.add(contact)
        session.commit()
        session.refresh(contact)

        read_model = ContactRead.model_validate(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="create",
            before=None,
            after=read_model.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish("contact_created", actor_user, {"contact": contact_snapshot(contact)})

        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def list_contacts(self, session: Session, actor_user: ActorUser, *, limit: int = 50, offset: int = 0) -> list[ContactRead]:
        rows = session.scalars(
            select(CRMContact)
            .where(CRMContact.user_id == actor_user.user_id)
            .order_by(CRMContact.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [ContactRead.model_validate(row) for row in rows]

    def get_contact(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(self._load(session, actor_user, contact_id))

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        contact = self._load(session, actor_user, contact_id)
        before = ContactRead.model_validate(contact).model_dump(mode="json")
        changes = dto.model_dump(exclude_unset=True)
        changed_fields: list[str] = []

        custom_fields = changes.pop("custom_fields", None)
        if custom_fields:
            contact.custom_fields, changed_custom = _merge_custom_fields(contact.custom_fields, custom_fields)
            if changed_custom:
                changed_fields.append("customFields")

        for attr, value in changes.items():
            if attr in {"first_name", "tags"} and value is None:
                continue
            if attr == "email" and value is not None:
                value = str(value)
            if attr == "tags" and value is not None:
                value = list(dict.fromkeys(value))
            if getattr(contact, attr) != value:
                setattr(contact, attr, value)
                changed_fields.append(_CONTACT_FIELD_KEYS[attr])

        if not changed_fields:
            return ContactRead.model_validate(contact)

        session.commit()
        session.refresh(contact)
        after = ContactRead.model_validate(contact)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(contact.id),
            action="update",
            before=before,
            after=after.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish(
            "contact_updated",
            actor_user,
            {"contact": contact_snapshot(contact), "changedFields": changed_fields},
        )

        session.refresh(contact)
        return ContactRead.model_validate(contact)

    def load_snapshot(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> dict[str, Any]:
        return contact_snapshot(self._load(session, actor_user, contact_id))

    def _load(self, session: Session, actor_user: ActorUser, contact_id: uuid.UUID) -> CRMContact:
        contact = session.scalar(
            select(CRMContact).where(CRMContact.id == contact_id, CRMContact.user_id == actor_user.user_id)
        )
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return contact


class DealService:
    entity_type = "crm.deal"

    def __init__(self) -> None:
        self.stage_service = StageService()
        self.contact_service = ContactService()

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        if dto.stage_id is not None:
            self.stage_service.get_owned_stage(session, actor_user, dto.stage_id)
        if dto.contact_id is not None:
            self.contact_service._load(session, actor_user, dto.contact_id)

        deal = CRMDeal(
            user_id=actor_user.user_id,
            name=dto.name.strip(),
            value=dto.value,
            status=dto.status,
            stage_id=dto.stage_id,
            contact_id=dto.contact_id,
            notes=dto.notes,
            custom_fields=dict(dto.custom_fields),
        )
        session.add(deal)
        session.commit()
        session.refresh(deal)

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="create",
            before=None,
            after=DealRead.model_validate(deal).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        _publish("deal_created", actor_user, {"deal": deal_snapshot(deal)})

        session.refresh(deal)
        return DealRead.model_validate(deal)

    def list_deals(self, session: Session, actor_user: ActorUser, *, limit: int = 50, offset: int = 0) -> list[DealRead]:
        rows = session.scalars(
            select(CRMDeal)
            .where(CRMDeal.user_id == actor_user.user_id)
            .order_by(CRMDeal.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [DealRead.model_validate(row) for row in rows]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealRead:
        return DealRead.model_validate(self._load(session, actor_user, deal_id))

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        deal = self._load(session, actor_user, deal_id)
        before = DealRead.model_validate(deal).model_dump(mode="json")
        previous_stage_id = deal.stage_id
        changes = dto.model_dump(exclude_unset=True)
        changed_fields: list[str] = []

        if changes.get("stage_id") is not None:
            self.stage_service.get_owned_stage(session, actor_user, changes["stage_id"])
        if changes.get("contact_id") is not None:
            self.contact_service._load(session, actor_user, changes["contact_id"])

        custom_fields = changes.pop("custom_fields", None)
        if custom_fields:
            deal.custom_fields, changed_custom = _merge_custom_fields(deal.custom_fields, custom_fields)
            if changed_custom:
                changed_fields.append("customFields")

        for attr, value in changes.items():
            if attr in {"name", "status", "value"} and value is None:
                continue
            if getattr(deal, attr) != value:
                setattr(deal, attr, value)
                changed_fields.append(_DEAL_FIELD_KEYS[attr])

        if not changed_fields:
            return DealRead.model_validate(deal)

        session.commit()
        session.refresh(deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action="update",
            before=before,
            after=DealRead.model_validate(deal).model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )

        snapshot = deal_snapshot(deal)
        if "stageId" in changed_fields:
            _publish(
                "deal_stage_changed",
                actor_user,
                {
                    "deal": snapshot,
                    "previousStageId": str(previous_stage_id) if previous_stage_id else None,
                    "changedFields": ["stageId"],
                },
            )
        _publish("deal_updated", actor_user, {"deal": snapshot, "changedFields": changed_fields})

        session.refresh(deal)
        return DealRead.model_validate(deal)

    def load_snapshot(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> dict[str, Any]:
        return deal_snapshot(self._load(session, actor_user, deal_id))

    def _load(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(select(CRMDeal).where(CRMDeal.id == deal_id, CRMDeal.user_id == actor_user.user_id))
        if deal is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deal not found")
        return deal


class CustomFieldService:
    def create_definition(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_type: str,
        dto: CustomFieldDefinitionCreate,
    ) -> CustomFieldDefinitionRead:
        if entity_type not in {"contact", "deal"}:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Unsupported entity type")
        if dto.data_type == "select" and not dto.allowed_values:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="allowed_values are required for select fields",
            )

        definition = CRMCustomFieldDefinition(
            user_id=actor_user.user_id,
            entity_type=entity_type,
            field_key=dto.field_key,
            label=dto.label.strip(),
            data_type=dto.data_type,
            allowed_values=dto.allowed_values,
            is_active=dto.is_active,
        )
        session.add(definition)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Custom field already exists")
        session.refresh(definition)
        return CustomFieldDefinitionRead.model_validate(definition)

    def list_definitions(
        self,
        session: Session,
        user_id: str,
        entity_type: str,
        *,
        active_only: bool = True,
    ) -> list[CRMCustomFieldDefinition]:
        query = select(CRMCustomFieldDefinition).where(
            CRMCustomFieldDefinition.user_id == user_id,
            CRMCustomFieldDefinition.entity_type == entity_type,
        )
        if active_only:
            query = query.where(CRMCustomFieldDefinition.is_active.is_(True))
        return list(session.scalars(query.order_by(CRMCustomFieldDefinition.field_key.asc())).all())


stage_service = StageService()
contact_service = ContactService()
deal_service = DealService()
custom_field_service = CustomFieldService()
