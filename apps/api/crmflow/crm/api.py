from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crmflow.api.deps import error_response, get_current_user
from crmflow.core.database import get_db
from crmflow.core.rbac import ActorUser, require_permission
from crmflow.crm.schemas import (
    ContactCreate,
    ContactRead,
    ContactUpdate,
    CustomFieldDefinitionCreate,
    CustomFieldDefinitionRead,
    DealCreate,
    DealRead,
    DealUpdate,
    EntityType,
    StageCreate,
    StageRead,
)
from crmflow.crm.service import contact_service, custom_field_service, deal_service, stage_service

contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
stages_router = APIRouter(prefix="/api/crm", tags=["crm.stages"])
custom_fields_router = APIRouter(prefix="/api/crm", tags=["crm.custom_fields"])


def _failure(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contact_create_failed")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(db, user, limit=limit, offset=offset)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contact_list_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, user, contact_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contact_get_failed")


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactRead)
def patch_contact(
    request: Request,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.write")
        return contact_service.update_contact(db, user, contact_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_contact_update_failed")


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_deal_create_failed")


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.list_deals(db, user, limit=limit, offset=offset)
    except HTTPException as exc:
        return _failure(request, exc, "crm_deal_list_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return _failure(request, exc, "crm_deal_get_failed")


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_deal_update_failed")


@stages_router.post("/stages", response_model=StageRead, status_code=status.HTTP_201_CREATED)
def create_stage(
    request: Request,
    dto: StageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageRead | JSONResponse:
    try:
        require_permission(user, "crm.deals.write")
        return stage_service.create_stage(db, user, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_stage_create_failed")


@stages_router.get("/stages", response_model=list[StageRead])
def list_stages(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StageRead] | JSONResponse:
    try:
        require_permission(user, "crm.deals.read")
        return stage_service.list_stages(db, user)
    except HTTPException as exc:
        return _failure(request, exc, "crm_stage_list_failed")


@custom_fields_router.post(
    "/custom-fields/{entity_type}",
    response_model=CustomFieldDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_custom_field(
    request: Request,
    entity_type: EntityType,
    dto: CustomFieldDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CustomFieldDefinitionRead | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.write")
        return custom_field_service.create_definition(db, user, entity_type, dto)
    except HTTPException as exc:
        return _failure(request, exc, "crm_custom_field_create_failed")


@custom_fields_router.get("/custom-fields/{entity_type}", response_model=list[CustomFieldDefinitionRead])
def list_custom_fields(
    request: Request,
    entity_type: EntityType,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CustomFieldDefinitionRead] | JSONResponse:
    try:
        require_permission(user, "crm.custom_fields.read")
        rows = custom_field_service.list_definitions(db, user.user_id, entity_type, active_only=False)
        return [CustomFieldDefinitionRead.model_validate(row) for row in rows]
    except HTTPException as exc:
        return _failure(request, exc, "crm_custom_field_list_failed")
