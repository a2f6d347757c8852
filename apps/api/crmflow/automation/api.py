from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from crmflow.api.deps import error_response, get_current_user
from crmflow.automation.schemas import (
    AutomationCreate,
    AutomationLogPage,
    AutomationRead,
    AutomationTestRequest,
    AutomationTestResponse,
    AutomationUpdate,
    AvailableField,
    EnrollmentStatus,
    EnrollmentSummary,
    EntityType,
    ManualEnrollRequest,
    ManualEnrollResponse,
)
from crmflow.automation.service import automation_service
from crmflow.core.database import get_db
from crmflow.core.rbac import ActorUser, require_any_permission, require_permission

router = APIRouter(prefix="/api/automations", tags=["automations"])


@router.get("", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    is_active: bool | None = Query(default=None),
    trigger_type: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.list_automations(db, user, is_active=is_active, trigger_type=trigger_type)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("", response_model=AutomationRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return automation_service.create_automation(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/fields/{entity_type}", response_model=list[AvailableField])
def list_available_fields(
    request: Request,
    entity_type: EntityType,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AvailableField] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.list_available_fields(db, user, entity_type)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_fields_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.get_automation(db, user, automation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{automation_id}", response_model=AutomationRead)
def update_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return automation_service.update_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{automation_id}/toggle", response_model=AutomationRead)
def toggle_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return automation_service.toggle_automation(db, user, automation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_toggle_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.delete("/{automation_id}", status_code=status.HTTP_200_OK, response_model=None)
def delete_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> dict[str, str] | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        automation_service.soft_delete_automation(db, user, automation_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{automation_id}/logs", response_model=AutomationLogPage)
def list_automation_logs(
    request: Request,
    automation_id: uuid.UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationLogPage | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.list_logs(db, user, automation_id, limit=limit, offset=offset)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_logs_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{automation_id}/enrollments", response_model=EnrollmentSummary)
def get_enrollment_summary(
    request: Request,
    automation_id: uuid.UUID,
    status_filter: EnrollmentStatus | None = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EnrollmentSummary | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return automation_service.enrollment_summary(db, user, automation_id, status_filter=status_filter)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_enrollments_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{automation_id}/enroll", response_model=ManualEnrollResponse)
def enroll_entities(
    request: Request,
    automation_id: uuid.UUID,
    dto: ManualEnrollRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ManualEnrollResponse | JSONResponse:
    try:
        require_any_permission(user, ["automations.execute", "automations.manage"])
        return automation_service.enroll_entities(db, user, automation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_enroll_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{automation_id}/test", response_model=AutomationTestResponse)
def test_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationTestRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationTestResponse | JSONResponse:
    try:
        require_any_permission(user, ["automations.execute", "automations.manage"])
        return automation_service.test_automation(db, user, automation_id, dto or AutomationTestRequest())
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_test_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
