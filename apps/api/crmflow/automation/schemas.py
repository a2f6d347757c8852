from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, computed_field, model_validator

from crmflow.automation.actions import ActionType


TriggerType = Literal[
    "contact_created",
    "contact_updated",
    "deal_created",
    "deal_updated",
    "deal_stage_changed",
]
TRIGGER_TYPES: tuple[str, ...] = TriggerType.__args__  # type: ignore[attr-defined]
EntityType = Literal["contact", "deal"]
EnrollmentStatus = Literal["active", "completed", "failed"]
LogStatus = Literal["success", "failed", "skipped"]


def entity_type_for_trigger(trigger_type: str) -> EntityType:
    return "contact" if trigger_type.startswith("contact_") else "deal"


class TriggerSpec(BaseModel):
    type: TriggerType
    config: dict[str, Any] | None = None

    @model_validator(mode="after")
    def validate_stage_config(self) -> "TriggerSpec":
        if self.config and self.type != "deal_stage_changed":
            raise ValueError("trigger config is only supported for deal_stage_changed")
        if self.config:
            unknown = set(self.config) - {"fromStageId", "toStageId"}
            if unknown:
                raise ValueError(f"unsupported trigger config keys: {', '.join(sorted(unknown))}")
        return self


class ConditionSpec(BaseModel):
    field: str = Field(min_length=1)
    operator: str = Field(min_length=1)
    value: Any = None
    logic: Literal["AND", "OR"] | None = None


class ActionSpec(BaseModel):
    type: ActionType
    config: dict[str, Any] = Field(default_factory=dict)


class AutomationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    trigger: TriggerSpec
    conditions: list[ConditionSpec] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(min_length=1)
    is_active: bool = True


class AutomationUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    trigger: TriggerSpec | None = None
    conditions: list[ConditionSpec] | None = None
    actions: list[ActionSpec] | None = Field(default=None, min_length=1)
    is_active: bool | None = None


class AutomationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    trigger_type: str
    trigger_config: dict[str, Any] | None
    conditions: list[dict[str, Any]]
    actions: list[dict[str, Any]]
    is_active: bool
    execution_count: int
    enrolled_count: int
    completed_enrollments: int
    last_executed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @computed_field  # type: ignore[prop-decorator]
    @property
    def trigger(self) -> dict[str, Any]:
        return {"type": self.trigger_type, "config": self.trigger_config}


class AvailableField(BaseModel):
    name: str
    label: str
    type: str
    is_custom: bool
    options: list[str] | None = None


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    entity_type: str
    entity_id: str
    status: EnrollmentStatus
    enrolled_at: datetime
    completed_at: datetime | None
    error: str | None


class EnrollmentSummary(BaseModel):
    automation_id: UUID
    total: int
    counts: dict[str, int]
    recent: list[EnrollmentRead] = Field(default_factory=list)


class AutomationLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    automation_id: UUID
    enrollment_id: UUID | None
    trigger_type: str
    trigger_data: dict[str, Any] | None
    conditions_met: bool
    conditions_evaluated: list[dict[str, Any]]
    actions_executed: list[dict[str, Any]]
    status: LogStatus
    error: str | None
    executed_at: datetime


class AutomationLogPage(BaseModel):
    items: list[AutomationLogRead]
    total: int
    limit: int
    offset: int


class ManualEnrollRequest(BaseModel):
    entity_type: EntityType
    entity_ids: list[UUID] = Field(min_length=1, max_length=100)


class ManualEnrollResult(BaseModel):
    entity_id: UUID
    enrolled: bool
    enrollment_id: UUID | None = None
    status: str | None = None
    reason: str | None = None


class ManualEnrollResponse(BaseModel):
    results: list[ManualEnrollResult]


class AutomationTestRequest(BaseModel):
    test_data: dict[str, Any] | None = None


class AutomationTestResponse(BaseModel):
    trigger_type: str
    test_data: dict[str, Any]
    conditions_met: bool
    conditions_evaluated: list[dict[str, Any]] = Field(default_factory=list)
    planned_actions: list[dict[str, Any]] = Field(default_factory=list)


class AutomationEvent(BaseModel):
    """A domain event as the engine consumes it."""

    type: TriggerType
    user_id: str = Field(min_length=1)
    data: dict[str, Any]
    correlation_id: str | None = None

    @property
    def entity_type(self) -> EntityType:
        return entity_type_for_trigger(self.type)

    @property
    def entity(self) -> dict[str, Any]:
        snapshot = self.data.get(self.entity_type)
        return snapshot if isinstance(snapshot, dict) else {}

    @property
    def entity_id(self) -> str | None:
        raw = self.entity.get("id")
        return str(raw) if raw not in (None, "") else None

    @classmethod
    def from_envelope(cls, envelope: dict[str, Any]) -> "AutomationEvent | None":
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            return None
        try:
            return cls(
                type=envelope.get("event_type"),
                user_id=envelope.get("user_id"),
                data=payload,
                correlation_id=envelope.get("correlation_id"),
            )
        except ValidationError:
            return None
