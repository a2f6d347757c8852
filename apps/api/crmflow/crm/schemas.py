from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasGenerator, BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


EntityType = Literal["contact", "deal"]
CustomFieldDataType = Literal["text", "number", "bool", "date", "select"]


class CustomFieldDefinitionCreate(BaseModel):
    field_key: str = Field(min_length=1, max_length=128, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")
    label: str = Field(min_length=1)
    data_type: CustomFieldDataType
    allowed_values: list[str] | None = None
    is_active: bool = True


class CustomFieldDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    entity_type: str
    field_key: str
    label: str
    data_type: CustomFieldDataType
    allowed_values: list[str] | None
    is_active: bool
    created_at: datetime


class ContactCreate(BaseModel):
    first_name: str = Field(min_length=1)
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class ContactUpdate(BaseModel):
    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = None
    company: str | None = None
    position: str | None = None
    notes: str | None = None
    tags: list[str] | None = None
    custom_fields: dict[str, Any] | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    first_name: str
    last_name: str | None
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    notes: str | None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class StageCreate(BaseModel):
    name: str = Field(min_length=1)
    position: int = Field(default=0, ge=0)


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    position: int
    is_active: bool


class DealCreate(BaseModel):
    name: str = Field(min_length=1)
    value: Decimal = Field(default=Decimal("0"), ge=0)
    status: Literal["open", "won", "lost"] = "open"
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    notes: str | None = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)


class DealUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    value: Decimal | None = Field(default=None, ge=0)
    status: Literal["open", "won", "lost"] | None = None
    stage_id: UUID | None = None
    contact_id: UUID | None = None
    notes: str | None = None
    custom_fields: dict[str, Any] | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    value: Decimal
    status: str
    stage_id: UUID | None
    contact_id: UUID | None
    notes: str | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


_snapshot_config = ConfigDict(
    from_attributes=True,
    alias_generator=AliasGenerator(serialization_alias=to_camel),
)


class ContactSnapshot(BaseModel):
    """Contact as automation conditions see it, serialised with camelCase keys."""

    model_config = _snapshot_config

    id: UUID
    user_id: str
    first_name: str
    last_name: str | None
    email: str | None
    phone: str | None
    company: str | None
    position: str | None
    tags: list[str] = Field(default_factory=list)
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class StageSnapshot(BaseModel):
    model_config = _snapshot_config

    id: UUID
    name: str
    position: int


class DealSnapshot(BaseModel):
    model_config = _snapshot_config

    id: UUID
    user_id: str
    name: str
    value: float
    status: str
    stage_id: UUID | None
    contact_id: UUID | None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    contact: ContactSnapshot | None = None
    stage: StageSnapshot | None = None
    created_at: datetime
    updated_at: datetime
