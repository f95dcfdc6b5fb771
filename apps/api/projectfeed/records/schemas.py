from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from projectfeed.finance.schemas import PaymentKind, ProjectStage, QuoteStatus


StoreKind = Literal["project", "history", "opportunities", "tasks", "appointments", "documents", "notes", "quotes", "payments"]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _UtcModel(BaseModel):
    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return _as_utc(value)
        return value


class ProjectCreate(_UtcModel):
    name: str = Field(min_length=1)
    client_name: str | None = None
    stage: ProjectStage = "qualified"
    inline_notes: str | None = None


class StatusEntryCreate(_UtcModel):
    entry_type: str = Field(min_length=1, max_length=32)
    description: str = ""
    author: str = "System"
    previous_stage: str | None = None
    new_stage: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


class OpportunityCreate(_UtcModel):
    title: str = Field(min_length=1)
    stage: str | None = None
    amount: Decimal | None = Field(default=None, ge=Decimal("0"))
    created_by: str | None = None
    created_at: datetime | None = None


class TaskCreate(_UtcModel):
    title: str = Field(min_length=1)
    description: str | None = None
    status: str = "open"
    due_date: datetime | None = None
    assignee: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class AppointmentCreate(_UtcModel):
    title: str = Field(min_length=1)
    scheduled_at: datetime
    location: str | None = None
    notes: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class DocumentCreate(_UtcModel):
    file_name: str = Field(min_length=1)
    file_path: str = Field(min_length=1)
    uploaded_by: str | None = None
    created_at: datetime | None = None


class NoteCreate(_UtcModel):
    content: str = Field(min_length=1)
    author: str | None = None
    created_at: datetime | None = None


class QuoteCreate(_UtcModel):
    title: str | None = None
    amount: Decimal = Field(ge=Decimal("0"))
    status: QuoteStatus = "pending"
    file_name: str | None = None
    file_path: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None


class PaymentCreate(_UtcModel):
    amount: Decimal = Field(gt=Decimal("0"))
    kind: PaymentKind = "regular"
    method: str = "cash"
    paid_at: datetime | None = None
    reference: str | None = None
    notes: str | None = None
    created_by: str | None = None


class QuotePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: QuoteStatus | None = None
    invoice_paid: bool | None = None
    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    title: str | None = None


class PaymentPatch(_UtcModel):
    model_config = ConfigDict(extra="forbid")

    amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    method: str | None = None
    reference: str | None = None
    notes: str | None = None
    paid_at: datetime | None = None


class _Read(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class ProjectRead(_Read):
    id: UUID
    name: str
    client_name: str | None
    stage: ProjectStage | str
    pre_deposit_stage: ProjectStage | str | None
    inline_notes: str | None
    created_at: datetime
    updated_at: datetime


class StatusEntryRead(_Read):
    id: UUID
    project_id: UUID
    entry_type: str
    description: str
    author: str
    previous_stage: str | None
    new_stage: str | None
    details: dict[str, Any]
    created_at: datetime


class OpportunityRead(_Read):
    id: UUID
    project_id: UUID
    title: str
    stage: str | None
    amount: Decimal | None
    created_by: str | None
    created_at: datetime


class TaskRead(_Read):
    id: UUID
    project_id: UUID
    title: str
    description: str | None
    status: str
    due_date: datetime | None
    assignee: str | None
    created_by: str | None
    created_at: datetime


class AppointmentRead(_Read):
    id: UUID
    project_id: UUID
    title: str
    scheduled_at: datetime
    location: str | None
    notes: str | None
    created_by: str | None
    created_at: datetime


class DocumentRead(_Read):
    id: UUID
    project_id: UUID
    file_name: str
    file_path: str
    uploaded_by: str | None
    created_at: datetime


class NoteRead(_Read):
    id: UUID
    project_id: UUID
    content: str
    author: str | None
    created_at: datetime


class QuoteRead(_Read):
    id: UUID
    project_id: UUID
    title: str | None
    amount: Decimal
    status: QuoteStatus | str
    invoice_paid: bool
    file_name: str | None
    file_path: str | None
    created_by: str | None
    created_at: datetime
    validated_at: datetime | None


class PaymentRead(_Read):
    id: UUID
    project_id: UUID
    amount: Decimal
    kind: PaymentKind | str
    method: str
    paid_at: datetime
    reference: str | None
    notes: str | None
    created_by: str | None
    created_at: datetime


class RecordWriteResult(BaseModel):
    record: dict[str, Any] | None = None
    stage_progressed: bool = False
    stage_reverted: bool = False
    new_stage: ProjectStage | None = None
