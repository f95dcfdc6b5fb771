from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


SourceType = Literal["status", "opportunity", "task", "appointment", "document", "note", "payment"]
RecordKind = Literal["history", "opportunities", "tasks", "appointments", "documents", "notes", "quotes", "payments"]
EventOrigin = Literal[
    "history",
    "opportunities",
    "tasks",
    "appointments",
    "documents",
    "notes",
    "quotes",
    "payments",
    "inline_notes",
]
TimelineFilter = Literal["all", "status", "opportunities", "tasks", "appointments", "documents", "notes", "payments"]
PaymentAction = Literal["received", "updated", "deleted"]

RECORD_KINDS: tuple[RecordKind, ...] = (
    "history",
    "opportunities",
    "tasks",
    "appointments",
    "documents",
    "notes",
    "quotes",
    "payments",
)

FILTER_SOURCE_TYPES: dict[TimelineFilter, SourceType | None] = {
    "all": None,
    "status": "status",
    "opportunities": "opportunity",
    "tasks": "task",
    "appointments": "appointment",
    "documents": "document",
    "notes": "note",
    "payments": "payment",
}


class _Metadata(BaseModel):
    model_config = ConfigDict(frozen=True)


class StatusMetadata(_Metadata):
    source_type: Literal["status"] = "status"
    entry_type: str | None = None
    previous_stage: str | None = None
    new_stage: str | None = None


class OpportunityMetadata(_Metadata):
    source_type: Literal["opportunity"] = "opportunity"
    opportunity_id: str | None = None
    stage: str | None = None
    amount: Decimal | None = None


class TaskMetadata(_Metadata):
    source_type: Literal["task"] = "task"
    status: str | None = None
    due_date: datetime | None = None
    assignee: str | None = None


class AppointmentMetadata(_Metadata):
    source_type: Literal["appointment"] = "appointment"
    scheduled_at: datetime | None = None
    location: str | None = None


class DocumentMetadata(_Metadata):
    source_type: Literal["document"] = "document"
    file_name: str
    document_id: str | None = None
    file_path: str | None = None
    quote_id: str | None = None
    amount: Decimal | None = None


class NoteMetadata(_Metadata):
    source_type: Literal["note"] = "note"
    note_id: str | None = None
    inline: bool = False


class PaymentMetadata(_Metadata):
    source_type: Literal["payment"] = "payment"
    payment_id: str | None = None
    amount: Decimal = Decimal("0")
    kind: str | None = None
    method: str | None = None
    reference: str | None = None
    action: PaymentAction = "received"


EventMetadata = Annotated[
    Union[
        StatusMetadata,
        OpportunityMetadata,
        TaskMetadata,
        AppointmentMetadata,
        DocumentMetadata,
        NoteMetadata,
        PaymentMetadata,
    ],
    Field(discriminator="source_type"),
]


class ActivityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    source_type: SourceType
    source_id: str
    origin: EventOrigin
    occurred_at: datetime
    title: str
    description: str = ""
    author: str = ""
    groupable: bool = False
    metadata: EventMetadata
    sequence: int = 0

    @model_validator(mode="after")
    def _metadata_matches_source_type(self) -> "ActivityEvent":
        if self.metadata.source_type != self.source_type:
            raise ValueError(f"metadata for {self.metadata.source_type} attached to a {self.source_type} event")
        return self


class EventGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    occurred_at: datetime
    events: tuple[ActivityEvent, ...]


class TimelineDay(BaseModel):
    day: date
    label: str
    items: list[ActivityEvent | EventGroup]


class TimelinePage(BaseModel):
    filter: TimelineFilter
    days: list[TimelineDay]
    total: int
    shown: int
    has_more: bool
    counts: dict[str, int]
    available_filters: list[TimelineFilter]
