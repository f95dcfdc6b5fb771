from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from projectfeed.finance.schemas import FinancialSummary, PaymentKind, ProjectStage, StageTransition
from projectfeed.timeline.schemas import TimelinePage


MutationStatus = Literal["confirmed", "unconfirmed", "rejected", "failed"]
MutationEntity = Literal["quote", "payment"]


class _Action(BaseModel):
    model_config = ConfigDict(frozen=True)


class AcceptQuote(_Action):
    action: Literal["accept"] = "accept"


class RefuseQuote(_Action):
    action: Literal["refuse"] = "refuse"


class PendQuote(_Action):
    action: Literal["pend"] = "pend"


class MarkQuotePaid(_Action):
    action: Literal["mark_paid"] = "mark_paid"
    paid: bool = True


class EditQuoteAmount(_Action):
    action: Literal["edit_amount"] = "edit_amount"
    amount: Decimal


QuoteAction = Annotated[
    Union[AcceptQuote, RefuseQuote, PendQuote, MarkQuotePaid, EditQuoteAmount],
    Field(discriminator="action"),
]


class AddPayment(_Action):
    action: Literal["add"] = "add"
    amount: Decimal
    kind: PaymentKind = "regular"
    method: str = "cash"
    paid_at: datetime | None = None
    reference: str | None = None
    notes: str | None = None
    created_by: str | None = None


class DeletePayment(_Action):
    action: Literal["delete"] = "delete"


class EditPaymentAmount(_Action):
    action: Literal["edit_amount"] = "edit_amount"
    amount: Decimal


PaymentAction = Annotated[
    Union[AddPayment, DeletePayment, EditPaymentAmount],
    Field(discriminator="action"),
]


class MutationOutcome(BaseModel):
    status: MutationStatus
    entity: MutationEntity
    entity_id: str
    action: str
    error_code: str | None = None
    message: str | None = None
    stage_progressed: bool = False
    stage_reverted: bool = False
    new_stage: ProjectStage | None = None
    transition: StageTransition | None = None
    summary: FinancialSummary | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"confirmed", "unconfirmed"}


class TimelineResponse(BaseModel):
    project_id: str
    stage: ProjectStage | str
    page: TimelinePage
    file_urls: dict[str, str] = Field(default_factory=dict)


class FinancialSummaryResponse(BaseModel):
    project_id: str
    stage: ProjectStage | str
    summary: FinancialSummary
