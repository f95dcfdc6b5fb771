from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


QuoteStatus = Literal["pending", "accepted", "refused"]
PaymentKind = Literal["deposit", "regular"]
ProjectStage = Literal[
    "qualified",
    "needs_assessment",
    "deposit_received",
    "design",
    "quote_negotiation",
    "accepted",
    "refused",
    "first_deposit",
    "in_progress",
    "worksite",
    "invoice_settled",
    "delivered",
]
StageReason = Literal["invoice_settled", "quote_accepted", "all_quotes_refused", "deposit_received", "deposit_deleted"]


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    amount: Decimal = Field(ge=Decimal("0"))
    status: QuoteStatus = "pending"
    invoice_paid: bool = False
    title: str | None = None
    file_name: str | None = None
    file_path: str | None = None
    created_at: datetime
    validated_at: datetime | None = None

    @model_validator(mode="after")
    def _paid_only_when_accepted(self) -> "Quote":
        if self.invoice_paid and self.status != "accepted":
            raise ValueError("only an accepted quote can be marked paid")
        return self


class Payment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    amount: Decimal = Field(gt=Decimal("0"))
    kind: PaymentKind = "regular"
    method: str = "cash"
    paid_at: datetime
    reference: str | None = None
    notes: str | None = None


class FinancialSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_accepted: Decimal
    total_paid_quotes: Decimal
    total_payments_recorded: Decimal
    progress_percent: int
    remaining_amount: Decimal
    accepted_count: int = 0
    paid_count: int = 0
    payments_count: int = 0
    has_accepted_quotes: bool = False
    is_fully_paid: bool = False


class StageTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    previous: ProjectStage
    new: ProjectStage
    reason: StageReason
