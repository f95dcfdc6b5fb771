from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from projectfeed.core.errors import NotFoundError, ValidationError
from projectfeed.finance.schemas import (
    FinancialSummary,
    Payment,
    ProjectStage,
    Quote,
    QuoteStatus,
    StageTransition,
)
from projectfeed.timeline.normalizer import Clock, parse_amount, parse_optional_timestamp, parse_timestamp, utcnow


logger = logging.getLogger("projectfeed.finance")

VALID_QUOTE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"accepted", "refused"},
    "accepted": {"pending", "refused"},
    "refused": {"pending", "accepted"},
}

VALIDATED_STATUSES = {"accepted", "refused"}
EARLY_STAGES: set[str] = {"qualified", "deposit_received", "design", "quote_negotiation", "refused"}
SETTLED_STAGES: set[str] = {"invoice_settled", "delivered"}
PRE_DEPOSIT_DEFAULT: ProjectStage = "qualified"

_CENT = Decimal("0.01")
_ZERO = Decimal("0")


def _q(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENT, rounding=ROUND_HALF_UP)


def progress_percent(total_paid: Decimal, total_accepted: Decimal) -> int:
    if total_accepted <= 0:
        return 0
    ratio = (Decimal(100) * total_paid / total_accepted).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(ratio)))


def summarize(quotes: Iterable[Quote], payments: Iterable[Payment]) -> FinancialSummary:
    accepted = [quote for quote in quotes if quote.status == "accepted"]
    paid = [quote for quote in accepted if quote.invoice_paid]
    recorded = list(payments)

    total_accepted = _q(sum((quote.amount for quote in accepted), _ZERO))
    total_paid = _q(sum((quote.amount for quote in paid), _ZERO))
    total_recorded = _q(sum((payment.amount for payment in recorded), _ZERO))

    return FinancialSummary(
        total_accepted=total_accepted,
        total_paid_quotes=total_paid,
        total_payments_recorded=total_recorded,
        progress_percent=progress_percent(total_paid, total_accepted),
        remaining_amount=_q(total_accepted - total_paid),
        accepted_count=len(accepted),
        paid_count=len(paid),
        payments_count=len(recorded),
        has_accepted_quotes=bool(accepted),
        is_fully_paid=total_accepted > 0 and total_paid == total_accepted,
    )


def quote_from_record(raw: Mapping[str, Any], now: Clock = utcnow) -> Quote:
    amount = parse_amount(raw.get("amount"))
    if amount is None or amount < 0:
        raise ValidationError(f"quote {raw.get('id')} has a missing or unreadable amount")
    status = raw.get("status") or "pending"
    if status not in VALID_QUOTE_TRANSITIONS:
        raise ValidationError(f"quote {raw.get('id')} has unknown status {status!r}")
    return Quote(
        id=str(raw["id"]),
        amount=amount,
        status=status,
        invoice_paid=bool(raw.get("invoice_paid")) and status == "accepted",
        title=raw.get("title"),
        file_name=raw.get("file_name"),
        file_path=raw.get("file_path"),
        created_at=parse_timestamp(raw.get("created_at"), now),
        validated_at=parse_optional_timestamp(raw.get("validated_at")),
    )


def payment_from_record(raw: Mapping[str, Any], now: Clock = utcnow) -> Payment:
    amount = parse_amount(raw.get("amount"))
    if amount is None or amount <= 0:
        raise ValidationError(f"payment {raw.get('id')} has a missing or non-positive amount")
    kind = raw.get("kind") or "regular"
    if kind not in {"deposit", "regular"}:
        raise ValidationError(f"payment {raw.get('id')} has unknown kind {kind!r}")
    return Payment(
        id=str(raw["id"]),
        amount=amount,
        kind=kind,
        method=raw.get("method") or "cash",
        paid_at=parse_timestamp(raw.get("paid_at") or raw.get("created_at"), now),
        reference=raw.get("reference"),
        notes=raw.get("notes"),
    )


def _parse_all(source: str, records: Iterable[Mapping[str, Any]], parse, now: Clock) -> list:  # type: ignore[no-untyped-def]
    parsed = []
    for raw in records:
        try:
            parsed.append(parse(raw, now))
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            logger.warning(
                "finance.record_dropped",
                extra={"source": source, "record_id": raw.get("id"), "error": str(exc)},
            )
    return parsed


def parse_quotes(records: Iterable[Mapping[str, Any]], now: Clock = utcnow) -> list[Quote]:
    return _parse_all("quotes", records, quote_from_record, now)


def parse_payments(records: Iterable[Mapping[str, Any]], now: Clock = utcnow) -> list[Payment]:
    return _parse_all("payments", records, payment_from_record, now)


def transition_quote(quote: Quote, status: QuoteStatus, now: datetime) -> Quote:
    """Move a quote to ``status``.

    Entering accepted or refused stamps ``validated_at``; leaving accepted
    clears the paid flag.
    """
    if status == quote.status:
        raise ValidationError(f"quote {quote.id} is already {status}")
    if status not in VALID_QUOTE_TRANSITIONS[quote.status]:
        raise ValidationError(f"quote {quote.id} cannot move from {quote.status} to {status}")

    updates: dict[str, Any] = {
        "status": status,
        "validated_at": now if status in VALIDATED_STATUSES else None,
    }
    if status != "accepted":
        updates["invoice_paid"] = False
    return quote.model_copy(update=updates)


def set_invoice_paid(quote: Quote, paid: bool) -> Quote:
    if paid and quote.status != "accepted":
        raise ValidationError(f"quote {quote.id} must be accepted before it can be marked paid")
    if quote.invoice_paid == paid:
        raise ValidationError(f"quote {quote.id} is already {'paid' if paid else 'unpaid'}")
    return quote.model_copy(update={"invoice_paid": paid})


def validate_amount(amount: Decimal | None) -> Decimal:
    if amount is None or not Decimal(amount).is_finite() or amount <= 0:
        raise ValidationError("amount must be a positive number")
    return _q(amount)


def change_quote_amount(quote: Quote, amount: Decimal) -> Quote:
    return quote.model_copy(update={"amount": validate_amount(amount)})


def find_quote(quotes: Sequence[Quote], quote_id: str) -> Quote:
    for quote in quotes:
        if quote.id == quote_id:
            return quote
    raise NotFoundError("quote", quote_id)


def find_payment(payments: Sequence[Payment], payment_id: str) -> Payment:
    for payment in payments:
        if payment.id == payment_id:
            return payment
    raise NotFoundError("payment", payment_id)


def quote_stage_transition(
    stage: ProjectStage,
    before: Sequence[Quote],
    after: Sequence[Quote],
    quote_id: str,
) -> StageTransition | None:
    previous = find_quote(before, quote_id)
    current = find_quote(after, quote_id)

    if current.invoice_paid and not previous.invoice_paid and stage not in SETTLED_STAGES:
        accepted = [quote for quote in after if quote.status == "accepted"]
        if accepted and all(quote.invoice_paid for quote in accepted):
            return StageTransition(previous=stage, new="invoice_settled", reason="invoice_settled")

    if current.status == "accepted" and previous.status != "accepted" and stage in EARLY_STAGES:
        return StageTransition(previous=stage, new="accepted", reason="quote_accepted")

    if (
        current.status == "refused"
        and previous.status != "refused"
        and stage != "refused"
        and stage not in SETTLED_STAGES
        and all(quote.status == "refused" for quote in after)
    ):
        return StageTransition(previous=stage, new="refused", reason="all_quotes_refused")
    return None


def deposit_transition(stage: ProjectStage, payment: Payment) -> StageTransition | None:
    if payment.kind == "deposit" and stage == "qualified":
        return StageTransition(previous=stage, new="deposit_received", reason="deposit_received")
    return None


def deposit_reversion(
    stage: ProjectStage,
    deleted: Payment,
    remaining: Sequence[Payment],
    pre_deposit_stage: ProjectStage | None,
) -> StageTransition | None:
    """Undo the deposit stage when the initial deposit is deleted.

    Only the deposit stage itself is corrected; any later stage is left alone.
    """
    if deleted.kind != "deposit" or stage != "deposit_received":
        return None
    if any(payment.kind == "deposit" for payment in remaining if payment.id != deleted.id):
        return None
    target = pre_deposit_stage or PRE_DEPOSIT_DEFAULT
    if target == stage:
        return None
    return StageTransition(previous=stage, new=target, reason="deposit_deleted")
