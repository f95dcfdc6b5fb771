from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from projectfeed.core.errors import ConflictError, NetworkError, ProjectFeedError, ValidationError
from projectfeed.engine.schemas import (
    AcceptQuote,
    AddPayment,
    DeletePayment,
    EditPaymentAmount,
    EditQuoteAmount,
    MarkQuotePaid,
    MutationEntity,
    MutationOutcome,
    MutationStatus,
    PaymentAction,
    PendQuote,
    QuoteAction,
    RefuseQuote,
)
from projectfeed.engine.snapshot import Overlay
from projectfeed.finance.reconciler import (
    change_quote_amount,
    deposit_reversion,
    deposit_transition,
    find_payment,
    find_quote,
    quote_stage_transition,
    set_invoice_paid,
    transition_quote,
    validate_amount,
)
from projectfeed.finance.schemas import Payment
from projectfeed.metrics import observe_mutation
from projectfeed.notifications import MutationNotice, NotificationDispatcher
from projectfeed.otel import get_tracer, traced
from projectfeed.records.schemas import RecordWriteResult

if TYPE_CHECKING:
    from projectfeed.engine.project_engine import ProjectEngine


logger = logging.getLogger("projectfeed.engine.mutations")
tracer = get_tracer("projectfeed.engine.mutations")

_QUOTE_STATUS_ACTIONS = {AcceptQuote: "accepted", RefuseQuote: "refused", PendQuote: "pending"}


@dataclass(frozen=True, slots=True)
class MutationPlan:
    overlay: Overlay
    write: Callable[[], Awaitable[RecordWriteResult]]


class MutationCoordinator:
    """Runs quote and payment writes optimistically.

    The change is shown immediately as an overlay on the engine's working set,
    then written to the store. A failed write removes the overlay; a successful
    one is followed by a canonical re-fetch that replaces it. Only one mutation
    per entity id may be in flight.
    """

    def __init__(self, engine: ProjectEngine, notifier: NotificationDispatcher | None = None) -> None:
        self.engine = engine
        self.notifier = notifier
        self._in_flight: set[str] = set()

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    async def mutate_quote(self, quote_id: str, action: QuoteAction) -> MutationOutcome:
        return await self._run("quote", str(quote_id), action.action, lambda: self._plan_quote(str(quote_id), action))

    async def mutate_payment(self, payment_id: str | None, action: PaymentAction) -> MutationOutcome:
        if isinstance(action, AddPayment):
            entity_id = str(payment_id) if payment_id else f"pending-{uuid.uuid4().hex}"
        elif not payment_id:
            return self._finish(
                self._outcome("rejected", "payment", "", action.action, error=ValidationError("payment id is required"))
            )
        else:
            entity_id = str(payment_id)
        return await self._run("payment", entity_id, action.action, lambda: self._plan_payment(entity_id, action))

    def _plan_quote(self, quote_id: str, action: QuoteAction) -> MutationPlan:
        snapshot = self.engine.snapshot
        quote = find_quote(snapshot.quotes, quote_id)

        fields: dict[str, Any]
        if isinstance(action, MarkQuotePaid):
            updated = set_invoice_paid(quote, action.paid)
            fields = {"invoice_paid": action.paid}
        elif isinstance(action, EditQuoteAmount):
            updated = change_quote_amount(quote, action.amount)
            fields = {"amount": str(updated.amount)}
        else:
            status = _QUOTE_STATUS_ACTIONS[type(action)]
            updated = transition_quote(quote, status, self.engine.clock())
            fields = {"status": status}

        after = [updated if item.id == quote_id else item for item in snapshot.quotes]
        transition = quote_stage_transition(snapshot.stage, snapshot.quotes, after, quote_id)
        record = dict(snapshot.record("quotes", quote_id) or {"id": quote_id})
        record.update(
            status=updated.status,
            invoice_paid=updated.invoice_paid,
            amount=str(updated.amount),
            validated_at=updated.validated_at.isoformat() if updated.validated_at else None,
        )
        project_id = self.engine.project_id
        return MutationPlan(
            overlay=Overlay(kind="quotes", entity_id=quote_id, record=record, transition=transition),
            write=lambda: self.engine.store.patch("quotes", project_id, quote_id, fields),
        )

    def _plan_payment(self, payment_id: str, action: PaymentAction) -> MutationPlan:
        snapshot = self.engine.snapshot
        project_id = self.engine.project_id
        store = self.engine.store

        if isinstance(action, AddPayment):
            now = self.engine.clock()
            payment = Payment(
                id=payment_id,
                amount=validate_amount(action.amount),
                kind=action.kind,
                method=action.method,
                paid_at=action.paid_at or now,
                reference=action.reference,
                notes=action.notes,
            )
            fields = {
                key: value
                for key, value in {
                    "amount": str(payment.amount),
                    "kind": payment.kind,
                    "method": payment.method,
                    "paid_at": action.paid_at.isoformat() if action.paid_at else None,
                    "reference": payment.reference,
                    "notes": payment.notes,
                    "created_by": action.created_by,
                }.items()
                if value is not None
            }
            record = {
                "id": payment_id,
                "project_id": project_id,
                **fields,
                "paid_at": payment.paid_at.isoformat(),
                "created_at": now.isoformat(),
            }
            return MutationPlan(
                overlay=Overlay(
                    kind="payments",
                    entity_id=payment_id,
                    record=record,
                    transition=deposit_transition(snapshot.stage, payment),
                ),
                write=lambda: store.create("payments", project_id, fields),
            )

        payment = find_payment(snapshot.payments, payment_id)
        if isinstance(action, DeletePayment):
            remaining = [item for item in snapshot.payments if item.id != payment_id]
            return MutationPlan(
                overlay=Overlay(
                    kind="payments",
                    entity_id=payment_id,
                    record=None,
                    transition=deposit_reversion(snapshot.stage, payment, remaining, snapshot.pre_deposit_stage),
                ),
                write=lambda: store.delete("payments", project_id, payment_id),
            )

        if isinstance(action, EditPaymentAmount):
            amount = validate_amount(action.amount)
            record = dict(snapshot.record("payments", payment_id) or {"id": payment_id})
            record["amount"] = str(amount)
            return MutationPlan(
                overlay=Overlay(kind="payments", entity_id=payment_id, record=record),
                write=lambda: store.patch("payments", project_id, payment_id, {"amount": str(amount)}),
            )
        raise ValidationError(f"unsupported payment action: {action.action}")

    async def _run(
        self,
        entity: MutationEntity,
        entity_id: str,
        action: str,
        planner: Callable[[], MutationPlan],
    ) -> MutationOutcome:
        if entity_id in self._in_flight:
            conflict = ConflictError(f"a mutation for {entity} {entity_id} is already in flight")
            return self._finish(self._outcome("rejected", entity, entity_id, action, error=conflict))

        self._in_flight.add(entity_id)
        try:
            try:
                plan = planner()
            except ProjectFeedError as exc:
                return self._finish(self._outcome("rejected", entity, entity_id, action, error=exc))

            self.engine.apply_overlay(plan.overlay)
            try:
                with traced(tracer, "engine.mutation.write", project_id=self.engine.project_id, entity_id=entity_id, action=action):
                    result = await plan.write()
            except ProjectFeedError as exc:
                return self._finish(self._rollback(entity, entity_id, action, exc))
            except Exception as exc:
                logger.exception(
                    "engine.mutation_write_crashed",
                    extra={"project_id": self.engine.project_id, "entity_id": entity_id, "action": action},
                )
                return self._finish(self._rollback(entity, entity_id, action, NetworkError(str(exc) or type(exc).__name__)))

            if not self.engine.is_relevant:
                return self._finish(
                    self._outcome(
                        "unconfirmed",
                        entity,
                        entity_id,
                        action,
                        result=result,
                        plan=plan,
                        message="view closed before the change could be confirmed",
                    )
                )

            try:
                await self.engine.refresh(replace=True, settle=[entity_id])
            except Exception as exc:
                self.engine.mark_unconfirmed(entity_id)
                error = exc if isinstance(exc, ProjectFeedError) else NetworkError(str(exc) or type(exc).__name__)
                outcome = self._outcome("unconfirmed", entity, entity_id, action, result=result, plan=plan, error=error)
                self._notify(outcome)
                return self._finish(outcome)

            outcome = self._outcome("confirmed", entity, entity_id, action, result=result, plan=plan)
            self._notify(outcome)
            return self._finish(outcome)
        finally:
            self._in_flight.discard(entity_id)

    def _rollback(self, entity: MutationEntity, entity_id: str, action: str, error: ProjectFeedError) -> MutationOutcome:
        if self.engine.is_relevant:
            self.engine.discard_overlay(entity_id)
        return self._outcome("failed", entity, entity_id, action, error=error)

    def _outcome(
        self,
        status: MutationStatus,
        entity: MutationEntity,
        entity_id: str,
        action: str,
        *,
        error: ProjectFeedError | None = None,
        result: RecordWriteResult | None = None,
        plan: MutationPlan | None = None,
        message: str | None = None,
    ) -> MutationOutcome:
        return MutationOutcome(
            status=status,
            entity=entity,
            entity_id=entity_id,
            action=action,
            error_code=error.code if error else None,
            message=message or (error.message if error else None),
            stage_progressed=bool(result and result.stage_progressed),
            stage_reverted=bool(result and result.stage_reverted),
            new_stage=result.new_stage if result else None,
            transition=plan.overlay.transition if plan else None,
            summary=self.engine.snapshot.summary,
        )

    def _finish(self, outcome: MutationOutcome) -> MutationOutcome:
        observe_mutation(outcome.entity, outcome.action, outcome.status)
        fields = {
            "project_id": self.engine.project_id,
            "entity_id": outcome.entity_id,
            "action": outcome.action,
            "status": outcome.status,
        }
        if outcome.status == "confirmed":
            logger.info("engine.mutation_confirmed", extra={**fields, "stage": outcome.new_stage})
        elif outcome.status == "failed":
            logger.warning("engine.mutation_rolled_back", extra={**fields, "error": outcome.message})
        else:
            logger.warning(f"engine.mutation_{outcome.status}", extra={**fields, "error": outcome.message})
        return outcome

    def _notify(self, outcome: MutationOutcome) -> None:
        if self.notifier is None:
            return
        notice = MutationNotice(
            project_id=self.engine.project_id,
            entity=outcome.entity,
            entity_id=outcome.entity_id,
            action=outcome.action,
            status=outcome.status,
            new_stage=outcome.new_stage,
        )
        asyncio.get_running_loop().call_soon(self._dispatch, notice)

    def _dispatch(self, notice: MutationNotice) -> None:
        if self.notifier is None or not self.engine.is_relevant:
            return
        try:
            self.notifier.dispatch(notice)
        except Exception as exc:
            logger.exception(
                "notification.failed",
                extra={"project_id": notice.project_id, "entity_id": notice.entity_id, "error": str(exc)[:500]},
            )
