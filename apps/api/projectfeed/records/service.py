from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from projectfeed.core.errors import NotFoundError, ValidationError
from projectfeed.finance.reconciler import (
    change_quote_amount,
    deposit_reversion,
    deposit_transition,
    payment_from_record,
    quote_from_record,
    quote_stage_transition,
    set_invoice_paid,
    transition_quote,
)
from projectfeed.finance.schemas import StageTransition
from projectfeed.metrics import observe_stage_transition
from projectfeed.otel import get_tracer, traced
from projectfeed.records.models import (
    Appointment,
    Document,
    Note,
    Opportunity,
    Payment,
    Project,
    Quote,
    StatusEntry,
    Task,
)
from projectfeed.records.schemas import (
    AppointmentCreate,
    AppointmentRead,
    DocumentCreate,
    DocumentRead,
    NoteCreate,
    NoteRead,
    OpportunityCreate,
    OpportunityRead,
    PaymentCreate,
    PaymentPatch,
    PaymentRead,
    ProjectCreate,
    ProjectRead,
    QuoteCreate,
    QuotePatch,
    QuoteRead,
    RecordWriteResult,
    StatusEntryCreate,
    StatusEntryRead,
    TaskCreate,
    TaskRead,
)


logger = logging.getLogger("projectfeed.records")
tracer = get_tracer("projectfeed.records")

SYSTEM_AUTHOR = "System"


@dataclass(frozen=True, slots=True)
class KindSpec:
    model: type
    create_schema: type[BaseModel]
    read_schema: type[BaseModel]


KIND_SPECS: dict[str, KindSpec] = {
    "history": KindSpec(StatusEntry, StatusEntryCreate, StatusEntryRead),
    "opportunities": KindSpec(Opportunity, OpportunityCreate, OpportunityRead),
    "tasks": KindSpec(Task, TaskCreate, TaskRead),
    "appointments": KindSpec(Appointment, AppointmentCreate, AppointmentRead),
    "documents": KindSpec(Document, DocumentCreate, DocumentRead),
    "notes": KindSpec(Note, NoteCreate, NoteRead),
    "quotes": KindSpec(Quote, QuoteCreate, QuoteRead),
    "payments": KindSpec(Payment, PaymentCreate, PaymentRead),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid(kind: str, value: str | uuid.UUID) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(kind, str(value))


def _validate(schema: type[BaseModel], fields: Mapping[str, Any]) -> BaseModel:
    try:
        return schema.model_validate(dict(fields))
    except PydanticValidationError as exc:
        messages = "; ".join(f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors())
        raise ValidationError(messages or "invalid payload")


def _quote_label(row: Quote) -> str:
    return row.title or row.file_name or str(row.id)[:8]


@dataclass(slots=True)
class ProjectRecordService:
    """CRUD and list-by-parent over project records, applying the server-side stage rules."""

    def _serialize(self, kind: str, row: Any) -> dict[str, Any]:
        return KIND_SPECS[kind].read_schema.model_validate(row).model_dump(mode="json")

    def _project(self, session: Session, project_id: str | uuid.UUID) -> Project:
        project = session.get(Project, _uuid("project", project_id))
        if project is None:
            raise NotFoundError("project", str(project_id))
        return project

    def _row(self, session: Session, project: Project, kind: str, record_id: str | uuid.UUID) -> Any:
        model = KIND_SPECS[kind].model
        row = session.scalar(
            select(model).where(model.id == _uuid(kind, record_id), model.project_id == project.id)
        )
        if row is None:
            raise NotFoundError(kind, str(record_id))
        return row

    def _spec(self, kind: str) -> KindSpec:
        spec = KIND_SPECS.get(kind)
        if spec is None:
            raise ValidationError(f"unknown record kind: {kind}")
        return spec

    def _log_entry(
        self,
        session: Session,
        project: Project,
        entry_type: str,
        description: str,
        author: str | None = None,
        details: dict[str, Any] | None = None,
        transition: StageTransition | None = None,
    ) -> StatusEntry:
        entry = StatusEntry(
            project_id=project.id,
            entry_type=entry_type,
            description=description,
            author=author or SYSTEM_AUTHOR,
            previous_stage=transition.previous if transition else None,
            new_stage=transition.new if transition else None,
            details=details or {},
            created_at=utcnow(),
        )
        session.add(entry)
        return entry

    def _apply_stage(self, session: Session, project: Project, transition: StageTransition | None) -> None:
        if transition is None:
            return
        project.stage = transition.new
        if transition.reason == "deposit_received":
            project.pre_deposit_stage = transition.previous
        elif transition.reason == "deposit_deleted":
            project.pre_deposit_stage = None
        self._log_entry(
            session,
            project,
            "status_changed",
            f"Stage changed automatically to {transition.new}",
            transition=transition,
        )
        observe_stage_transition(transition.reason)
        logger.info(
            "records.stage_changed",
            extra={
                "project_id": str(project.id),
                "previous_stage": transition.previous,
                "stage": transition.new,
                "reason": transition.reason,
            },
        )

    def _result(self, kind: str, row: Any | None, transition: StageTransition | None) -> RecordWriteResult:
        reverted = transition is not None and transition.reason == "deposit_deleted"
        return RecordWriteResult(
            record=self._serialize(kind, row) if row is not None else None,
            stage_progressed=transition is not None and not reverted,
            stage_reverted=reverted,
            new_stage=transition.new if transition else None,
        )

    def create_project(self, session: Session, payload: ProjectCreate) -> dict[str, Any]:
        project = Project(**payload.model_dump())
        session.add(project)
        session.commit()
        session.refresh(project)
        return ProjectRead.model_validate(project).model_dump(mode="json")

    def get_project(self, session: Session, project_id: str | uuid.UUID) -> dict[str, Any]:
        with traced(tracer, "records.get_project", project_id=str(project_id)):
            return ProjectRead.model_validate(self._project(session, project_id)).model_dump(mode="json")

    def list_records(self, session: Session, project_id: str | uuid.UUID, kind: str) -> list[dict[str, Any]]:
        spec = self._spec(kind)
        with traced(tracer, "records.list", project_id=str(project_id), kind=kind):
            project = self._project(session, project_id)
            rows = session.scalars(
                select(spec.model).where(spec.model.project_id == project.id).order_by(spec.model.created_at, spec.model.id)
            ).all()
            return [self._serialize(kind, row) for row in rows]

    def create_record(
        self,
        session: Session,
        project_id: str | uuid.UUID,
        kind: str,
        fields: Mapping[str, Any],
    ) -> RecordWriteResult:
        spec = self._spec(kind)
        payload = _validate(spec.create_schema, fields)
        with traced(tracer, "records.create", project_id=str(project_id), kind=kind):
            project = self._project(session, project_id)
            data = {key: value for key, value in payload.model_dump().items() if value is not None}
            row = spec.model(project_id=project.id, **data)
            transition: StageTransition | None = None

            if kind == "quotes" and row.status in {"accepted", "refused"}:
                row.validated_at = utcnow()
            session.add(row)
            session.flush()

            if kind == "payments":
                payment = payment_from_record(self._serialize(kind, row))
                transition = deposit_transition(project.stage, payment)
                label = "Deposit received" if payment.kind == "deposit" else "Payment received"
                reference = f" - Ref: {payment.reference}" if payment.reference else ""
                self._log_entry(
                    session,
                    project,
                    "payment",
                    f"{label}: {payment.amount} ({payment.method}){reference}",
                    author=row.created_by,
                    details={
                        "payment_id": str(row.id),
                        "amount": str(payment.amount),
                        "kind": payment.kind,
                        "action": "received",
                    },
                )
            elif kind == "documents":
                self._log_entry(
                    session,
                    project,
                    "document",
                    f"Document attached: {row.file_name}",
                    author=row.uploaded_by,
                    details={"document_id": str(row.id)},
                )

            self._apply_stage(session, project, transition)
            session.commit()
            session.refresh(row)
            logger.info(
                "records.created",
                extra={"project_id": str(project.id), "kind": kind, "record_id": str(row.id)},
            )
            return self._result(kind, row, transition)

    def patch_record(
        self,
        session: Session,
        project_id: str | uuid.UUID,
        kind: str,
        record_id: str | uuid.UUID,
        fields: Mapping[str, Any],
    ) -> RecordWriteResult:
        if kind not in {"quotes", "payments"}:
            raise ValidationError(f"records of kind {kind} cannot be patched")
        with traced(tracer, "records.patch", project_id=str(project_id), kind=kind, record_id=str(record_id)):
            project = self._project(session, project_id)
            row = self._row(session, project, kind, record_id)
            if kind == "quotes":
                transition = self._patch_quote(session, project, row, _validate(QuotePatch, fields))
            else:
                transition = self._patch_payment(session, project, row, _validate(PaymentPatch, fields))
            self._apply_stage(session, project, transition)
            session.commit()
            session.refresh(row)
            return self._result(kind, row, transition)

    def _patch_quote(self, session: Session, project: Project, row: Quote, patch: QuotePatch) -> StageTransition | None:
        rows = session.scalars(select(Quote).where(Quote.project_id == project.id).order_by(Quote.created_at)).all()
        before = [quote_from_record(self._serialize("quotes", item)) for item in rows]
        current = next(quote for quote in before if quote.id == str(row.id))
        changes: list[str] = []

        updated = current
        if patch.status is not None and patch.status != updated.status:
            updated = transition_quote(updated, patch.status, utcnow())
            changes.append(patch.status)
        if patch.amount is not None and patch.amount != updated.amount:
            updated = change_quote_amount(updated, patch.amount)
            changes.append(f"amount {updated.amount}")
        if patch.invoice_paid is not None and patch.invoice_paid != updated.invoice_paid:
            updated = set_invoice_paid(updated, patch.invoice_paid)
            changes.append("invoice paid" if updated.invoice_paid else "invoice unpaid")
        if patch.title is not None:
            row.title = patch.title

        row.status = updated.status
        row.amount = updated.amount
        row.invoice_paid = updated.invoice_paid
        row.validated_at = updated.validated_at
        if changes:
            self._log_entry(
                session,
                project,
                "quote",
                f"Quote {_quote_label(row)}: {', '.join(changes)}",
                details={"quote_id": str(row.id)},
            )

        after = [updated if quote.id == updated.id else quote for quote in before]
        return quote_stage_transition(project.stage, before, after, updated.id)

    def _patch_payment(self, session: Session, project: Project, row: Payment, patch: PaymentPatch) -> None:
        updates = patch.model_dump(exclude_none=True)
        for key, value in updates.items():
            setattr(row, key, value)
        if "amount" in updates:
            self._log_entry(
                session,
                project,
                "modification",
                f"Payment amount changed to {updates['amount']}",
                details={"payment_id": str(row.id), "amount": str(updates["amount"]), "action": "updated"},
            )
        return None

    def delete_record(
        self,
        session: Session,
        project_id: str | uuid.UUID,
        kind: str,
        record_id: str | uuid.UUID,
    ) -> RecordWriteResult:
        self._spec(kind)
        with traced(tracer, "records.delete", project_id=str(project_id), kind=kind, record_id=str(record_id)):
            project = self._project(session, project_id)
            row = self._row(session, project, kind, record_id)
            transition: StageTransition | None = None

            if kind == "payments":
                rows = session.scalars(select(Payment).where(Payment.project_id == project.id)).all()
                payments = [payment_from_record(self._serialize(kind, item)) for item in rows]
                deleted = next(payment for payment in payments if payment.id == str(row.id))
                remaining = [payment for payment in payments if payment.id != deleted.id]
                transition = deposit_reversion(project.stage, deleted, remaining, project.pre_deposit_stage)
                self._log_entry(
                    session,
                    project,
                    "modification",
                    f"Payment deleted: {deleted.amount} ({deleted.method})",
                    details={
                        "payment_id": deleted.id,
                        "amount": str(deleted.amount),
                        "kind": deleted.kind,
                        "action": "deleted",
                    },
                )
            elif kind == "quotes":
                self._log_entry(session, project, "quote", f"Quote {_quote_label(row)} deleted", details={"quote_id": str(row.id)})

            session.delete(row)
            self._apply_stage(session, project, transition)
            session.commit()
            logger.info(
                "records.deleted",
                extra={"project_id": str(project.id), "kind": kind, "record_id": str(record_id)},
            )
            return self._result(kind, None, transition)


project_record_service = ProjectRecordService()
