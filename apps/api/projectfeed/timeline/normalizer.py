from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from projectfeed.metrics import observe_record_dropped
from projectfeed.timeline.schemas import (
    ActivityEvent,
    AppointmentMetadata,
    DocumentMetadata,
    EventOrigin,
    NoteMetadata,
    OpportunityMetadata,
    PaymentMetadata,
    StatusMetadata,
    TaskMetadata,
)


logger = logging.getLogger("projectfeed.timeline")

Clock = Callable[[], datetime]
RawRecord = Mapping[str, Any]

NOTE_PLACEHOLDERS = {"note added", "note ajoutée", "note ajoutee"}
GROUPABLE_ENTRY_TYPES = {"status", "status_changed", "architect_assigned"}
PAYMENT_ENTRY_TYPES = {"payment", "acompte", "paiement"}
EXCLUDED_ENTRY_TYPES = {"rdv", "appointment"}

_DOCUMENT_ATTACHED_RE = re.compile(
    r"^\s*(?:document|fichier|file)\s+(?:attached|ajouté|ajoute|uploaded|téléchargé)\s*:\s*(?P<name>.+?)\s*$",
    re.IGNORECASE,
)
_AMOUNT_IN_TEXT_RE = re.compile(r"(\d+(?:[\s,.]\d+)*)\s*(?:MAD|DH|Dhs?)\b", re.IGNORECASE)

_ENTRY_TITLES = {
    "status": "Status changed",
    "status_changed": "Status changed",
    "architect_assigned": "Architect assigned",
    "quote": "Quote updated",
    "modification": "Record updated",
}

# Normalization order also fixes the insertion order used to break timestamp ties.
_SOURCE_ORDER: tuple[EventOrigin, ...] = (
    "history",
    "opportunities",
    "tasks",
    "appointments",
    "documents",
    "quotes",
    "payments",
    "notes",
    "inline_notes",
)


class MalformedRecord(ValueError):
    def __init__(self, source: str, record_id: str | None, reason: str) -> None:
        self.source = source
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"{source} record {record_id or '?'}: {reason}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_optional_timestamp(value: Any) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken to be UTC."""
    parsed: datetime | None = None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_timestamp(value: Any, now: Clock = utcnow) -> datetime:
    return parse_optional_timestamp(value) or now()


def parse_amount(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        text = str(value).strip().replace(" ", "").replace(" ", "")
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None
    if not amount.is_finite():
        return None
    return amount


def amount_from_text(text: str) -> Decimal | None:
    match = _AMOUNT_IN_TEXT_RE.search(text or "")
    if match is None:
        return None
    raw = re.sub(r"\s", "", match.group(1))
    if "," in raw and "." in raw:
        raw = raw.replace(",", "")
    elif "," in raw:
        head, _, tail = raw.rpartition(",")
        raw = f"{head}{tail}" if len(tail) == 3 else f"{head}.{tail}"
    return parse_amount(raw)


def document_name_from_text(text: str) -> str | None:
    match = _DOCUMENT_ATTACHED_RE.match(text or "")
    if match is None:
        return None
    return match.group("name")


def _record_id(source: str, raw: RawRecord) -> str:
    if not isinstance(raw, Mapping):
        raise MalformedRecord(source, None, "record is not a mapping")
    value = raw.get("id")
    if value is None or str(value).strip() == "":
        raise MalformedRecord(source, None, "missing id")
    return str(value)


def _text(raw: RawRecord, *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _event(origin: EventOrigin, source_id: str, **fields: Any) -> ActivityEvent:
    return ActivityEvent(id=f"{origin}:{source_id}", source_id=source_id, origin=origin, **fields)


def normalize_history_entry(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("history", raw)
    entry_type = _text(raw, "entry_type", "type").lower() or "status"
    if entry_type in EXCLUDED_ENTRY_TYPES:
        return None

    description = _text(raw, "description")
    author = _text(raw, "author", "created_by")
    occurred_at = parse_timestamp(raw.get("created_at"), now)
    details = raw.get("details") if isinstance(raw.get("details"), Mapping) else {}

    file_name = document_name_from_text(description)
    if file_name is not None:
        return _event(
            "history",
            source_id,
            source_type="document",
            occurred_at=occurred_at,
            title=file_name,
            description=description,
            author=author,
            metadata=DocumentMetadata(file_name=file_name, document_id=details.get("document_id")),
        )

    if details.get("payment_id") or entry_type in PAYMENT_ENTRY_TYPES:
        if "amount" in details:
            amount = parse_amount(details.get("amount"))
        else:
            amount = amount_from_text(description)
        if amount is None:
            raise MalformedRecord("history", source_id, "missing or unreadable payment amount")
        action = details.get("action") if details.get("action") in {"received", "updated", "deleted"} else "received"
        payment_id = details.get("payment_id")
        return _event(
            "history",
            source_id,
            source_type="payment",
            occurred_at=occurred_at,
            title=description or "Payment",
            description=description,
            author=author,
            metadata=PaymentMetadata(
                payment_id=str(payment_id) if payment_id else None,
                amount=amount,
                kind=details.get("kind"),
                action=action,
            ),
        )

    new_stage = raw.get("new_stage")
    title = _ENTRY_TITLES.get(entry_type, "Update")
    if new_stage and entry_type in {"status", "status_changed"}:
        title = f"Status changed to {new_stage}"
    return _event(
        "history",
        source_id,
        source_type="status",
        occurred_at=occurred_at,
        title=title,
        description=description,
        author=author,
        groupable=entry_type in GROUPABLE_ENTRY_TYPES,
        metadata=StatusMetadata(
            entry_type=entry_type,
            previous_stage=raw.get("previous_stage"),
            new_stage=new_stage,
        ),
    )


def normalize_opportunity(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("opportunities", raw)
    amount = None
    if raw.get("amount") not in (None, ""):
        amount = parse_amount(raw.get("amount"))
        if amount is None:
            raise MalformedRecord("opportunities", source_id, "unreadable amount")
    title = _text(raw, "title", "name") or "Opportunity"
    return _event(
        "opportunities",
        source_id,
        source_type="opportunity",
        occurred_at=parse_timestamp(raw.get("created_at"), now),
        title=title,
        description=_text(raw, "description"),
        author=_text(raw, "created_by", "author"),
        metadata=OpportunityMetadata(opportunity_id=source_id, stage=raw.get("stage"), amount=amount),
    )


def normalize_task(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("tasks", raw)
    return _event(
        "tasks",
        source_id,
        source_type="task",
        occurred_at=parse_timestamp(raw.get("created_at"), now),
        title=_text(raw, "title") or "Task",
        description=_text(raw, "description"),
        author=_text(raw, "created_by", "author"),
        metadata=TaskMetadata(
            status=raw.get("status"),
            due_date=parse_optional_timestamp(raw.get("due_date")),
            assignee=raw.get("assignee"),
        ),
    )


def normalize_appointment(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("appointments", raw)
    scheduled_at = parse_optional_timestamp(raw.get("scheduled_at"))
    occurred_at = parse_timestamp(raw.get("created_at") or raw.get("scheduled_at"), now)
    return _event(
        "appointments",
        source_id,
        source_type="appointment",
        occurred_at=occurred_at,
        title=_text(raw, "title") or "Appointment",
        description=_text(raw, "notes", "description"),
        author=_text(raw, "created_by", "author"),
        metadata=AppointmentMetadata(scheduled_at=scheduled_at, location=raw.get("location")),
    )


def normalize_document(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("documents", raw)
    file_path = _text(raw, "file_path")
    file_name = _text(raw, "file_name") or file_path.rsplit("/", 1)[-1]
    if not file_name:
        raise MalformedRecord("documents", source_id, "missing file name")
    return _event(
        "documents",
        source_id,
        source_type="document",
        occurred_at=parse_timestamp(raw.get("created_at"), now),
        title=file_name,
        author=_text(raw, "uploaded_by", "created_by"),
        metadata=DocumentMetadata(file_name=file_name, document_id=source_id, file_path=file_path or None),
    )


def normalize_quote(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    """Quotes only surface in the feed through their attached file."""
    source_id = _record_id("quotes", raw)
    amount = parse_amount(raw.get("amount"))
    if amount is None or amount < 0:
        raise MalformedRecord("quotes", source_id, "missing or unreadable amount")
    file_path = _text(raw, "file_path")
    file_name = _text(raw, "file_name") or file_path.rsplit("/", 1)[-1]
    if not file_name:
        return None
    return _event(
        "quotes",
        source_id,
        source_type="document",
        occurred_at=parse_timestamp(raw.get("created_at"), now),
        title=file_name,
        description=_text(raw, "title"),
        author=_text(raw, "created_by", "author"),
        metadata=DocumentMetadata(file_name=file_name, file_path=file_path or None, quote_id=source_id, amount=amount),
    )


def normalize_payment(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    source_id = _record_id("payments", raw)
    amount = parse_amount(raw.get("amount"))
    if amount is None or amount <= 0:
        raise MalformedRecord("payments", source_id, "missing or non-positive amount")
    kind = raw.get("kind") or "regular"
    method = _text(raw, "method")
    description = f"{amount} ({method})" if method else str(amount)
    reference = _text(raw, "reference")
    if reference:
        description = f"{description} - Ref: {reference}"
    return _event(
        "payments",
        source_id,
        source_type="payment",
        occurred_at=parse_timestamp(raw.get("paid_at") or raw.get("created_at"), now),
        title="Deposit received" if kind == "deposit" else "Payment received",
        description=description,
        author=_text(raw, "created_by", "author"),
        metadata=PaymentMetadata(
            payment_id=source_id,
            amount=amount,
            kind=kind,
            method=method or None,
            reference=reference or None,
        ),
    )


def _normalize_note(origin: EventOrigin, raw: RawRecord, now: Clock) -> ActivityEvent | None:
    source_id = _record_id(origin, raw)
    body = " ".join(_text(raw, "content", "body").split())
    if not body or body.lower() in NOTE_PLACEHOLDERS:
        return None
    return _event(
        origin,
        source_id,
        source_type="note",
        occurred_at=parse_timestamp(raw.get("created_at"), now),
        title=body,
        author=_text(raw, "author", "created_by"),
        metadata=NoteMetadata(note_id=source_id, inline=origin == "inline_notes"),
    )


def normalize_note(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    return _normalize_note("notes", raw, now)


def normalize_inline_note(raw: RawRecord, now: Clock = utcnow) -> ActivityEvent | None:
    return _normalize_note("inline_notes", raw, now)


def split_inline_notes(project: RawRecord | None) -> list[dict[str, Any]]:
    if not project:
        return []
    text = project.get("inline_notes")
    if not isinstance(text, str):
        return []
    project_id = project.get("id")
    stamp = project.get("updated_at") or project.get("created_at")
    return [
        {"id": f"{project_id}-{index}", "content": line, "created_at": stamp}
        for index, line in enumerate(line.strip() for line in text.splitlines())
        if line
    ]


_NORMALIZERS: dict[EventOrigin, Callable[[RawRecord, Clock], ActivityEvent | None]] = {
    "history": normalize_history_entry,
    "opportunities": normalize_opportunity,
    "tasks": normalize_task,
    "appointments": normalize_appointment,
    "documents": normalize_document,
    "quotes": normalize_quote,
    "payments": normalize_payment,
    "notes": normalize_note,
    "inline_notes": normalize_inline_note,
}


def normalize_records(
    records: Mapping[str, Sequence[RawRecord]],
    project: RawRecord | None = None,
    now: Clock = utcnow,
) -> tuple[list[ActivityEvent], int]:
    """Normalize every source list of one project into activity events.

    Returns the events in insertion order with their ``sequence`` set, and the
    number of malformed records that were dropped. Inline notes on the project
    are only used when the note store returned nothing.
    """
    sources: dict[EventOrigin, Iterable[RawRecord]] = {
        origin: records.get(origin, ()) for origin in _SOURCE_ORDER if origin != "inline_notes"
    }
    sources["inline_notes"] = () if records.get("notes") else split_inline_notes(project)

    events: list[ActivityEvent] = []
    dropped = 0
    for origin in _SOURCE_ORDER:
        normalizer = _NORMALIZERS[origin]
        for raw in sources[origin]:
            try:
                event = normalizer(raw, now)
            except (MalformedRecord, ValueError, TypeError) as exc:
                dropped += 1
                observe_record_dropped(origin)
                logger.warning(
                    "timeline.record_dropped",
                    extra={
                        "source": origin,
                        "record_id": raw.get("id") if isinstance(raw, Mapping) else None,
                        "error": str(exc),
                    },
                )
                continue
            if event is not None:
                events.append(event.model_copy(update={"sequence": len(events)}))
    return events, dropped
