from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from projectfeed.timeline.normalizer import (
    amount_from_text,
    document_name_from_text,
    normalize_history_entry,
    normalize_payment,
    normalize_quote,
    normalize_records,
    parse_amount,
    parse_optional_timestamp,
    split_inline_notes,
)
from projectfeed.timeline.schemas import DocumentMetadata, NoteMetadata, PaymentMetadata, StatusMetadata


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def _now() -> datetime:
    return NOW


def test_parse_amount_accepts_spaced_and_rejects_garbage() -> None:
    assert parse_amount("12 500") == Decimal("12500")
    assert parse_amount("12 500.50") == Decimal("12500.50")
    assert parse_amount(7) == Decimal("7")
    assert parse_amount("abc") is None
    assert parse_amount("") is None
    assert parse_amount(True) is None
    assert parse_amount("NaN") is None


def test_naive_timestamps_are_read_as_utc() -> None:
    parsed = parse_optional_timestamp("2026-10-17T08:30:00")
    assert parsed == datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc)
    assert parse_optional_timestamp("2026-10-17T08:30:00Z") == parsed
    assert parse_optional_timestamp("not a date") is None


def test_text_helpers() -> None:
    assert document_name_from_text("Document attached: contract.pdf") == "contract.pdf"
    assert document_name_from_text("Fichier ajouté : plan.dwg") == "plan.dwg"
    assert document_name_from_text("Status changed") is None
    assert amount_from_text("Acompte reçu 5 000 MAD") == Decimal("5000")
    assert amount_from_text("Paiement de 1,250.50 DH") == Decimal("1250.50")
    assert amount_from_text("no amount here") is None


def test_history_entry_becomes_document_event_when_text_names_a_file() -> None:
    event = normalize_history_entry(
        {"id": "h1", "entry_type": "document", "description": "Document attached: contract.pdf", "created_at": "2026-10-16T09:00:00Z"},
        _now,
    )
    assert event is not None
    assert event.source_type == "document"
    assert isinstance(event.metadata, DocumentMetadata)
    assert event.metadata.file_name == "contract.pdf"


def test_history_payment_entry_carries_payment_identity() -> None:
    event = normalize_history_entry(
        {
            "id": "h2",
            "entry_type": "payment",
            "description": "Deposit received: 500 (cash)",
            "details": {"payment_id": "p1", "amount": "500", "action": "received"},
        },
        _now,
    )
    assert event is not None
    assert event.source_type == "payment"
    assert isinstance(event.metadata, PaymentMetadata)
    assert event.metadata.payment_id == "p1"
    assert event.metadata.amount == Decimal("500")
    assert event.occurred_at == NOW


def test_history_appointment_entries_are_skipped_and_status_entries_groupable() -> None:
    assert normalize_history_entry({"id": "h3", "entry_type": "rdv", "description": "RDV planned"}, _now) is None

    event = normalize_history_entry(
        {"id": "h4", "entry_type": "status_changed", "new_stage": "accepted", "author": "System"},
        _now,
    )
    assert event is not None
    assert event.groupable is True
    assert event.title == "Status changed to accepted"
    assert isinstance(event.metadata, StatusMetadata)


def test_quote_without_file_is_not_an_event_and_bad_payment_raises() -> None:
    assert normalize_quote({"id": "q1", "amount": "100"}, _now) is None
    with pytest.raises(ValueError):
        normalize_quote({"id": "q2", "amount": "lots", "file_name": "q2.pdf"}, _now)
    with pytest.raises(ValueError):
        normalize_payment({"id": "p0", "amount": "0"}, _now)


def test_normalize_records_drops_malformed_and_keeps_the_rest(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)

    events, dropped = normalize_records(
        {
            "tasks": [{"id": "t1", "title": "Call client", "created_at": "2026-10-15T10:00:00Z"}, {"title": "no id"}],
            "payments": [
                {"id": "p1", "amount": "250", "kind": "deposit", "method": "cash", "paid_at": "2026-10-15T11:00:00Z"},
                {"id": "p2", "amount": "-3"},
            ],
        },
        now=_now,
    )

    assert dropped == 2
    assert [event.id for event in events] == ["tasks:t1", "payments:p1"]
    assert [event.sequence for event in events] == [0, 1]
    assert events[1].title == "Deposit received"

    drop_logs = [record for record in caplog.records if record.getMessage() == "timeline.record_dropped"]
    assert {getattr(record, "source", None) for record in drop_logs} == {"tasks", "payments"}


def test_inline_notes_used_only_when_note_store_is_empty() -> None:
    project = {"id": "proj", "inline_notes": "First line\n\n  Second line  ", "updated_at": "2026-10-10T08:00:00Z"}
    assert [row["id"] for row in split_inline_notes(project)] == ["proj-0", "proj-1"]

    events, _ = normalize_records({"notes": []}, project=project, now=_now)
    assert [event.title for event in events] == ["First line", "Second line"]
    assert all(isinstance(event.metadata, NoteMetadata) and event.metadata.inline for event in events)

    events, _ = normalize_records(
        {"notes": [{"id": "n1", "content": "From the   note store"}, {"id": "n2", "content": "Note added"}]},
        project=project,
        now=_now,
    )
    assert [event.title for event in events] == ["From the note store"]


def test_history_payment_without_a_readable_amount_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.WARNING)

    events, dropped = normalize_records(
        {
            "history": [
                {"id": "h1", "entry_type": "payment", "details": {"payment_id": "p9", "amount": "abc"}},
                {"id": "h2", "entry_type": "acompte", "description": "Acompte reçu"},
                {"id": "h3", "entry_type": "acompte", "description": "Acompte 1 500 MAD"},
            ]
        },
        now=_now,
    )

    assert dropped == 2
    assert [(event.id, event.metadata.amount) for event in events] == [("history:h3", Decimal("1500"))]
    drop_logs = [record for record in caplog.records if record.getMessage() == "timeline.record_dropped"]
    assert [getattr(record, "record_id", None) for record in drop_logs] == ["h1", "h2"]
