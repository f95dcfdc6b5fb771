from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from projectfeed.core.config import get_settings
from projectfeed.core.database import Base, get_db
from projectfeed.engine.api import get_record_store
from projectfeed.main import app
from projectfeed.records.store import RecordStore, ServiceRecordStore


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def client(session_factory: sessionmaker) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    def override_get_record_store() -> RecordStore:
        return ServiceRecordStore(session_factory)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_record_store] = override_get_record_store
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_project(client: TestClient, **fields: str) -> str:
    response = client.post("/projects", json={"name": "Riad Fes", **fields})
    assert response.status_code == 201
    return response.json()["id"]


def _create(client: TestClient, project_id: str, kind: str, payload: dict) -> dict:
    response = client.post(f"/projects/{project_id}/records/{kind}", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_timeline_merges_sources_and_resolves_document_links(client: TestClient) -> None:
    project_id = _create_project(client)
    _create(client, project_id, "documents", {"file_name": "contract.pdf", "file_path": "projects/riad/contract.pdf"})
    _create(client, project_id, "quotes", {"amount": "10000", "file_name": "contract.pdf", "file_path": "q/contract.pdf"})
    _create(client, project_id, "tasks", {"title": "Measure the patio"})
    _create(client, project_id, "notes", {"content": "Client wants zellige", "author": "Salma"})

    response = client.get(f"/projects/{project_id}/timeline")
    assert response.status_code == 200
    body = response.json()

    assert body["stage"] == "qualified"
    page = body["page"]
    assert page["counts"]["documents"] == 1
    assert page["counts"]["tasks"] == 1
    assert page["counts"]["notes"] == 1
    assert page["total"] == 3
    assert page["days"][0]["label"] == "Today"

    document_ids = [
        item["id"] for day in page["days"] for item in day["items"] if item.get("source_type") == "document"
    ]
    assert len(document_ids) == 1
    assert body["file_urls"] == {document_ids[0]: "/files/projects/riad/contract.pdf"}

    filtered = client.get(f"/projects/{project_id}/timeline", params={"filter": "tasks"})
    assert filtered.json()["page"]["total"] == 1


def test_quote_actions_drive_summary_and_stage(client: TestClient) -> None:
    project_id = _create_project(client)
    quote_a = _create(client, project_id, "quotes", {"amount": "10000", "title": "Salon"})["record"]["id"]
    quote_b = _create(client, project_id, "quotes", {"amount": "5000", "title": "Terrasse"})["record"]["id"]

    accepted = client.post(f"/projects/{project_id}/quotes/{quote_a}/actions", json={"action": "accept"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "confirmed"
    assert accepted.json()["new_stage"] == "accepted"
    assert accepted.json()["stage_progressed"] is True

    refused = client.post(f"/projects/{project_id}/quotes/{quote_b}/actions", json={"action": "refuse"})
    assert refused.status_code == 200

    summary = client.get(f"/projects/{project_id}/financial-summary").json()
    assert summary["stage"] == "accepted"
    assert summary["summary"]["total_accepted"] == "10000.00"
    assert summary["summary"]["progress_percent"] == 0

    paid = client.post(f"/projects/{project_id}/quotes/{quote_a}/actions", json={"action": "mark_paid"})
    assert paid.status_code == 200
    assert paid.json()["new_stage"] == "invoice_settled"
    assert paid.json()["summary"]["progress_percent"] == 100
    assert paid.json()["summary"]["remaining_amount"] == "0.00"

    again = client.post(f"/projects/{project_id}/quotes/{quote_a}/actions", json={"action": "mark_paid"})
    assert again.status_code == 422
    assert again.json()["status"] == "rejected"

    missing = client.post(f"/projects/{project_id}/quotes/{uuid.uuid4()}/actions", json={"action": "accept"})
    assert missing.status_code == 404


def test_accepting_an_untitled_quote_keeps_its_log_entry_in_the_timeline(client: TestClient) -> None:
    project_id = _create_project(client)
    quote_id = _create(client, project_id, "quotes", {"amount": "8000", "file_name": "devis.pdf", "file_path": "q/devis.pdf"})[
        "record"
    ]["id"]

    accepted = client.post(f"/projects/{project_id}/quotes/{quote_id}/actions", json={"action": "accept"})
    assert accepted.status_code == 200

    page = client.get(f"/projects/{project_id}/timeline").json()["page"]
    items = [item for day in page["days"] for item in day["items"]]
    descriptions = [item.get("description") for item in items]
    assert "Quote devis.pdf: accepted" in descriptions
    assert [item["title"] for item in items if item.get("source_type") == "document"] == ["devis.pdf"]


def test_payment_actions_round_trip(client: TestClient) -> None:
    project_id = _create_project(client)

    added = client.post(
        f"/projects/{project_id}/payments/actions",
        json={"action": "add", "amount": "2500", "kind": "deposit", "method": "transfer"},
    )
    assert added.status_code == 200
    assert added.json()["stage_progressed"] is True
    assert added.json()["new_stage"] == "deposit_received"

    payments = client.get(f"/projects/{project_id}/records/payments").json()
    assert len(payments) == 1
    payment_id = payments[0]["id"]

    timeline = client.get(f"/projects/{project_id}/timeline", params={"filter": "payments"}).json()
    assert timeline["page"]["total"] == 1

    edited = client.post(f"/projects/{project_id}/payments/{payment_id}/actions", json={"action": "edit_amount", "amount": "3000"})
    assert edited.status_code == 200
    summary = client.get(f"/projects/{project_id}/financial-summary").json()["summary"]
    assert summary["total_payments_recorded"] == "3000.00"

    rejected = client.post(f"/projects/{project_id}/payments/actions", json={"action": "add", "amount": "0"})
    assert rejected.status_code == 422

    deleted = client.post(f"/projects/{project_id}/payments/{payment_id}/actions", json={"action": "delete"})
    assert deleted.status_code == 200
    assert deleted.json()["stage_reverted"] is True
    assert client.get(f"/projects/{project_id}").json()["stage"] == "qualified"


def test_unknown_project_and_kind_are_not_found(client: TestClient) -> None:
    assert client.get(f"/projects/{uuid.uuid4()}/timeline").status_code == 404
    assert client.get(f"/projects/{uuid.uuid4()}").status_code == 404

    project_id = _create_project(client)
    assert client.get(f"/projects/{project_id}/records/project").status_code == 404
    assert client.get(f"/projects/{project_id}/records/invoices").status_code == 422


def test_inline_notes_fill_in_when_note_store_is_empty(client: TestClient) -> None:
    project_id = _create_project(client, inline_notes="Prefers morning visits\nNeeds invoice in French")

    page = client.get(f"/projects/{project_id}/timeline", params={"filter": "notes"}).json()["page"]
    titles = [item["title"] for day in page["days"] for item in day["items"]]
    assert titles == ["Prefers morning visits", "Needs invoice in French"]
