from __future__ import annotations

import asyncio
from collections.abc import Generator
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from projectfeed.core.database import Base
from projectfeed.core.errors import NotFoundError, ValidationError
from projectfeed.records.models import Project, StatusEntry
from projectfeed.records.schemas import ProjectCreate
from projectfeed.records.service import ProjectRecordService
from projectfeed.records.store import ServiceRecordStore


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


@pytest.fixture()
def db_session(session_factory: sessionmaker) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def service() -> ProjectRecordService:
    return ProjectRecordService()


def _project(service: ProjectRecordService, session: Session) -> str:
    return service.create_project(session, ProjectCreate(name="Villa Anfa", client_name="M. Idrissi"))["id"]


def _entries(session: Session) -> list[StatusEntry]:
    session.expire_all()
    return list(session.scalars(select(StatusEntry).order_by(StatusEntry.created_at)).all())


def test_deposit_progresses_stage_and_deleting_it_reverts(service: ProjectRecordService, db_session: Session) -> None:
    project_id = _project(service, db_session)

    created = service.create_record(db_session, project_id, "payments", {"amount": "500", "kind": "deposit"})
    assert created.stage_progressed is True
    assert created.new_stage == "deposit_received"

    project = service.get_project(db_session, project_id)
    assert project["stage"] == "deposit_received"
    assert project["pre_deposit_stage"] == "qualified"

    entries = {entry.entry_type: entry for entry in _entries(db_session)}
    assert set(entries) == {"payment", "status_changed"}
    assert entries["payment"].details["payment_id"] == created.record["id"]
    assert entries["payment"].details["action"] == "received"
    assert entries["status_changed"].author == "System"
    assert entries["status_changed"].new_stage == "deposit_received"

    deleted = service.delete_record(db_session, project_id, "payments", created.record["id"])
    assert deleted.stage_reverted is True
    assert deleted.new_stage == "qualified"
    assert service.get_project(db_session, project_id)["pre_deposit_stage"] is None
    assert service.list_records(db_session, project_id, "payments") == []


def test_quote_patch_applies_transition_rules(service: ProjectRecordService, db_session: Session) -> None:
    project_id = _project(service, db_session)
    quote = service.create_record(db_session, project_id, "quotes", {"amount": "10000", "title": "Kitchen"}).record

    accepted = service.patch_record(db_session, project_id, "quotes", quote["id"], {"status": "accepted"})
    assert accepted.record["status"] == "accepted"
    assert accepted.record["validated_at"] is not None
    assert accepted.new_stage == "accepted"

    paid = service.patch_record(db_session, project_id, "quotes", quote["id"], {"invoice_paid": True})
    assert paid.record["invoice_paid"] is True
    assert paid.new_stage == "invoice_settled"

    with pytest.raises(ValidationError):
        service.patch_record(db_session, project_id, "quotes", quote["id"], {"status": "accepted", "colour": "red"})
    with pytest.raises(ValidationError):
        service.patch_record(db_session, project_id, "notes", quote["id"], {"content": "x"})


def test_payment_amount_edit_is_logged_as_update(service: ProjectRecordService, db_session: Session) -> None:
    project_id = _project(service, db_session)
    payment = service.create_record(db_session, project_id, "payments", {"amount": "100"}).record

    result = service.patch_record(db_session, project_id, "payments", payment["id"], {"amount": "120"})

    assert Decimal(result.record["amount"]) == Decimal("120")
    assert result.new_stage is None
    entry = _entries(db_session)[-1]
    assert entry.entry_type == "modification"
    assert entry.details == {"payment_id": payment["id"], "amount": "120", "action": "updated"}


def test_document_upload_is_logged_and_bad_input_rejected(service: ProjectRecordService, db_session: Session) -> None:
    project_id = _project(service, db_session)
    service.create_record(db_session, project_id, "documents", {"file_name": "plan.pdf", "file_path": "p/plan.pdf"})

    assert [entry.description for entry in _entries(db_session)] == ["Document attached: plan.pdf"]

    with pytest.raises(ValidationError):
        service.create_record(db_session, project_id, "payments", {"amount": "-1"})
    with pytest.raises(NotFoundError):
        service.get_project(db_session, "not-a-uuid")
    with pytest.raises(NotFoundError):
        service.delete_record(db_session, project_id, "tasks", "00000000-0000-0000-0000-000000000000")


def test_store_runs_service_calls_off_the_event_loop(session_factory: sessionmaker, service: ProjectRecordService) -> None:
    with session_factory() as session:
        project_id = _project(service, session)
    store = ServiceRecordStore(session_factory, service=service)

    async def scenario() -> None:
        created = await store.create("notes", project_id, {"content": "Client prefers oak"})
        assert created.record is not None

        fetched = await store.fetch("notes", project_id)
        assert fetched.success is True
        assert [row["content"] for row in fetched.data] == ["Client prefers oak"]

        project = await store.fetch("project", project_id)
        assert project.success is True
        assert project.data["name"] == "Villa Anfa"

        missing = await store.fetch("notes", "00000000-0000-0000-0000-000000000000")
        assert missing.success is False
        assert isinstance(missing.error, NotFoundError)

        with pytest.raises(NotFoundError):
            await store.delete("notes", project_id, "00000000-0000-0000-0000-000000000000")

    asyncio.run(scenario())

    with session_factory() as session:
        assert session.scalar(select(Project.name)) == "Villa Anfa"
