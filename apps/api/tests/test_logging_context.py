from __future__ import annotations

import json
import logging
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from projectfeed.context import reset_correlation_id, set_correlation_id
from projectfeed.core.config import get_settings
from projectfeed.core.database import Base, get_db
from projectfeed.engine.api import get_record_store
from projectfeed.logging import JsonLogFormatter, parse_logger_levels
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    created = client.post("/projects", json={"name": "Log Project"})
    project_id = created.json()["id"]
    response = client.get(f"/projects/{project_id}/timeline", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 200

    records = [
        record for record in caplog.records if record.name == "projectfeed.request" and record.getMessage() == "http.request"
    ]
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/projects/{project_id}/timeline"
        and getattr(record, "project_id", None) == project_id
        and getattr(record, "status_code", None) == 200
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_engine_and_store_logs_carry_request_correlation_id(
    client: TestClient,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    project_id = client.post("/projects", json={"name": "Log Project"}).json()["id"]

    response = client.post(
        f"/projects/{project_id}/payments/actions",
        json={"action": "add", "amount": "100", "kind": "deposit"},
        headers={"X-Correlation-Id": "corr-pay-1"},
    )
    assert response.status_code == 200

    confirmed = [record for record in caplog.records if record.getMessage() == "engine.mutation_confirmed"]
    assert confirmed
    assert getattr(confirmed[-1], "correlation_id", None) == "corr-pay-1"
    assert getattr(confirmed[-1], "stage", None) == "deposit_received"

    stage_changes = [record for record in caplog.records if record.getMessage() == "records.stage_changed"]
    assert stage_changes
    assert getattr(stage_changes[-1], "correlation_id", None) == "corr-pay-1"
    assert getattr(stage_changes[-1], "reason", None) == "deposit_received"


def test_json_formatter_keeps_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("projectfeed.test").makeRecord(
            "projectfeed.test",
            logging.WARNING,
            __file__,
            1,
            "timeline.record_dropped",
            (),
            None,
            extra={"source": "payments", "record_id": "p1", "secret": "nope", "error": "x" * 600},
        )
        record.correlation_id = "fmt-1"
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["msg"] == "timeline.record_dropped"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["source"] == "payments"
    assert payload["fields"]["record_id"] == "p1"
    assert "secret" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_json_formatter_renders_money_and_kind_sets() -> None:
    record = logging.makeLogRecord(
        {"name": "projectfeed.engine", "msg": "engine.pass_committed", "kinds": frozenset({"quotes", "notes"}), "count": Decimal("12.50")}
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["logger"] == "projectfeed.engine"
    assert payload["fields"]["kinds"] == ["notes", "quotes"]
    assert payload["fields"]["count"] == "12.50"


def test_logger_levels_are_parsed_per_subsystem() -> None:
    levels = parse_logger_levels("projectfeed.engine=debug, projectfeed.request=WARNING,broken,=INFO")

    assert levels == {"projectfeed.engine": logging.DEBUG, "projectfeed.request": logging.WARNING}
    assert parse_logger_levels(None) == {}
