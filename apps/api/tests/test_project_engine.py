from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import pytest

from projectfeed.core.config import Settings
from projectfeed.core.errors import NetworkError
from projectfeed.core.events import EntityUpdate
from projectfeed.engine.project_engine import ProjectEngine
from projectfeed.records.schemas import RecordWriteResult
from projectfeed.records.store import FetchResult


NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)
PROJECT = {"id": "proj-1", "name": "Villa", "stage": "qualified", "pre_deposit_stage": None, "inline_notes": None}


def _now() -> datetime:
    return NOW


class GatedStore:
    """In-memory store whose fetches can be held open to reorder passes."""

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.project: dict[str, Any] = dict(PROJECT)
        self.records: dict[str, list[dict[str, Any]]] = records or {}
        self.gate: asyncio.Event | None = None
        self.failing: set[str] = set()
        self.fetches = 0

    async def fetch(self, kind: str, parent_id: str) -> FetchResult:
        self.fetches += 1
        data: Any = dict(self.project) if kind == "project" else copy.deepcopy(self.records.get(kind, []))
        failing = kind in self.failing
        gate = self.gate
        if gate is not None:
            await gate.wait()
        if failing:
            return FetchResult(success=False, error=NetworkError(f"{kind} unavailable"))
        return FetchResult(success=True, data=data)

    async def create(self, kind: str, parent_id: str, fields: Mapping[str, Any]) -> RecordWriteResult:
        raise NotImplementedError

    async def patch(self, kind: str, parent_id: str, record_id: str, fields: Mapping[str, Any]) -> RecordWriteResult:
        raise NotImplementedError

    async def delete(self, kind: str, parent_id: str, record_id: str) -> RecordWriteResult:
        raise NotImplementedError


def _payment(payment_id: str, amount: str) -> dict[str, Any]:
    return {"id": payment_id, "amount": amount, "kind": "regular", "method": "cash", "paid_at": "2026-10-16T10:00:00Z"}


def _engine(store: GatedStore) -> ProjectEngine:
    return ProjectEngine("proj-1", store, settings=Settings(notifications_enabled=False), clock=_now)


async def _spin(times: int = 5) -> None:
    for _ in range(times):
        await asyncio.sleep(0)


def test_initial_refresh_builds_feed_and_summary() -> None:
    store = GatedStore(
        {
            "payments": [_payment("p1", "300")],
            "quotes": [{"id": "q1", "amount": "1000", "status": "accepted", "invoice_paid": True}],
        }
    )
    engine = _engine(store)
    assert engine.snapshot.version == 0
    assert engine.snapshot.events == ()

    snapshot = asyncio.run(engine.refresh())

    assert snapshot is engine.snapshot
    assert snapshot.version == 1
    assert snapshot.stage == "qualified"
    assert [event.id for event in snapshot.events] == ["payments:p1"]
    assert snapshot.summary.progress_percent == 100
    assert snapshot.summary.total_payments_recorded == 300
    assert engine.get_financial_summary() == snapshot.summary

    page = engine.get_timeline()
    assert page.total == 1
    assert page.counts["payments"] == 1


def test_stale_pass_is_discarded_when_a_newer_pass_committed(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    store = GatedStore({"payments": [_payment("p1", "100")]})
    engine = _engine(store)

    async def scenario() -> tuple[Any, Any]:
        slow = asyncio.Event()
        store.gate = slow
        first = asyncio.create_task(engine.refresh(["payments"]))
        await _spin()

        store.gate = None
        store.records["payments"] = [_payment("p1", "150"), _payment("p2", "50")]
        second = await engine.refresh(["payments"])

        slow.set()
        stale = await first
        return second, stale

    second, stale = asyncio.run(scenario())

    assert stale is None
    assert engine.snapshot is second
    assert sorted(payment.amount for payment in engine.snapshot.payments) == [50, 150]
    assert any(
        record.getMessage() == "engine.pass_discarded" and getattr(record, "reason", None) == "stale"
        for record in caplog.records
    )


def test_background_passes_merge_by_id_and_replace_passes_do_not() -> None:
    store = GatedStore({"payments": [_payment("p1", "100")]})
    engine = _engine(store)

    async def scenario() -> None:
        await engine.refresh()
        store.records["payments"] = [_payment("p2", "40")]
        await engine.refresh(["payments"])
        assert sorted(payment.id for payment in engine.snapshot.payments) == ["p1", "p2"]

        await engine.refresh(["payments"], replace=True)
        assert [payment.id for payment in engine.snapshot.payments] == ["p2"]

    asyncio.run(scenario())


def test_failed_fetch_keeps_previous_records_unless_replacing() -> None:
    store = GatedStore({"payments": [_payment("p1", "100")]})
    engine = _engine(store)

    async def scenario() -> None:
        await engine.refresh()
        store.failing = {"payments"}
        store.records["payments"] = []
        await engine.refresh()
        assert [payment.id for payment in engine.snapshot.payments] == ["p1"]

        with pytest.raises(NetworkError):
            await engine.refresh(["payments"], replace=True)
        assert [payment.id for payment in engine.snapshot.payments] == ["p1"]

    asyncio.run(scenario())


def test_subscribers_receive_each_committed_snapshot() -> None:
    store = GatedStore({"payments": [_payment("p1", "100")]})
    engine = _engine(store)
    updates: list[EntityUpdate] = []
    unsubscribe = engine.subscribe(updates.append)

    asyncio.run(engine.refresh())
    unsubscribe()
    asyncio.run(engine.refresh())

    assert len(updates) == 1
    assert updates[0].entity_id == "proj-1"
    assert updates[0].reason == "refreshed"
    assert updates[0].snapshot.version == 1


def test_close_ignores_late_responses_and_cancels_timers() -> None:
    store = GatedStore({"payments": [_payment("p1", "100")]})
    engine = _engine(store)
    fired: list[str] = []

    async def scenario() -> Any:
        engine.schedule(0.01, lambda: fired.append("tick"))
        gate = asyncio.Event()
        store.gate = gate
        pending = asyncio.create_task(engine.refresh())
        await _spin()

        engine.close()
        gate.set()
        result = await pending
        await asyncio.sleep(0.05)
        return result

    result = asyncio.run(scenario())

    assert result is None
    assert engine.is_relevant is False
    assert engine.snapshot.version == 0
    assert fired == []


def test_timers_fire_while_engine_is_open() -> None:
    engine = _engine(GatedStore())
    fired: list[str] = []

    async def scenario() -> None:
        engine.schedule(0.01, lambda: fired.append("tick"))
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert fired == ["tick"]
