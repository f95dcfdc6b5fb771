from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Any, Literal

from projectfeed.finance.reconciler import parse_payments, parse_quotes, summarize
from projectfeed.finance.schemas import FinancialSummary, Payment, ProjectStage, Quote, StageTransition
from projectfeed.timeline.dedup import deduplicate
from projectfeed.timeline.normalizer import Clock, normalize_records
from projectfeed.timeline.schemas import RECORD_KINDS, ActivityEvent, RecordKind


RawRecord = Mapping[str, Any]
OverlayState = Literal["pending", "unconfirmed"]


@dataclass(frozen=True, slots=True)
class Overlay:
    """An optimistic change layered over the last fetched records.

    ``record`` replaces the record with the same id, or is appended when no such
    record exists; ``None`` hides it.
    """

    kind: RecordKind
    entity_id: str
    record: RawRecord | None
    transition: StageTransition | None = None
    state: OverlayState = "pending"
    since: int = 0


@dataclass(frozen=True, slots=True)
class ProjectSnapshot:
    project_id: str
    version: int
    project: RawRecord | None
    records: Mapping[RecordKind, tuple[RawRecord, ...]]
    quotes: tuple[Quote, ...]
    payments: tuple[Payment, ...]
    events: tuple[ActivityEvent, ...]
    summary: FinancialSummary
    stage: ProjectStage
    pre_deposit_stage: ProjectStage | None
    pending: frozenset[str]
    unconfirmed: frozenset[str]
    dropped: int
    built_at: datetime
    fetched: frozenset[str] = frozenset()

    def record(self, kind: RecordKind, record_id: str) -> RawRecord | None:
        for raw in self.records.get(kind, ()):
            if str(raw.get("id")) == record_id:
                return raw
        return None

    @property
    def opportunity_count(self) -> int | None:
        if "opportunities" not in self.fetched:
            return None
        return len(self.records.get("opportunities", ()))


def _apply_record(records: list[RawRecord], overlay: Overlay) -> list[RawRecord]:
    for index, raw in enumerate(records):
        if str(raw.get("id")) == overlay.entity_id:
            if overlay.record is None:
                return records[:index] + records[index + 1 :]
            return records[:index] + [overlay.record] + records[index + 1 :]
    if overlay.record is None:
        return records
    return records + [overlay.record]


def _apply_stage(
    stage: ProjectStage,
    pre_deposit_stage: ProjectStage | None,
    transition: StageTransition | None,
) -> tuple[ProjectStage, ProjectStage | None]:
    if transition is None or stage != transition.previous:
        return stage, pre_deposit_stage
    if transition.reason == "deposit_received":
        return transition.new, transition.previous
    if transition.reason == "deposit_deleted":
        return transition.new, None
    return transition.new, pre_deposit_stage


def build_snapshot(
    project_id: str,
    version: int,
    project: RawRecord | None,
    base_records: Mapping[RecordKind, Iterable[RawRecord]],
    overlays: Iterable[Overlay],
    now: Clock,
    fetched: Iterable[str] = (),
) -> ProjectSnapshot:
    """Run one full reconciliation over the fetched records plus optimistic overlays."""
    stage: ProjectStage = (project or {}).get("stage") or "qualified"
    pre_deposit_stage: ProjectStage | None = (project or {}).get("pre_deposit_stage")
    merged: dict[RecordKind, list[RawRecord]] = {kind: list(base_records.get(kind, ())) for kind in RECORD_KINDS}

    pending: set[str] = set()
    unconfirmed: set[str] = set()
    for overlay in overlays:
        merged[overlay.kind] = _apply_record(merged[overlay.kind], overlay)
        stage, pre_deposit_stage = _apply_stage(stage, pre_deposit_stage, overlay.transition)
        (pending if overlay.state == "pending" else unconfirmed).add(overlay.entity_id)

    events, dropped = normalize_records(merged, project=project, now=now)
    quotes = parse_quotes(merged["quotes"], now)
    payments = parse_payments(merged["payments"], now)

    return ProjectSnapshot(
        project_id=project_id,
        version=version,
        project=MappingProxyType(dict(project)) if project is not None else None,
        records=MappingProxyType({kind: tuple(rows) for kind, rows in merged.items()}),
        quotes=tuple(quotes),
        payments=tuple(payments),
        events=tuple(deduplicate(events)),
        summary=summarize(quotes, payments),
        stage=stage,
        pre_deposit_stage=pre_deposit_stage,
        pending=frozenset(pending),
        unconfirmed=frozenset(unconfirmed),
        dropped=dropped,
        built_at=now(),
        fetched=frozenset(fetched),
    )
