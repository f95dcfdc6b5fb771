from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from projectfeed.core.config import Settings, get_settings
from projectfeed.core.errors import NetworkError
from projectfeed.core.events import EntityChannel, UpdateHandler
from projectfeed.engine.coordinator import MutationCoordinator
from projectfeed.engine.schemas import MutationOutcome, PaymentAction, QuoteAction
from projectfeed.engine.snapshot import Overlay, ProjectSnapshot, RawRecord, build_snapshot
from projectfeed.finance.schemas import FinancialSummary
from projectfeed.metrics import observe_reconcile_pass
from projectfeed.notifications import NotificationDispatcher
from projectfeed.otel import get_tracer, traced
from projectfeed.records.schemas import StoreKind
from projectfeed.records.store import FetchResult, RecordStore
from projectfeed.timeline.aggregator import build_timeline, resolve_timezone
from projectfeed.timeline.normalizer import Clock, utcnow
from projectfeed.timeline.schemas import RECORD_KINDS, RecordKind, TimelineFilter, TimelinePage


logger = logging.getLogger("projectfeed.engine")
tracer = get_tracer("projectfeed.engine")

FETCH_KINDS: tuple[StoreKind, ...] = ("project", *RECORD_KINDS)


class ProjectEngine:
    """Owns the working set of one project.

    Every change to the working set, fetched or optimistic, produces a new
    immutable :class:`ProjectSnapshot`; readers only ever see committed
    snapshots. Fetch passes are tagged with increasing sequence numbers and a
    pass that resolves after a newer pass has committed the same record kind is
    ignored for that kind.
    """

    def __init__(
        self,
        project_id: str,
        store: RecordStore,
        *,
        channel: EntityChannel | None = None,
        settings: Settings | None = None,
        clock: Clock = utcnow,
        notifier: NotificationDispatcher | None = None,
    ) -> None:
        self.project_id = str(project_id)
        self.store = store
        self.channel = channel or EntityChannel()
        self.settings = settings or get_settings()
        self.clock = clock

        self._project: dict[str, Any] | None = None
        self._base: dict[RecordKind, list[RawRecord]] = {kind: [] for kind in RECORD_KINDS}
        self._fetched: set[str] = set()
        self._overlays: dict[str, Overlay] = {}
        self._pass_sequence = 0
        self._committed_sequence: dict[str, int] = {}
        self._version = 0
        self._relevant = True
        self._timers: set[asyncio.TimerHandle] = set()
        self._snapshot = self._build()

        self.coordinator = MutationCoordinator(
            self,
            notifier=notifier if self.settings.notifications_enabled else None,
        )

    @property
    def snapshot(self) -> ProjectSnapshot:
        return self._snapshot

    @property
    def is_relevant(self) -> bool:
        return self._relevant

    @property
    def pass_sequence(self) -> int:
        return self._pass_sequence

    def _build(self) -> ProjectSnapshot:
        return build_snapshot(
            self.project_id,
            self._version,
            self._project,
            self._base,
            self._overlays.values(),
            self.clock,
            fetched=self._fetched,
        )

    def _commit(self, reason: str) -> ProjectSnapshot:
        self._version += 1
        self._snapshot = self._build()
        self.channel.publish(self.project_id, reason, self._snapshot)
        return self._snapshot

    def _merge(self, kind: StoreKind, data: Any, replace: bool) -> None:
        if kind == "project":
            self._project = dict(data) if isinstance(data, Mapping) else None
            return
        incoming = [row for row in (data or []) if isinstance(row, Mapping)]
        if replace:
            self._base[kind] = list(incoming)
            return
        merged = list(self._base[kind])
        positions = {str(row.get("id")): index for index, row in enumerate(merged)}
        for row in incoming:
            row_id = str(row.get("id"))
            if row_id in positions:
                merged[positions[row_id]] = row
            else:
                positions[row_id] = len(merged)
                merged.append(row)
        self._base[kind] = merged

    async def refresh(
        self,
        kinds: Iterable[StoreKind] | None = None,
        *,
        replace: bool = False,
        settle: Iterable[str] = (),
    ) -> ProjectSnapshot | None:
        """Fetch record kinds concurrently and commit them.

        Background passes merge by record id. ``replace`` is used for the
        canonical re-fetch after a write: fetched kinds replace the local copy,
        any failed fetch raises, and the overlays named in ``settle`` are dropped
        in the same commit.
        """
        requested: tuple[StoreKind, ...] = tuple(kinds) if kinds is not None else FETCH_KINDS
        self._pass_sequence += 1
        sequence = self._pass_sequence
        started = time.perf_counter()

        with traced(tracer, "engine.refresh", project_id=self.project_id, sequence=sequence, replace=replace):
            results: list[FetchResult] = list(
                await asyncio.gather(*(self.store.fetch(kind, self.project_id) for kind in requested))
            )

        if not self._relevant:
            observe_reconcile_pass("discarded")
            logger.info("engine.pass_discarded", extra={"project_id": self.project_id, "sequence": sequence, "reason": "closed"})
            return None

        failures = [(kind, result) for kind, result in zip(requested, results) if not result.success]
        if replace and failures:
            kind, result = failures[0]
            observe_reconcile_pass("failed")
            raise result.error or NetworkError(f"fetch of {kind} failed")

        applied: list[str] = []
        for kind, result in zip(requested, results):
            if not result.success:
                logger.warning(
                    "engine.fetch_failed",
                    extra={"project_id": self.project_id, "kind": kind, "sequence": sequence},
                )
                continue
            if sequence < self._committed_sequence.get(kind, 0):
                continue
            self._merge(kind, result.data, replace)
            self._committed_sequence[kind] = sequence
            self._fetched.add(kind)
            applied.append(kind)

        settled = [entity_id for entity_id in settle if self._overlays.pop(entity_id, None) is not None]
        for entity_id, overlay in list(self._overlays.items()):
            if overlay.state == "unconfirmed" and overlay.kind in applied and sequence > overlay.since:
                del self._overlays[entity_id]
                settled.append(entity_id)

        if not applied and not settled:
            observe_reconcile_pass("discarded")
            logger.info(
                "engine.pass_discarded",
                extra={"project_id": self.project_id, "sequence": sequence, "reason": "stale"},
            )
            return None

        snapshot = self._commit("refreshed")
        observe_reconcile_pass("committed", time.perf_counter() - started)
        logger.info(
            "engine.pass_committed",
            extra={
                "project_id": self.project_id,
                "sequence": sequence,
                "kinds": applied,
                "count": len(snapshot.events),
            },
        )
        return snapshot

    def apply_overlay(self, overlay: Overlay) -> ProjectSnapshot:
        self._overlays[overlay.entity_id] = overlay
        return self._commit("optimistic")

    def discard_overlay(self, entity_id: str) -> ProjectSnapshot:
        self._overlays.pop(entity_id, None)
        return self._commit("rolled_back")

    def mark_unconfirmed(self, entity_id: str) -> ProjectSnapshot:
        overlay = self._overlays.get(entity_id)
        if overlay is not None:
            self._overlays[entity_id] = dataclasses.replace(overlay, state="unconfirmed", since=self._pass_sequence)
        return self._commit("unconfirmed")

    def get_timeline(
        self,
        timeline_filter: TimelineFilter = "all",
        page_size: int | None = None,
        show_all: bool = False,
    ) -> TimelinePage:
        snapshot = self._snapshot
        return build_timeline(
            snapshot.events,
            timeline_filter=timeline_filter,
            page_size=page_size or self.settings.timeline_page_size,
            show_all=show_all,
            tz=resolve_timezone(self.settings.viewer_timezone),
            now=self.clock(),
            system_actors={actor.casefold() for actor in self.settings.system_actors},
            opportunity_count=snapshot.opportunity_count,
        )

    def get_financial_summary(self) -> FinancialSummary:
        return self._snapshot.summary

    async def mutate_quote(self, quote_id: str, action: QuoteAction) -> MutationOutcome:
        return await self.coordinator.mutate_quote(quote_id, action)

    async def mutate_payment(self, payment_id: str | None, action: PaymentAction) -> MutationOutcome:
        return await self.coordinator.mutate_payment(payment_id, action)

    def subscribe(self, handler: UpdateHandler) -> Callable[[], None]:
        return self.channel.subscribe(self.project_id, handler)

    def schedule(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle

        def fire() -> None:
            self._timers.discard(handle)
            if self._relevant:
                callback()

        handle = loop.call_later(delay, fire)
        self._timers.add(handle)
        return handle

    def close(self) -> None:
        """Tear down: cancel local timers and ignore anything that resolves later.

        In-flight store calls are left to finish.
        """
        self._relevant = False
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self.channel.clear()
