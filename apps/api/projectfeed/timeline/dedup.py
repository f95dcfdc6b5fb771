from __future__ import annotations

from collections.abc import Callable, Hashable, Sequence
from datetime import timezone
from decimal import Decimal

from projectfeed.metrics import observe_duplicates_removed
from projectfeed.timeline.schemas import (
    ActivityEvent,
    DocumentMetadata,
    EventOrigin,
    PaymentMetadata,
    SourceType,
    StatusMetadata,
)


# Origins listed most authoritative first; an origin missing from its row ranks last.
SOURCE_PRIORITY: dict[SourceType, tuple[EventOrigin, ...]] = {
    "document": ("documents", "quotes", "history"),
    "payment": ("payments", "history"),
    "note": ("notes", "inline_notes", "history"),
    "task": ("tasks", "history"),
    "appointment": ("appointments", "history"),
    "opportunity": ("opportunities", "history"),
    "status": ("history",),
}

FIRST_CLASS_ORIGINS: dict[SourceType, set[EventOrigin]] = {
    "document": {"documents", "quotes"},
    "payment": {"payments"},
}

# Rows of these lists are distinct records even when they read the same.
RECORD_ORIGINS: frozenset[EventOrigin] = frozenset(
    {"opportunities", "tasks", "appointments", "documents", "quotes", "payments"}
)

# Status-log entries that only announce an attachment.
ATTACHMENT_ENTRY_TYPES = frozenset({"document", "upload", "attachment", "fichier"})

EventKey = Callable[[ActivityEvent], Hashable | None]


def source_rank(event: ActivityEvent) -> int:
    order = SOURCE_PRIORITY.get(event.source_type, ())
    try:
        return order.index(event.origin)
    except ValueError:
        return len(order)


def richness(event: ActivityEvent) -> int:
    metadata = event.metadata
    score = 0
    if isinstance(metadata, DocumentMetadata):
        score += bool(metadata.file_path) + bool(metadata.document_id)
        score += metadata.amount is not None and metadata.amount != 0
    elif isinstance(metadata, PaymentMetadata):
        score += bool(metadata.payment_id) + bool(metadata.method)
        score += metadata.amount != 0
    return int(score)


def _preference(event: ActivityEvent) -> tuple[int, int, int]:
    return (source_rank(event), -richness(event), event.sequence)


def identity_key(event: ActivityEvent) -> Hashable | None:
    metadata = event.metadata
    if isinstance(metadata, PaymentMetadata):
        # repeated edits of one payment are distinct facts
        if metadata.payment_id and metadata.action != "updated":
            return ("payment", metadata.payment_id, metadata.action)
        return None
    if isinstance(metadata, DocumentMetadata):
        return ("document", metadata.file_name.strip().casefold())
    return None


def content_key(event: ActivityEvent) -> Hashable | None:
    if event.origin in RECORD_ORIGINS:
        return None
    if isinstance(event.metadata, PaymentMetadata) and event.metadata.payment_id:
        return None
    minute = event.occurred_at.astimezone(timezone.utc).replace(second=0, microsecond=0)
    title = " ".join(event.title.split()).casefold()
    description = " ".join(event.description.split()).casefold()
    return (event.source_type, title, description, event.author.strip().casefold(), minute)


def _collapse(events: Sequence[ActivityEvent], key: EventKey) -> list[ActivityEvent]:
    winners: dict[Hashable, ActivityEvent] = {}
    for event in events:
        event_key = key(event)
        if event_key is None:
            continue
        current = winners.get(event_key)
        if current is None or _preference(event) < _preference(current):
            winners[event_key] = event

    survivors: list[ActivityEvent] = []
    for event in events:
        event_key = key(event)
        if event_key is None or winners[event_key] is event:
            survivors.append(event)
    return survivors


def _is_first_class(event: ActivityEvent) -> bool:
    return event.origin in FIRST_CLASS_ORIGINS.get(event.source_type, set())


def _suppress_cross_source(events: Sequence[ActivityEvent]) -> list[ActivityEvent]:
    file_names: set[str] = set()
    payment_amounts: set[Decimal] = set()
    for event in events:
        if not _is_first_class(event):
            continue
        if isinstance(event.metadata, DocumentMetadata):
            file_names.add(event.metadata.file_name.strip().casefold())
        elif isinstance(event.metadata, PaymentMetadata) and event.metadata.action == "received":
            payment_amounts.add(event.metadata.amount)

    def mentions_first_class_fact(event: ActivityEvent) -> bool:
        if event.origin != "history":
            return False
        metadata = event.metadata
        if isinstance(metadata, PaymentMetadata):
            return (
                metadata.payment_id is None
                and metadata.action == "received"
                and metadata.amount != 0
                and metadata.amount in payment_amounts
            )
        if not isinstance(metadata, StatusMetadata) or metadata.entry_type not in ATTACHMENT_ENTRY_TYPES:
            return False
        text = f"{event.title} {event.description}".casefold()
        return any(name and name in text for name in file_names)

    return [event for event in events if not mentions_first_class_fact(event)]


def deduplicate(events: Sequence[ActivityEvent]) -> list[ActivityEvent]:
    """Collapse events that describe the same fact, keeping input order of survivors.

    Identity collisions are resolved first, then near-simultaneous content
    duplicates among notes and log entries, then log entries announcing a
    payment or attachment already present as a first-class event. Running
    this on its own output changes nothing.
    """
    by_identity = _collapse(events, identity_key)
    by_content = _collapse(by_identity, content_key)
    survivors = _suppress_cross_source(by_content)

    observe_duplicates_removed("identity", len(events) - len(by_identity))
    observe_duplicates_removed("content", len(by_identity) - len(by_content))
    observe_duplicates_removed("cross_source", len(by_content) - len(survivors))
    return survivors
