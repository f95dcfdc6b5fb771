from __future__ import annotations

from collections.abc import Collection, Sequence
from datetime import date, datetime, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo

from projectfeed.timeline.schemas import (
    FILTER_SOURCE_TYPES,
    ActivityEvent,
    EventGroup,
    OpportunityMetadata,
    TimelineDay,
    TimelineFilter,
    TimelinePage,
)


DEFAULT_PAGE_SIZE = 15
DEFAULT_SYSTEM_ACTORS = frozenset({"system", "système", "systeme", "automation"})
AUTOMATIC_MARKERS = ("automatically", "automatiquement")

_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)
_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def resolve_timezone(name: str | None) -> tzinfo:
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def sort_events(events: Sequence[ActivityEvent]) -> list[ActivityEvent]:
    """Newest first; equal timestamps keep normalizer insertion order."""
    by_insertion = sorted(events, key=lambda event: event.sequence)
    return sorted(by_insertion, key=lambda event: event.occurred_at, reverse=True)


def filter_events(events: Sequence[ActivityEvent], timeline_filter: TimelineFilter = "all") -> list[ActivityEvent]:
    source_type = FILTER_SOURCE_TYPES[timeline_filter]
    if source_type is None:
        return list(events)
    return [event for event in events if event.source_type == source_type]


def count_opportunities(events: Sequence[ActivityEvent], opportunity_count: int | None = None) -> int:
    if opportunity_count is not None:
        return opportunity_count
    references: set[str] = set()
    for event in events:
        if isinstance(event.metadata, OpportunityMetadata):
            references.add(event.metadata.opportunity_id or event.source_id)
    return len(references)


def filter_counts(events: Sequence[ActivityEvent], opportunity_count: int | None = None) -> dict[str, int]:
    counts: dict[str, int] = {}
    for timeline_filter, source_type in FILTER_SOURCE_TYPES.items():
        if source_type is None:
            counts[timeline_filter] = len(events)
        elif source_type == "opportunity":
            counts[timeline_filter] = count_opportunities(events, opportunity_count)
        else:
            counts[timeline_filter] = sum(1 for event in events if event.source_type == source_type)
    return counts


def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{_WEEKDAYS[day.weekday()]} {day.day} {_MONTHS[day.month - 1]} {day.year}"


def is_system_update(event: ActivityEvent, system_actors: Collection[str] = DEFAULT_SYSTEM_ACTORS) -> bool:
    if not event.groupable:
        return False
    if event.author.strip().casefold() in system_actors:
        return True
    description = event.description.casefold()
    return any(marker in description for marker in AUTOMATIC_MARKERS)


def compress_runs(
    events: Sequence[ActivityEvent],
    system_actors: Collection[str] = DEFAULT_SYSTEM_ACTORS,
) -> list[ActivityEvent | EventGroup]:
    actors = {actor.casefold() for actor in system_actors}
    items: list[ActivityEvent | EventGroup] = []
    run: list[ActivityEvent] = []

    def flush() -> None:
        if len(run) > 1:
            first = run[0]
            items.append(
                EventGroup(
                    id=f"system-group-{first.id}",
                    author=first.author,
                    occurred_at=first.occurred_at,
                    events=tuple(run),
                )
            )
        else:
            items.extend(run)
        run.clear()

    for event in events:
        if is_system_update(event, actors):
            run.append(event)
            continue
        flush()
        items.append(event)
    flush()
    return items


def group_by_day(
    events: Sequence[ActivityEvent],
    tz: tzinfo,
    now: datetime,
    system_actors: Collection[str] = DEFAULT_SYSTEM_ACTORS,
) -> list[TimelineDay]:
    """Bucket already-sorted events by local calendar day, compressing system runs per day."""
    today = now.astimezone(tz).date()
    buckets: dict[date, list[ActivityEvent]] = {}
    for event in events:
        buckets.setdefault(event.occurred_at.astimezone(tz).date(), []).append(event)
    return [
        TimelineDay(day=day, label=day_label(day, today), items=compress_runs(day_events, system_actors))
        for day, day_events in buckets.items()
    ]


def build_timeline(
    events: Sequence[ActivityEvent],
    *,
    timeline_filter: TimelineFilter = "all",
    page_size: int = DEFAULT_PAGE_SIZE,
    show_all: bool = False,
    tz: tzinfo = timezone.utc,
    now: datetime | None = None,
    system_actors: Collection[str] = DEFAULT_SYSTEM_ACTORS,
    opportunity_count: int | None = None,
) -> TimelinePage:
    current = now or datetime.now(timezone.utc)
    counts = filter_counts(events, opportunity_count)
    selected = sort_events(filter_events(events, timeline_filter))
    visible = selected if show_all else selected[: max(page_size, 0)]
    available: list[TimelineFilter] = [
        name for name in FILTER_SOURCE_TYPES if name == "all" or counts.get(name, 0) > 0
    ]
    return TimelinePage(
        filter=timeline_filter,
        days=group_by_day(visible, tz, current, system_actors),
        total=len(selected),
        shown=len(visible),
        has_more=len(visible) < len(selected),
        counts=counts,
        available_filters=available,
    )
