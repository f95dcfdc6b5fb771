from projectfeed.timeline.aggregator import build_timeline, filter_counts, sort_events
from projectfeed.timeline.dedup import SOURCE_PRIORITY, deduplicate
from projectfeed.timeline.normalizer import normalize_records
from projectfeed.timeline.schemas import (
    ActivityEvent,
    EventGroup,
    RecordKind,
    TimelineDay,
    TimelineFilter,
    TimelinePage,
)

__all__ = [
    "build_timeline",
    "filter_counts",
    "sort_events",
    "SOURCE_PRIORITY",
    "deduplicate",
    "normalize_records",
    "ActivityEvent",
    "EventGroup",
    "RecordKind",
    "TimelineDay",
    "TimelineFilter",
    "TimelinePage",
]
