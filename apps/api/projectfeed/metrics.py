from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

reconcile_passes_total = Counter(
    "projectfeed_reconcile_passes_total",
    "Total reconciliation passes by outcome",
    ["status"],
)

reconcile_pass_duration_seconds = Histogram(
    "projectfeed_reconcile_pass_duration_seconds",
    "Reconciliation pass duration in seconds",
)

records_dropped_total = Counter(
    "projectfeed_records_dropped_total",
    "Malformed source records dropped during normalization",
    ["source"],
)

duplicates_removed_total = Counter(
    "projectfeed_duplicates_removed_total",
    "Activity events removed by deduplication",
    ["key"],
)

mutations_total = Counter(
    "projectfeed_mutations_total",
    "Optimistic mutations by entity, action and outcome",
    ["entity", "action", "status"],
)

stage_transitions_total = Counter(
    "projectfeed_stage_transitions_total",
    "Automatic project stage transitions by reason",
    ["reason"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return path_format
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return route_path
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_reconcile_pass(status: str, duration: float | None = None) -> None:
    reconcile_passes_total.labels(status=status).inc()
    if duration is not None:
        reconcile_pass_duration_seconds.observe(duration)


def observe_record_dropped(source: str, count: int = 1) -> None:
    if count > 0:
        records_dropped_total.labels(source=source).inc(count)


def observe_duplicates_removed(key: str, count: int) -> None:
    if count > 0:
        duplicates_removed_total.labels(key=key).inc(count)


def observe_mutation(entity: str, action: str, status: str) -> None:
    mutations_total.labels(entity=entity, action=action, status=status).inc()


def observe_stage_transition(reason: str) -> None:
    stage_transitions_total.labels(reason=reason).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
