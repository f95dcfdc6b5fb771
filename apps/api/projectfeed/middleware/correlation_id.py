from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from projectfeed.context import reset_correlation_id, reset_project_id, set_correlation_id, set_project_id


# Routing has not run yet, so the project is read straight off the path.
_PROJECT_PATH_RE = re.compile(r"^/projects/(?P<project_id>[^/]+)")


def _incoming_correlation_id(request: Request) -> str:
    return request.headers.get("x-correlation-id") or request.headers.get("x-request-id") or str(uuid.uuid4())


def project_id_from_path(path: str) -> str | None:
    match = _PROJECT_PATH_RE.match(path)
    return match.group("project_id") if match else None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id and the addressed project to the request context."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request)
        project_id = project_id_from_path(request.url.path)
        request.state.correlation_id = correlation_id

        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
            if project_id:
                span.set_attribute("project_id", project_id)

        correlation_token = set_correlation_id(correlation_id)
        project_token = set_project_id(project_id)
        try:
            response = await call_next(request)
        finally:
            reset_project_id(project_token)
            reset_correlation_id(correlation_token)

        response.headers["x-correlation-id"] = correlation_id
        return response
