from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from projectfeed.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("projectfeed.request")


def _request_fields(request: Request, method: str, path: str) -> dict[str, Any]:
    fields: dict[str, Any] = {"method": method, "path": path}
    project_id = request.path_params.get("project_id")
    if project_id is not None:
        fields["project_id"] = str(project_id)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            path = resolve_http_path_label(request)
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={**_request_fields(request, method, path), "status_code": 500, "duration_ms": duration_ms},
            )
            raise

        # the route is only resolved once the downstream app has matched it
        path = resolve_http_path_label(request)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_http_request(method=method, path=path, status=response.status_code, duration=duration_ms / 1000)
        logger.info(
            "http.request",
            extra={
                **_request_fields(request, method, path),
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response
