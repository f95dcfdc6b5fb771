from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from projectfeed.context import get_correlation_id
from projectfeed.core.errors import ProjectFeedError


_provider: TracerProvider | None = None
_exporters_installed = False


def _provider_for(service_name: str) -> TracerProvider:
    """The process-wide provider; the global one can only be installed once."""
    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    "service.name": service_name,
                    "service.version": os.getenv("APP_VERSION", "0.1.0"),
                    "deployment.environment": os.getenv("APP_ENV", "local"),
                }
            )
        )
        trace.set_tracer_provider(_provider)
    return _provider


def _configured_processors() -> list[SpanProcessor]:
    processors: list[SpanProcessor] = []
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if endpoint:
        processors.append(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    if os.getenv("OTEL_CONSOLE_EXPORTER", "false").lower() == "true":
        processors.append(SimpleSpanProcessor(ConsoleSpanExporter()))
    return processors


def setup_otel(service_name: str, enable: bool) -> TracerProvider | None:
    global _exporters_installed

    if not enable:
        return None

    provider = _provider_for(service_name)
    if not _exporters_installed:
        for processor in _configured_processors():
            provider.add_span_processor(processor)
        _exporters_installed = True
    return provider


def setup_inmemory_otel(service_name: str = "projectfeed") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)


def _attribute(value: Any) -> Any:
    return value if isinstance(value, (bool, int, float, str)) else str(value)


@contextmanager
def traced(tracer: trace.Tracer, name: str, **attributes: Any) -> Iterator[trace.Span]:
    """Span stamped with the current correlation id; domain errors add their code."""
    with tracer.start_as_current_span(name) as span:
        span.set_attribute("correlation_id", get_correlation_id() or "")
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(key, _attribute(value))
        try:
            yield span
        except ProjectFeedError as exc:
            span.set_attribute("error.code", exc.code)
            raise


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None or not span.is_recording():
            return
        headers = dict(scope.get("headers", []))
        raw = headers.get(b"x-correlation-id") or headers.get(b"x-request-id")
        if raw:
            span.set_attribute("correlation_id", raw.decode("utf-8"))

    return server_request_hook
