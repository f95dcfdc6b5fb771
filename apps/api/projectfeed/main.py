from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from projectfeed.api.routes import router as api_router
from projectfeed.core.config import get_settings
from projectfeed.logging import configure_logging
from projectfeed.middleware.correlation_id import CorrelationIdMiddleware
from projectfeed.middleware.request_logging import RequestLoggingMiddleware
from projectfeed.otel import get_fastapi_server_request_hook, setup_otel
from projectfeed.records.store import shutdown_record_executor


configure_logging()
logger = logging.getLogger("projectfeed.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("system_started", extra={"status": "starting"})
    yield
    shutdown_record_executor()
    logger.info("system_stopped", extra={"status": "stopped"})


app = FastAPI(title="Project Feed API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("projectfeed", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
