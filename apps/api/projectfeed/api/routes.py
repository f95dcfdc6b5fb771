from fastapi import APIRouter, HTTPException, status
from fastapi.responses import Response

from projectfeed.core.config import get_settings
from projectfeed.engine.api import router as engine_router
from projectfeed.metrics import generate_metrics_payload, metrics_content_type
from projectfeed.records.api import router as records_router

router = APIRouter()
router.include_router(records_router)
router.include_router(engine_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="metrics disabled")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
