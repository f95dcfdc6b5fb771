from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Response, status

from projectfeed.core.database import SessionLocal
from projectfeed.core.errors import NotFoundError, ProjectFeedError
from projectfeed.engine.project_engine import ProjectEngine
from projectfeed.engine.schemas import (
    FinancialSummaryResponse,
    MutationOutcome,
    PaymentAction,
    QuoteAction,
    TimelineResponse,
)
from projectfeed.files import FileResolver, get_file_resolver
from projectfeed.notifications import LoggingNotificationDispatcher
from projectfeed.records.api import raise_http_error
from projectfeed.records.store import RecordStore, ServiceRecordStore
from projectfeed.timeline.schemas import ActivityEvent, DocumentMetadata, EventGroup, TimelineFilter, TimelinePage


router = APIRouter(prefix="/projects", tags=["timeline"])

_OUTCOME_STATUS: dict[str, int] = {
    "confirmed": status.HTTP_200_OK,
    "unconfirmed": status.HTTP_202_ACCEPTED,
}
_ERROR_CODE_STATUS: dict[str, int] = {
    "conflict": status.HTTP_409_CONFLICT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "network_error": status.HTTP_502_BAD_GATEWAY,
}


def get_record_store() -> RecordStore:
    return ServiceRecordStore(SessionLocal)


async def get_engine(project_id: str, store: RecordStore = Depends(get_record_store)) -> AsyncIterator[ProjectEngine]:
    engine = ProjectEngine(project_id, store, notifier=LoggingNotificationDispatcher())
    try:
        await engine.refresh()
        if engine.snapshot.project is None:
            raise NotFoundError("project", project_id)
    except ProjectFeedError as exc:
        engine.close()
        raise_http_error(exc)
    try:
        yield engine
    finally:
        engine.close()


def _document_urls(page: TimelinePage, resolver: FileResolver) -> dict[str, str]:
    urls: dict[str, str] = {}

    def visit(event: ActivityEvent) -> None:
        metadata = event.metadata
        if isinstance(metadata, DocumentMetadata) and metadata.file_path:
            urls[event.id] = resolver.resolve_file_url(metadata.file_path)

    for day in page.days:
        for item in day.items:
            if isinstance(item, EventGroup):
                for event in item.events:
                    visit(event)
            else:
                visit(item)
    return urls


def _respond(outcome: MutationOutcome, response: Response) -> MutationOutcome:
    if outcome.status in _OUTCOME_STATUS:
        response.status_code = _OUTCOME_STATUS[outcome.status]
    else:
        response.status_code = _ERROR_CODE_STATUS.get(outcome.error_code or "", status.HTTP_400_BAD_REQUEST)
    return outcome


@router.get("/{project_id}/timeline", response_model=TimelineResponse)
async def get_timeline(
    timeline_filter: TimelineFilter = Query("all", alias="filter"),
    page_size: int | None = Query(None, ge=1, le=500),
    show_all: bool = False,
    engine: ProjectEngine = Depends(get_engine),
    resolver: FileResolver = Depends(get_file_resolver),
) -> dict[str, Any]:
    page = engine.get_timeline(timeline_filter, page_size=page_size, show_all=show_all)
    return {
        "project_id": engine.project_id,
        "stage": engine.snapshot.stage,
        "page": page,
        "file_urls": _document_urls(page, resolver),
    }


@router.get("/{project_id}/financial-summary", response_model=FinancialSummaryResponse)
async def get_financial_summary(engine: ProjectEngine = Depends(get_engine)) -> dict[str, Any]:
    return {
        "project_id": engine.project_id,
        "stage": engine.snapshot.stage,
        "summary": engine.get_financial_summary(),
    }


@router.post("/{project_id}/quotes/{quote_id}/actions", response_model=MutationOutcome)
async def run_quote_action(
    quote_id: str,
    response: Response,
    action: QuoteAction = Body(...),
    engine: ProjectEngine = Depends(get_engine),
) -> MutationOutcome:
    return _respond(await engine.mutate_quote(quote_id, action), response)


@router.post("/{project_id}/payments/actions", response_model=MutationOutcome)
async def add_payment(
    response: Response,
    action: PaymentAction = Body(...),
    engine: ProjectEngine = Depends(get_engine),
) -> MutationOutcome:
    return _respond(await engine.mutate_payment(None, action), response)


@router.post("/{project_id}/payments/{payment_id}/actions", response_model=MutationOutcome)
async def run_payment_action(
    payment_id: str,
    response: Response,
    action: PaymentAction = Body(...),
    engine: ProjectEngine = Depends(get_engine),
) -> MutationOutcome:
    return _respond(await engine.mutate_payment(payment_id, action), response)
