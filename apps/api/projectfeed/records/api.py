from __future__ import annotations

from typing import Any, NoReturn

from fastapi import APIRouter, Body, Depends, HTTPException, status
from sqlalchemy.orm import Session

from projectfeed.core.database import get_db
from projectfeed.core.errors import ConflictError, NetworkError, NotFoundError, ProjectFeedError, ValidationError
from projectfeed.records.schemas import ProjectCreate, ProjectRead, RecordWriteResult, StoreKind
from projectfeed.records.service import project_record_service


router = APIRouter(prefix="/projects", tags=["records"])

_ERROR_STATUS: dict[type[ProjectFeedError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConflictError: status.HTTP_409_CONFLICT,
    NetworkError: status.HTTP_502_BAD_GATEWAY,
}


def raise_http_error(exc: ProjectFeedError) -> NoReturn:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=status_code, detail=exc.message)


def _record_kind(kind: StoreKind) -> StoreKind:
    if kind == "project":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return kind


@router.post("", response_model=ProjectRead, status_code=status.HTTP_201_CREATED)
def create_project(payload: ProjectCreate, db: Session = Depends(get_db)) -> dict[str, Any]:
    return project_record_service.create_project(db, payload)


@router.get("/{project_id}", response_model=ProjectRead)
def get_project(project_id: str, db: Session = Depends(get_db)) -> dict[str, Any]:
    try:
        return project_record_service.get_project(db, project_id)
    except ProjectFeedError as exc:
        raise_http_error(exc)


@router.get("/{project_id}/records/{kind}")
def list_records(project_id: str, kind: StoreKind = Depends(_record_kind), db: Session = Depends(get_db)) -> list[dict[str, Any]]:
    try:
        return project_record_service.list_records(db, project_id, kind)
    except ProjectFeedError as exc:
        raise_http_error(exc)


@router.post("/{project_id}/records/{kind}", response_model=RecordWriteResult, status_code=status.HTTP_201_CREATED)
def create_record(
    project_id: str,
    kind: StoreKind = Depends(_record_kind),
    fields: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> RecordWriteResult:
    try:
        return project_record_service.create_record(db, project_id, kind, fields)
    except ProjectFeedError as exc:
        raise_http_error(exc)


@router.patch("/{project_id}/records/{kind}/{record_id}", response_model=RecordWriteResult)
def patch_record(
    project_id: str,
    record_id: str,
    kind: StoreKind = Depends(_record_kind),
    fields: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
) -> RecordWriteResult:
    try:
        return project_record_service.patch_record(db, project_id, kind, record_id, fields)
    except ProjectFeedError as exc:
        raise_http_error(exc)


@router.delete("/{project_id}/records/{kind}/{record_id}", response_model=RecordWriteResult)
def delete_record(
    project_id: str,
    record_id: str,
    kind: StoreKind = Depends(_record_kind),
    db: Session = Depends(get_db),
) -> RecordWriteResult:
    try:
        return project_record_service.delete_record(db, project_id, kind, record_id)
    except ProjectFeedError as exc:
        raise_http_error(exc)
