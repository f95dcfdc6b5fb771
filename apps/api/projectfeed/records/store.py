from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from projectfeed.core.errors import NetworkError, ProjectFeedError
from projectfeed.records.schemas import RecordWriteResult, StoreKind
from projectfeed.records.service import ProjectRecordService, project_record_service


logger = logging.getLogger("projectfeed.records.store")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class FetchResult:
    success: bool
    data: list[dict[str, Any]] | dict[str, Any] | None = None
    error: ProjectFeedError | None = None


class RecordStore(Protocol):
    async def fetch(self, kind: StoreKind, parent_id: str) -> FetchResult: ...

    async def create(self, kind: StoreKind, parent_id: str, fields: Mapping[str, Any]) -> RecordWriteResult: ...

    async def patch(self, kind: StoreKind, parent_id: str, record_id: str, fields: Mapping[str, Any]) -> RecordWriteResult: ...

    async def delete(self, kind: StoreKind, parent_id: str, record_id: str) -> RecordWriteResult: ...


_executor: ThreadPoolExecutor | None = None


def get_record_executor() -> ThreadPoolExecutor:
    global _executor
    if _executor is None:
        _executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="projectfeed-records")
    return _executor


def shutdown_record_executor() -> None:
    global _executor
    if _executor is not None:
        _executor.shutdown(wait=True)
        _executor = None


class ServiceRecordStore:
    """Async record store backed by :class:`ProjectRecordService`.

    Calls run one at a time on a worker thread, each in its own session, so the
    event loop never blocks on the database.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        service: ProjectRecordService | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.service = service or project_record_service
        self.executor = executor

    def _in_session(self, operation: Callable[[Session], T]) -> T:
        session = self.session_factory()
        try:
            return operation(session)
        except SQLAlchemyError as exc:
            session.rollback()
            raise NetworkError(f"record store failure: {exc}") from exc
        finally:
            session.close()

    async def _call(self, operation: Callable[[Session], T]) -> T:
        loop = asyncio.get_running_loop()
        context = contextvars.copy_context()
        call = functools.partial(context.run, self._in_session, operation)
        return await loop.run_in_executor(self.executor or get_record_executor(), call)

    async def fetch(self, kind: StoreKind, parent_id: str) -> FetchResult:
        try:
            if kind == "project":
                data: Any = await self._call(lambda session: self.service.get_project(session, parent_id))
            else:
                data = await self._call(lambda session: self.service.list_records(session, parent_id, kind))
        except ProjectFeedError as exc:
            logger.warning(
                "records.fetch_failed",
                extra={"project_id": parent_id, "kind": kind, "error": exc.message},
            )
            return FetchResult(success=False, error=exc)
        return FetchResult(success=True, data=data)

    async def create(self, kind: StoreKind, parent_id: str, fields: Mapping[str, Any]) -> RecordWriteResult:
        return await self._call(lambda session: self.service.create_record(session, parent_id, kind, fields))

    async def patch(self, kind: StoreKind, parent_id: str, record_id: str, fields: Mapping[str, Any]) -> RecordWriteResult:
        return await self._call(
            lambda session: self.service.patch_record(session, parent_id, kind, record_id, fields)
        )

    async def delete(self, kind: StoreKind, parent_id: str, record_id: str) -> RecordWriteResult:
        return await self._call(lambda session: self.service.delete_record(session, parent_id, kind, record_id))
