from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol


logger = logging.getLogger("projectfeed.notifications")


@dataclass(frozen=True, slots=True)
class MutationNotice:
    project_id: str
    entity: str
    entity_id: str
    action: str
    status: str
    new_stage: str | None = None


class NotificationDispatcher(Protocol):
    def dispatch(self, notice: MutationNotice) -> None: ...


class LoggingNotificationDispatcher:
    def dispatch(self, notice: MutationNotice) -> None:
        logger.info(
            "notification.dispatched",
            extra={
                "project_id": notice.project_id,
                "entity_id": notice.entity_id,
                "action": notice.action,
                "status": notice.status,
                "stage": notice.new_stage,
            },
        )

