from __future__ import annotations


class ProjectFeedError(Exception):
    """Base error for record store, reconciliation and mutation failures."""

    code = "error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ValidationError(ProjectFeedError):
    """Raised when a write carries a non-positive amount, a missing field or an illegal transition."""

    code = "validation_error"


class NetworkError(ProjectFeedError):
    """Raised when the record store cannot be reached or fails mid-call."""

    code = "network_error"


class ConflictError(ProjectFeedError):
    """Raised when a mutation collides with another one still in flight for the same entity."""

    code = "conflict"


class NotFoundError(ProjectFeedError):
    """Raised when a referenced project, quote, payment or document no longer exists."""

    code = "not_found"

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} not found: {record_id}")
