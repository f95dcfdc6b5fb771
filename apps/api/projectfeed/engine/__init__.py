from projectfeed.engine.api import router
from projectfeed.engine.coordinator import MutationCoordinator
from projectfeed.engine.project_engine import FETCH_KINDS, ProjectEngine
from projectfeed.engine.schemas import (
    AcceptQuote,
    AddPayment,
    DeletePayment,
    EditPaymentAmount,
    EditQuoteAmount,
    MarkQuotePaid,
    MutationOutcome,
    PendQuote,
    RefuseQuote,
)
from projectfeed.engine.snapshot import Overlay, ProjectSnapshot, build_snapshot

__all__ = [
    "router",
    "MutationCoordinator",
    "FETCH_KINDS",
    "ProjectEngine",
    "AcceptQuote",
    "AddPayment",
    "DeletePayment",
    "EditPaymentAmount",
    "EditQuoteAmount",
    "MarkQuotePaid",
    "MutationOutcome",
    "PendQuote",
    "RefuseQuote",
    "Overlay",
    "ProjectSnapshot",
    "build_snapshot",
]
