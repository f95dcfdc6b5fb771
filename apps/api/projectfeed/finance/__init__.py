from projectfeed.finance.reconciler import (
    VALID_QUOTE_TRANSITIONS,
    deposit_reversion,
    deposit_transition,
    quote_stage_transition,
    set_invoice_paid,
    summarize,
    transition_quote,
)
from projectfeed.finance.schemas import FinancialSummary, Payment, ProjectStage, Quote, StageTransition

__all__ = [
    "VALID_QUOTE_TRANSITIONS",
    "deposit_reversion",
    "deposit_transition",
    "quote_stage_transition",
    "set_invoice_paid",
    "summarize",
    "transition_quote",
    "FinancialSummary",
    "Payment",
    "ProjectStage",
    "Quote",
    "StageTransition",
]
