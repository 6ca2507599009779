"""Read-only query selectors.  Balances and views are derived, never stored."""

from review_kernel.selectors.activity_selector import (
    ActivitySelector,
    ActivitySummary,
    MembershipView,
    StateLogView,
)
from review_kernel.selectors.ledger_selector import (
    ConservationReport,
    LedgerLine,
    LedgerSelector,
)

__all__ = [
    "ActivitySelector",
    "ActivitySummary",
    "ConservationReport",
    "LedgerLine",
    "LedgerSelector",
    "MembershipView",
    "StateLogView",
]
