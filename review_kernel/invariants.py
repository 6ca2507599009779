"""
Kernel Invariants Contract.

These invariants are structural law. No template, configuration set, or
caller option may override them.

This module exists solely to declare these invariants explicitly. The
enforcement is distributed across the template graph validator, the escrow
ledger, the activity state machine, and the immutability listeners.
"""

from enum import Enum, unique


@unique
class KernelInvariant(str, Enum):
    """Non-configurable invariants enforced by the kernel."""

    TEMPLATE_WELL_FORMED = "template_well_formed"
    """Exactly one initial stage, no cycles, no unreachable stages, every
    edge endpoint exists, terminal stages have no outgoing edges and every
    other stage has at least one. Enforced by domain.template_graph at
    registration."""

    TYPED_CONDITIONS = "typed_conditions"
    """Every condition leaf resolves to a registered predicate kind with a
    typed configuration. Enforced by domain.conditions at registration and
    by ConditionEvaluator at evaluation."""

    BALANCE_FROM_ENTRIES = "balance_from_entries"
    """A wallet balance is the sum of its ledger entries; no stored
    balance is authoritative. Enforced by LedgerSelector."""

    NON_NEGATIVE_WALLETS = "non_negative_wallets"
    """User wallets never go negative. Enforced by EscrowLedgerService under
    lock. The treasury account is the only account allowed below zero."""

    ESCROW_BOUNDS = "escrow_bounds"
    """0 <= escrow_balance <= funding_amount for every activity. Enforced
    by EscrowLedgerService under lock."""

    CONSERVATION = "conservation"
    """Every movement is a balanced pair of entries; the ledger sums to
    zero. Enforced by EscrowLedgerService."""

    APPEND_ONLY_HISTORY = "append_only_history"
    """State log entries, ledger entries, award records and template
    definitions are never updated or deleted. Enforced by
    review_kernel.db.immutability."""

    CANONICAL_LOCK_ORDER = "canonical_lock_order"
    """Wallets, then escrow accounts, then activities, then the ledger
    sequence, each group in ascending id order. Enforced by LockService."""


ALL_KERNEL_INVARIANTS: frozenset[KernelInvariant] = frozenset(KernelInvariant)

# The kernel package may not import from these packages.
# This is enforced by tests/architecture/test_kernel_boundary.py.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = (
    "review_config",
    "scripts",
)
