"""
Shared enumerations for the review kernel.

Models persist these as String columns; domain code and services compare
against them directly (every enum is a str subclass).
"""

from enum import Enum


class StageType(str, Enum):
    """Behavioral type of a template stage.

    The type decides which participant actions a stage accepts; the stage
    key only names the node in the graph.
    """

    POSTED = "posted"
    REVIEW_ROUND = "review_round"
    AUTHOR_RESPONSE = "author_response"
    COLLABORATIVE_ASSESSMENT = "collaborative_assessment"
    AWARD_DISTRIBUTION = "award_distribution"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# The open-enrollment stage type: reviewers may join only while here.
ENROLLMENT_STAGE_TYPES: frozenset[StageType] = frozenset({StageType.POSTED})

# Canonical terminal set.  A terminal stage must have one of these types.
TERMINAL_STAGE_TYPES: frozenset[StageType] = frozenset(
    {StageType.COMPLETED, StageType.CANCELLED}
)


class ActivityStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TransitionKind(str, Enum):
    """How a StateLog entry came about."""

    INITIAL = "initial"
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    FORCED = "forced"


class AccountKind(str, Enum):
    """Kind of wallet account.

    USER and PLATFORM accounts must never go negative.  TREASURY is the
    issuance source and is the only account allowed below zero.  ESCROW is
    the per-activity holding account.
    """

    USER = "user"
    PLATFORM = "platform"
    ESCROW = "escrow"
    TREASURY = "treasury"


class LedgerCategory(str, Enum):
    ISSUANCE = "issuance"
    ESCROW_FUNDING = "escrow_funding"
    ESCROW_TRANSFER = "escrow_transfer"
    ENTRY_FEE = "entry_fee"
    REWARD_PAYOUT = "reward_payout"
    LEFTOVER_SWEEP = "leftover_sweep"
    REFUND = "refund"


class TransactionOrigin(str, Enum):
    """Who initiated a ledger movement."""

    ACTIVITY = "activity"
    SUPERADMIN = "superadmin"
    SYSTEM = "system"


class MembershipStatus(str, Enum):
    JOINED = "joined"
    LOCKED_IN = "locked_in"
    REMOVED = "removed"
    COMPLETED = "completed"


# Members that count toward capacity and participate in predicates.
ACTIVE_MEMBERSHIP_STATUSES: frozenset[MembershipStatus] = frozenset(
    {MembershipStatus.JOINED, MembershipStatus.LOCKED_IN}
)


class AwardKind(str, Enum):
    INSIGHTFUL_ANALYSIS = "insightful_analysis"
    PAPER_CHALLENGER = "paper_challenger"
    CLARITY_CHAMPION = "clarity_champion"
    METHODOLOGY_MENTOR = "methodology_mentor"
