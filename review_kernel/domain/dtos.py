"""
Value objects returned across the engine boundary.

All types are frozen dataclasses.  None of them holds an ORM row, so results
stay valid after the engine's session is closed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from review_kernel.enums import TransitionKind
from review_kernel.exceptions import ErrorKind, ReviewKernelError


@dataclass(frozen=True)
class EngineOptions:
    """Deployment settings the engine needs at runtime.

    platform_owner_id names the single account that receives entry fees and
    leftover escrow.  treasury_owner_id names the issuance source.
    """

    platform_owner_id: UUID
    treasury_owner_id: UUID
    commitment_window: timedelta = timedelta(hours=72)
    author_award_points: int = 2
    reviewer_award_points: int = 1


@dataclass(frozen=True)
class ActivityHandle:
    activity_id: UUID
    initial_stage: str
    escrow_balance: int


@dataclass(frozen=True)
class FiredTransition:
    from_stage: str
    to_stage: str
    kind: TransitionKind
    occurred_at: datetime
    new_deadline: datetime | None


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of one progression attempt; ``fired`` may be empty."""

    activity_id: UUID
    stage_key: str
    fired: tuple[FiredTransition, ...] = ()
    settlement: SettlementReport | None = None

    @property
    def advanced(self) -> bool:
        return bool(self.fired)


@dataclass(frozen=True)
class ActionOutcome:
    activity_id: UUID
    action: str
    progression: TransitionResult


class LedgerStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class LedgerResult:
    """
    Result of a ledger primitive at the engine boundary.

    On success ``new_balances`` maps each touched owner (user id, or the
    activity id for an escrow) to its balance after the movement.  On failure
    ``error`` holds the typed kernel error; its code and kind are exposed for
    callers that only need to branch.
    """

    status: LedgerStatus
    new_balances: dict[UUID, int] = field(default_factory=dict)
    transfer_id: UUID | None = None
    error: ReviewKernelError | None = None

    @classmethod
    def success(cls, new_balances: dict[UUID, int], transfer_id: UUID) -> "LedgerResult":
        return cls(status=LedgerStatus.SUCCESS, new_balances=new_balances, transfer_id=transfer_id)

    @classmethod
    def failure(cls, error: ReviewKernelError) -> "LedgerResult":
        return cls(status=LedgerStatus.FAILED, error=error)

    @property
    def is_success(self) -> bool:
        return self.status == LedgerStatus.SUCCESS

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error is not None else None

    @property
    def error_code(self) -> str | None:
        return self.error.code if self.error is not None else None

    @property
    def reason(self) -> str | None:
        return str(self.error) if self.error is not None else None


@dataclass(frozen=True)
class Movement:
    """A posted transfer: both entries share transfer_id."""

    transfer_id: UUID
    debit_account_id: UUID
    credit_account_id: UUID
    amount: int
    new_balances: dict[UUID, int]


@dataclass(frozen=True)
class PayoutLine:
    user_id: UUID
    rank: int
    points: int
    tokens: int
    paid: bool


@dataclass(frozen=True)
class SettlementReport:
    activity_id: UUID
    payouts: tuple[PayoutLine, ...]
    leftover_swept: int
    platform_account_id: UUID

    @property
    def total_paid(self) -> int:
        return sum(p.tokens for p in self.payouts if p.paid)

    @property
    def skipped(self) -> tuple[PayoutLine, ...]:
        return tuple(p for p in self.payouts if p.tokens > 0 and not p.paid)


@dataclass(frozen=True)
class ExpiredMembership:
    activity_id: UUID
    user_id: UUID


@dataclass(frozen=True)
class SweepFailure:
    activity_id: UUID
    error_code: str
    error_kind: ErrorKind


@dataclass(frozen=True)
class SweepReport:
    expired_memberships: tuple[ExpiredMembership, ...] = ()
    advanced: tuple[TransitionResult, ...] = ()
    failures: tuple[SweepFailure, ...] = ()
