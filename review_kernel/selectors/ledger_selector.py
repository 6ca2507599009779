"""
Module: review_kernel.selectors.ledger_selector
Responsibility: Read-only ledger queries: account balances, escrow balances,
    entry listings, the conservation check, and a canonical ledger hash.
    Balances are a derived view over LedgerEntry rows -- there are no stored
    wallet balances anywhere in the system.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - BALANCE_FROM_ENTRIES: every balance is SUM(amount) at query time.
    - CONSERVATION: verify_conservation() checks the ledger sums to zero,
      no user or platform wallet is negative, and each activity's
      escrow_balance equals its escrow account's entry sum and stays within
      [0, funding_amount].

Audit relevance:
    canonical_hash() is a deterministic SHA-256 over all entries ordered by
    sequence, so two replicas or two replays can be compared cheaply.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from review_kernel.enums import AccountKind, LedgerCategory, TransactionOrigin
from review_kernel.models.activity import ActivityInstance
from review_kernel.models.ledger import LedgerEntry, WalletAccount
from review_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class LedgerLine:
    """A single entry from the ledger view."""

    sequence: int
    transfer_id: UUID
    account_id: UUID
    owner_id: UUID
    account_kind: AccountKind
    amount: int
    category: LedgerCategory
    origin: TransactionOrigin
    activity_id: UUID | None
    description: str
    created_at: datetime


@dataclass(frozen=True)
class ConservationReport:
    ledger_total: int
    negative_accounts: tuple[UUID, ...]
    escrow_mismatches: tuple[UUID, ...]
    escrow_out_of_bounds: tuple[UUID, ...]

    @property
    def is_conserved(self) -> bool:
        return (
            self.ledger_total == 0
            and not self.negative_accounts
            and not self.escrow_mismatches
            and not self.escrow_out_of_bounds
        )


class LedgerSelector(BaseSelector[LedgerEntry]):
    """
    Selector for ledger queries -- the authoritative balance computation.

    Results are ordered by LedgerEntry.sequence ascending.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def account_balance(self, account_id: UUID) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .where(LedgerEntry.account_id == account_id)
        ).scalar_one()

    def wallet_balance(self, owner_id: UUID, kind: AccountKind = AccountKind.USER) -> int:
        """Balance of the owner's account of the given kind; 0 if it has none."""
        return self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
            .join(WalletAccount, WalletAccount.id == LedgerEntry.account_id)
            .where(
                WalletAccount.owner_id == owner_id,
                WalletAccount.kind == AccountKind(kind).value,
            )
        ).scalar_one()

    def escrow_balance(self, activity_id: UUID) -> int:
        """Escrow balance derived from the activity's escrow account entries."""
        return self.wallet_balance(activity_id, AccountKind.ESCROW)

    def entries(
        self,
        *,
        owner_id: UUID | None = None,
        activity_id: UUID | None = None,
        category: LedgerCategory | None = None,
    ) -> list[LedgerLine]:
        query = (
            select(LedgerEntry, WalletAccount)
            .join(WalletAccount, WalletAccount.id == LedgerEntry.account_id)
            .order_by(LedgerEntry.sequence)
        )
        if owner_id is not None:
            query = query.where(WalletAccount.owner_id == owner_id)
        if activity_id is not None:
            query = query.where(LedgerEntry.activity_id == activity_id)
        if category is not None:
            query = query.where(LedgerEntry.category == LedgerCategory(category).value)
        return [
            LedgerLine(
                sequence=entry.sequence,
                transfer_id=entry.transfer_id,
                account_id=entry.account_id,
                owner_id=account.owner_id,
                account_kind=AccountKind(account.kind),
                amount=entry.amount,
                category=LedgerCategory(entry.category),
                origin=TransactionOrigin(entry.origin),
                activity_id=entry.activity_id,
                description=entry.description,
                created_at=entry.created_at,
            )
            for entry, account in self.session.execute(query).all()
        ]

    def ledger_total(self) -> int:
        return self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.amount), 0))
        ).scalar_one()

    def verify_conservation(self) -> ConservationReport:
        """Check every conservation invariant over the whole ledger."""
        sums = dict(
            self.session.execute(
                select(LedgerEntry.account_id, func.sum(LedgerEntry.amount))
                .group_by(LedgerEntry.account_id)
            ).all()
        )
        accounts = self.session.execute(select(WalletAccount)).scalars().all()
        negative = tuple(
            a.id for a in accounts
            if a.kind != AccountKind.TREASURY and sums.get(a.id, 0) < 0
        )

        mismatches: list[UUID] = []
        out_of_bounds: list[UUID] = []
        for activity in self.session.execute(select(ActivityInstance)).scalars():
            derived = sums.get(activity.escrow_account_id, 0) if activity.escrow_account_id else 0
            if derived != activity.escrow_balance:
                mismatches.append(activity.id)
            if not 0 <= activity.escrow_balance <= activity.funding_amount:
                out_of_bounds.append(activity.id)

        return ConservationReport(
            ledger_total=sum(sums.values()),
            negative_accounts=negative,
            escrow_mismatches=tuple(mismatches),
            escrow_out_of_bounds=tuple(out_of_bounds),
        )

    def canonical_hash(self) -> str:
        """Deterministic SHA-256 over every entry in sequence order."""
        digest = hashlib.sha256()
        rows = self.session.execute(
            select(
                LedgerEntry.sequence,
                LedgerEntry.transfer_id,
                LedgerEntry.account_id,
                LedgerEntry.amount,
                LedgerEntry.category,
                LedgerEntry.activity_id,
            ).order_by(LedgerEntry.sequence)
        ).all()
        for row in rows:
            digest.update(json.dumps([str(v) for v in row], separators=(",", ":")).encode())
            digest.update(b"\n")
        return digest.hexdigest()
