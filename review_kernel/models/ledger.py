"""
Module: review_kernel.models.ledger
Responsibility: ORM persistence for wallet accounts, the append-only token
    ledger, and the named sequence counters that order it.
Architecture position: Kernel > Models.  May import from db/ and enums only.

Invariants enforced:
    - No stored balance exists on WalletAccount.  A balance is always the
      SUM of the account's LedgerEntry amounts.
    - Every movement writes two entries sharing one transfer_id whose
      amounts sum to zero; the whole ledger therefore sums to zero.
    - LedgerEntry rows are append-only (db/immutability.py).
    - sequence is unique and strictly increasing in commit order per
      counter (SequenceService under lock).
    - One account per (owner_id, kind).  The escrow account of an activity
      uses the activity id as owner_id.

Failure modes:
    - IntegrityError on duplicate (owner_id, kind) or duplicate sequence.
    - ImmutabilityViolationError on UPDATE/DELETE of LedgerEntry.

Audit relevance:
    The ledger is the sole source of truth for every token balance.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from review_kernel.db.base import Base, UUIDString
from review_kernel.enums import AccountKind, LedgerCategory, TransactionOrigin


class WalletAccount(Base):
    """A balance holder: a user, the platform, the treasury, or an escrow."""

    __tablename__ = "wallet_accounts"
    __table_args__ = (
        UniqueConstraint("owner_id", "kind", name="uq_wallet_owner_kind"),
    )

    owner_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    kind: Mapped[AccountKind] = mapped_column(String(20), nullable=False)
    opened_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<WalletAccount {self.kind} owner={self.owner_id}>"


class LedgerEntry(Base):
    """One signed side of a token movement."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("sequence", name="uq_ledger_sequence"),
        Index("idx_ledger_account", "account_id"),
        Index("idx_ledger_activity", "activity_id"),
        Index("idx_ledger_transfer", "transfer_id"),
    )

    sequence: Mapped[int] = mapped_column(nullable=False)
    transfer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("wallet_accounts.id"), nullable=False
    )
    counterparty_account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("wallet_accounts.id"), nullable=False
    )
    # Negative = debit, positive = credit
    amount: Mapped[int] = mapped_column(nullable=False)
    category: Mapped[LedgerCategory] = mapped_column(String(30), nullable=False)
    origin: Mapped[TransactionOrigin] = mapped_column(String(20), nullable=False)
    activity_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerEntry #{self.sequence} {self.amount:+d} {self.category}>"


class SequenceCounter(Base):
    """Named monotonic counter.  Incremented only under its lock."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(nullable=False, default=0)
