"""
Module: review_kernel.models.team
Responsibility: ORM persistence for reviewer memberships and award records.
Architecture position: Kernel > Models.  May import from db/ and enums only.

Invariants enforced:
    - One membership per (activity, user); a removed reviewer cannot rejoin.
    - commitment_deadline is set while JOINED and cleared on lock-in.
    - One award per (activity, giver, award kind).
    - AwardRecord rows are append-only (db/immutability.py).

Failure modes:
    - IntegrityError on a duplicate membership or award.

Audit relevance:
    final_rank and tokens_awarded record the outcome of the ranking run next
    to the reward payout ledger entries.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from review_kernel.db.base import Base, UUIDString
from review_kernel.enums import ACTIVE_MEMBERSHIP_STATUSES, AwardKind, MembershipStatus


class ReviewerMembership(Base):
    """A reviewer's seat on an activity's team."""

    __tablename__ = "reviewer_memberships"
    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_membership_activity_user"),
        Index("idx_membership_commitment", "status", "commitment_deadline"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    status: Mapped[MembershipStatus] = mapped_column(
        String(20), nullable=False, default=MembershipStatus.JOINED
    )
    joined_at: Mapped[datetime] = mapped_column(nullable=False)
    commitment_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_in_at: Mapped[datetime | None] = mapped_column(nullable=True)
    removed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    removal_reason: Mapped[str | None] = mapped_column(String(200), nullable=True)
    final_rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_points: Mapped[int | None] = mapped_column(nullable=True)
    tokens_awarded: Mapped[int | None] = mapped_column(nullable=True)

    @property
    def is_active(self) -> bool:
        return MembershipStatus(self.status) in ACTIVE_MEMBERSHIP_STATUSES

    def __repr__(self) -> str:
        return f"<ReviewerMembership {self.user_id} on {self.activity_id} ({self.status})>"


class AwardRecord(Base):
    """Points granted by one participant to a reviewer."""

    __tablename__ = "award_records"
    __table_args__ = (
        UniqueConstraint(
            "activity_id", "giver_id", "award_kind", name="uq_award_giver_kind"
        ),
        Index("idx_award_receiver", "activity_id", "receiver_id"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    giver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    receiver_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    award_kind: Mapped[AwardKind] = mapped_column(String(40), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False)
    granted_at: Mapped[datetime] = mapped_column(nullable=False)
