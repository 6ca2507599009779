"""
Module: review_kernel.models.participation
Responsibility: ORM persistence for the activity-scoped facts that condition
    predicates read: review submissions, author responses, assessment
    finalization flags, and award distribution completion.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One review per (activity, reviewer, round).
    - One author response per (activity, round).
    - One finalization flag and one distribution flag per (activity, user).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import Boolean, ForeignKey, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from review_kernel.db.base import Base, UUIDString


class ReviewSubmission(Base):
    __tablename__ = "review_submissions"
    __table_args__ = (
        UniqueConstraint(
            "activity_id", "reviewer_id", "round_number", name="uq_review_round"
        ),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    reviewer_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)


class AuthorResponse(Base):
    __tablename__ = "author_responses"
    __table_args__ = (
        UniqueConstraint("activity_id", "round_number", name="uq_author_response_round"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    author_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    round_number: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    submitted_at: Mapped[datetime] = mapped_column(nullable=False)


class FinalizationStatus(Base):
    """A reviewer's approval of the current collaborative assessment.

    Cleared whenever the assessment content changes or the activity
    changes stage.
    """

    __tablename__ = "finalization_statuses"
    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_finalization_user"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    is_finalized: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    finalized_at: Mapped[datetime | None] = mapped_column(nullable=True)


class AwardDistributionStatus(Base):
    """Marks a participant as done handing out awards."""

    __tablename__ = "award_distribution_statuses"
    __table_args__ = (
        UniqueConstraint("activity_id", "user_id", name="uq_award_distribution_user"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(nullable=False)
