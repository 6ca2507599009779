"""
Module: review_kernel.models.activity
Responsibility: ORM persistence for activity instances, their single runtime
    stage record, and the append-only stage history.
Architecture position: Kernel > Models.  May import from db/ and enums only.

Invariants enforced:
    - 0 <= escrow_balance <= funding_amount (CHECK constraints; the escrow
      ledger also checks under lock before every write).
    - Exactly one StageState per activity (UNIQUE activity_id).
    - StateLogEntry rows are append-only (db/immutability.py).
    - ActivityInstance and StageState carry optimistic version counters;
      a stale write raises StaleDataError, which the engine facade reports
      as ConcurrencyConflictError.

Failure modes:
    - IntegrityError on a second StageState for one activity.
    - ImmutabilityViolationError on UPDATE/DELETE of StateLogEntry.

Audit relevance:
    The StateLog is the full record of how an activity moved through its
    stage graph, by whom, and why.  Activities are never deleted.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from review_kernel.db.base import Base, TrackedBase, UUIDString
from review_kernel.enums import ActivityStatus, TransitionKind

if TYPE_CHECKING:
    from review_kernel.models.template import WorkflowTemplate


class ActivityInstance(TrackedBase):
    """
    One funded run of a template against a unit of work.

    escrow_balance mirrors the sum of the activity's escrow account entries.
    It is a read optimization maintained under the activity lock; the ledger
    entries remain the source of truth (see LedgerSelector.verify_conservation).
    """

    __tablename__ = "activity_instances"
    __table_args__ = (
        CheckConstraint("escrow_balance >= 0", name="ck_activity_escrow_non_negative"),
        CheckConstraint(
            "escrow_balance <= funding_amount", name="ck_activity_escrow_ceiling"
        ),
        Index("idx_activity_status", "status"),
    )

    paper_ref: Mapped[str] = mapped_column(String(200), nullable=False)
    template_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("workflow_templates.id"), nullable=False
    )
    activity_kind: Mapped[str] = mapped_column(String(50), nullable=False)
    creator_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    funding_amount: Mapped[int] = mapped_column(nullable=False)
    escrow_balance: Mapped[int] = mapped_column(nullable=False, default=0)
    escrow_account_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("wallet_accounts.id"), nullable=True
    )
    status: Mapped[ActivityStatus] = mapped_column(
        String(20), nullable=False, default=ActivityStatus.ACTIVE
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    template: Mapped["WorkflowTemplate"] = relationship()
    stage_state: Mapped["StageState"] = relationship(
        back_populates="activity", uselist=False
    )

    @property
    def is_active(self) -> bool:
        return self.status == ActivityStatus.ACTIVE

    def __repr__(self) -> str:
        return f"<ActivityInstance {self.id} {self.paper_ref} ({self.status})>"


class StageState(Base):
    """Runtime record of an activity's current stage.

    Every field is rewritten as a whole when a transition fires; the previous
    values survive only in the StateLog.
    """

    __tablename__ = "activity_stage_states"

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False, unique=True
    )
    stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    entered_at: Mapped[datetime] = mapped_column(nullable=False)
    stage_deadline: Mapped[datetime | None] = mapped_column(nullable=True)
    stage_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    activity: Mapped[ActivityInstance] = relationship(back_populates="stage_state")

    def __repr__(self) -> str:
        return f"<StageState {self.activity_id} @ {self.stage_key}>"


class StateLogEntry(Base):
    """Append-only record of one stage change."""

    __tablename__ = "activity_state_log"
    __table_args__ = (
        Index("idx_state_log_activity", "activity_id", "sequence"),
    )

    activity_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("activity_instances.id"), nullable=False
    )
    # Position within the activity's history, starting at 1
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    from_stage_key: Mapped[str | None] = mapped_column(String(100), nullable=True)
    to_stage_key: Mapped[str] = mapped_column(String(100), nullable=False)
    transition_kind: Mapped[TransitionKind] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    reason: Mapped[str] = mapped_column(String(1000), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<StateLogEntry {self.from_stage_key}->{self.to_stage_key}>"
