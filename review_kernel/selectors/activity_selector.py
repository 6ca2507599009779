"""
Module: review_kernel.selectors.activity_selector
Responsibility: Read-only queries over activities for the external sweep
    scheduler and for audit: active activities, activities past their stage
    deadline, stage history, and team membership views.
Architecture position: Kernel > Selectors.  May import from models/ and
    selectors/base.py.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Results are DTOs; no ORM instance leaves the selector.
    - Ordering is deterministic: activities by created_at then id, history by
      its per-activity sequence.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from review_kernel.enums import ActivityStatus, MembershipStatus, TransitionKind
from review_kernel.exceptions import ActivityNotFoundError
from review_kernel.models.activity import ActivityInstance, StageState, StateLogEntry
from review_kernel.models.team import ReviewerMembership
from review_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ActivitySummary:
    activity_id: UUID
    paper_ref: str
    template_id: UUID
    creator_id: UUID
    status: ActivityStatus
    stage_key: str
    entered_at: datetime
    stage_deadline: datetime | None
    funding_amount: int
    escrow_balance: int


@dataclass(frozen=True)
class StateLogView:
    sequence: int
    from_stage_key: str | None
    to_stage_key: str
    transition_kind: TransitionKind
    actor_id: UUID | None
    reason: str
    occurred_at: datetime


@dataclass(frozen=True)
class MembershipView:
    user_id: UUID
    status: MembershipStatus
    joined_at: datetime
    commitment_deadline: datetime | None
    final_rank: int | None
    total_points: int | None
    tokens_awarded: int | None


class ActivitySelector(BaseSelector[ActivityInstance]):
    """Selector for activity state and history."""

    def __init__(self, session: Session):
        super().__init__(session)

    def _summaries(self, query) -> list[ActivitySummary]:
        rows = self.session.execute(
            query.order_by(ActivityInstance.created_at, ActivityInstance.id)
        ).all()
        return [
            ActivitySummary(
                activity_id=activity.id,
                paper_ref=activity.paper_ref,
                template_id=activity.template_id,
                creator_id=activity.creator_id,
                status=ActivityStatus(activity.status),
                stage_key=state.stage_key,
                entered_at=state.entered_at,
                stage_deadline=state.stage_deadline,
                funding_amount=activity.funding_amount,
                escrow_balance=activity.escrow_balance,
            )
            for activity, state in rows
        ]

    def _base_query(self):
        return select(ActivityInstance, StageState).join(
            StageState, StageState.activity_id == ActivityInstance.id
        )

    def list_active_activities(self) -> list[ActivitySummary]:
        return self._summaries(
            self._base_query().where(ActivityInstance.status == ActivityStatus.ACTIVE.value)
        )

    def list_activities_past_deadline(self, now: datetime) -> list[ActivitySummary]:
        """Active activities whose current stage deadline is at or before ``now``."""
        return self._summaries(
            self._base_query().where(
                ActivityInstance.status == ActivityStatus.ACTIVE.value,
                StageState.stage_deadline.is_not(None),
                StageState.stage_deadline <= now,
            )
        )

    def get_summary(self, activity_id: UUID) -> ActivitySummary:
        found = self._summaries(
            self._base_query().where(ActivityInstance.id == activity_id)
        )
        if not found:
            raise ActivityNotFoundError(str(activity_id))
        return found[0]

    def state_history(self, activity_id: UUID) -> list[StateLogView]:
        rows = self.session.execute(
            select(StateLogEntry)
            .where(StateLogEntry.activity_id == activity_id)
            .order_by(StateLogEntry.sequence)
        ).scalars()
        return [
            StateLogView(
                sequence=row.sequence,
                from_stage_key=row.from_stage_key,
                to_stage_key=row.to_stage_key,
                transition_kind=TransitionKind(row.transition_kind),
                actor_id=row.actor_id,
                reason=row.reason,
                occurred_at=row.occurred_at,
            )
            for row in rows
        ]

    def memberships(self, activity_id: UUID) -> list[MembershipView]:
        rows = self.session.execute(
            select(ReviewerMembership)
            .where(ReviewerMembership.activity_id == activity_id)
            .order_by(ReviewerMembership.joined_at, ReviewerMembership.user_id)
        ).scalars()
        return [
            MembershipView(
                user_id=m.user_id,
                status=MembershipStatus(m.status),
                joined_at=m.joined_at,
                commitment_deadline=m.commitment_deadline,
                final_rank=m.final_rank,
                total_points=m.total_points,
                tokens_awarded=m.tokens_awarded,
            )
            for m in rows
        ]

    def membership(self, activity_id: UUID, user_id: UUID) -> MembershipView | None:
        found = [m for m in self.memberships(activity_id) if m.user_id == user_id]
        return found[0] if found else None
