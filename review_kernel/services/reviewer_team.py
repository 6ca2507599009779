"""
ReviewerTeamService -- reviewer membership lifecycle.

Responsibility:
    Joins reviewers to an activity's team, locks them in, removes them, and
    expires commitments that passed their deadline without a lock-in.

Architecture position:
    Kernel > Services.  The caller holds the activity lock.

Invariants enforced:
    - Joins only while the activity is active and in an open-enrollment
      stage, below reviewer_count active members, never for the creator,
      and at most once per user.
    - commitment_deadline = joined_at + commitment window; cleared on
      lock-in and removal.
    - Status changes follow domain/membership.py.

Failure modes:
    - ActivityNotActiveError, EnrollmentClosedError, TeamFullError,
      AuthorCannotReviewError, DuplicateMembershipError on join.
    - NotAParticipantError when an active membership is required and absent.
"""

from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.dtos import ExpiredMembership
from review_kernel.domain.membership import TIMEOUT_REASON, can_transition
from review_kernel.domain.template_graph import CompiledTemplate
from review_kernel.enums import (
    ACTIVE_MEMBERSHIP_STATUSES,
    ENROLLMENT_STAGE_TYPES,
    ActivityStatus,
    MembershipStatus,
)
from review_kernel.exceptions import (
    ActivityNotActiveError,
    AuthorCannotReviewError,
    DuplicateMembershipError,
    EnrollmentClosedError,
    InternalEngineError,
    NotAParticipantError,
    TeamFullError,
)
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance
from review_kernel.models.team import ReviewerMembership
from review_kernel.services.base import BaseService

logger = get_logger("services.reviewer_team")

_ACTIVE = [s.value for s in ACTIVE_MEMBERSHIP_STATUSES]


class ReviewerTeamService(BaseService[ReviewerMembership]):

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        commitment_window: timedelta = timedelta(hours=72),
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._commitment_window = commitment_window

    def join(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        user_id: UUID,
    ) -> ReviewerMembership:
        """Add a reviewer.  The activity must be locked by the caller."""
        if not activity.is_active:
            raise ActivityNotActiveError(str(activity.id), ActivityStatus(activity.status).value)
        stage_key = activity.stage_state.stage_key
        if template.stage(stage_key).stage_type not in ENROLLMENT_STAGE_TYPES:
            raise EnrollmentClosedError(str(activity.id), stage_key)
        if user_id == activity.creator_id:
            raise AuthorCannotReviewError(str(activity.id), str(user_id))
        if self.find(activity.id, user_id) is not None:
            raise DuplicateMembershipError(str(activity.id), str(user_id))

        capacity = template.spec.reviewer_count
        if self.active_count(activity.id) >= capacity:
            raise TeamFullError(str(activity.id), capacity)

        now = self._clock.now()
        membership = ReviewerMembership(
            activity_id=activity.id,
            user_id=user_id,
            status=MembershipStatus.JOINED.value,
            joined_at=now,
            commitment_deadline=now + self._commitment_window,
        )
        self.session.add(membership)
        self.session.flush()
        logger.info(
            "reviewer_joined",
            extra={
                "user_id": str(user_id),
                "commitment_deadline": membership.commitment_deadline,
            },
        )
        return membership

    def lock_in(self, membership: ReviewerMembership) -> None:
        if membership.status == MembershipStatus.LOCKED_IN:
            return
        self._move(membership, MembershipStatus.LOCKED_IN)
        membership.locked_in_at = self._clock.now()
        membership.commitment_deadline = None
        self.session.flush()
        logger.info("reviewer_locked_in", extra={"user_id": str(membership.user_id)})

    def remove(self, membership: ReviewerMembership, reason: str) -> None:
        self._move(membership, MembershipStatus.REMOVED)
        membership.removed_at = self._clock.now()
        membership.removal_reason = reason
        membership.commitment_deadline = None
        self.session.flush()
        logger.info(
            "reviewer_removed",
            extra={"user_id": str(membership.user_id), "reason": reason},
        )

    def complete(self, membership: ReviewerMembership) -> None:
        self._move(membership, MembershipStatus.COMPLETED)
        membership.commitment_deadline = None

    def expire_commitments(self, activity_id: UUID) -> list[ExpiredMembership]:
        """Remove every joined reviewer whose commitment deadline has passed."""
        now = self._clock.now()
        expired = self.session.execute(
            select(ReviewerMembership)
            .where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.status == MembershipStatus.JOINED.value,
                ReviewerMembership.commitment_deadline.is_not(None),
                ReviewerMembership.commitment_deadline <= now,
            )
            .order_by(ReviewerMembership.joined_at)
        ).scalars().all()
        for membership in expired:
            self.remove(membership, TIMEOUT_REASON)
        return [ExpiredMembership(activity_id=activity_id, user_id=m.user_id) for m in expired]

    def activities_with_expired_commitments(self, now: datetime) -> list[UUID]:
        return list(
            self.session.execute(
                select(ReviewerMembership.activity_id)
                .join(ActivityInstance, ActivityInstance.id == ReviewerMembership.activity_id)
                .where(
                    ActivityInstance.status == ActivityStatus.ACTIVE.value,
                    ReviewerMembership.status == MembershipStatus.JOINED.value,
                    ReviewerMembership.commitment_deadline.is_not(None),
                    ReviewerMembership.commitment_deadline <= now,
                )
                .distinct()
            ).scalars()
        )

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def find(self, activity_id: UUID, user_id: UUID) -> ReviewerMembership | None:
        return self.session.execute(
            select(ReviewerMembership).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.user_id == user_id,
            )
        ).scalar_one_or_none()

    def require_active(self, activity_id: UUID, user_id: UUID) -> ReviewerMembership:
        membership = self.find(activity_id, user_id)
        if membership is None or not membership.is_active:
            raise NotAParticipantError(str(activity_id), str(user_id), "reviewer")
        return membership

    def active_members(self, activity_id: UUID) -> list[ReviewerMembership]:
        return list(
            self.session.execute(
                select(ReviewerMembership)
                .where(
                    ReviewerMembership.activity_id == activity_id,
                    ReviewerMembership.status.in_(_ACTIVE),
                )
                .order_by(ReviewerMembership.joined_at, ReviewerMembership.user_id)
            ).scalars()
        )

    def active_count(self, activity_id: UUID) -> int:
        return self.session.execute(
            select(func.count(ReviewerMembership.id)).where(
                ReviewerMembership.activity_id == activity_id,
                ReviewerMembership.status.in_(_ACTIVE),
            )
        ).scalar_one()

    def _move(self, membership: ReviewerMembership, target: MembershipStatus) -> None:
        if not can_transition(membership.status, target):
            raise InternalEngineError(
                operation="membership_transition",
                original_type="IllegalMembershipTransition",
                detail=f"{membership.status} -> {target.value} for {membership.user_id}",
            )
        membership.status = target.value
