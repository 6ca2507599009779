"""
Predicates -- implementations of every PredicateKind.

Responsibility:
    Each predicate reads activity-scoped state (reviews, memberships,
    finalization flags, the stage deadline) and answers one yes/no question.
    DEFAULT_PREDICATES is the fixed map from PredicateKind to implementation
    that the ConditionEvaluator dispatches through.

Architecture position:
    Kernel > Services.  Read-only: predicates never add, flush or commit.

Invariants enforced:
    - TYPED_CONDITIONS: a predicate receives the config dataclass parsed at
      template registration, never a raw mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from review_kernel.domain.conditions import (
    MinCountConfig,
    PredicateConfig,
    PredicateKind,
    RoundConfig,
)
from review_kernel.enums import ACTIVE_MEMBERSHIP_STATUSES, MembershipStatus
from review_kernel.models.participation import (
    AuthorResponse,
    AwardDistributionStatus,
    FinalizationStatus,
    ReviewSubmission,
)
from review_kernel.models.team import ReviewerMembership


@dataclass(frozen=True)
class PredicateContext:
    """Everything a predicate may look at for one evaluation."""

    session: Session
    activity_id: UUID
    activity_kind: str
    stage_key: str
    now: datetime
    creator_id: UUID
    reviewer_count: int
    stage_deadline: datetime | None = None


class Predicate(Protocol):
    def __call__(self, ctx: PredicateContext, config: PredicateConfig) -> bool: ...


def _active_reviewer_ids(ctx: PredicateContext) -> list[UUID]:
    return list(
        ctx.session.execute(
            select(ReviewerMembership.user_id).where(
                ReviewerMembership.activity_id == ctx.activity_id,
                ReviewerMembership.status.in_(
                    [s.value for s in ACTIVE_MEMBERSHIP_STATUSES]
                ),
            )
        ).scalars()
    )


def first_review_submitted(ctx: PredicateContext, config: RoundConfig) -> bool:
    count = ctx.session.execute(
        select(func.count(ReviewSubmission.id)).where(
            ReviewSubmission.activity_id == ctx.activity_id,
            ReviewSubmission.round_number == config.round_number,
        )
    ).scalar_one()
    return count >= 1


def min_reviewers_locked_in(ctx: PredicateContext, config: MinCountConfig) -> bool:
    count = ctx.session.execute(
        select(func.count(ReviewerMembership.id)).where(
            ReviewerMembership.activity_id == ctx.activity_id,
            ReviewerMembership.status == MembershipStatus.LOCKED_IN.value,
        )
    ).scalar_one()
    return count >= config.min_count


def all_reviews_submitted(ctx: PredicateContext, config: RoundConfig) -> bool:
    """Distinct active reviewers with a review in the round reach reviewer_count."""
    count = ctx.session.execute(
        select(func.count(func.distinct(ReviewSubmission.reviewer_id)))
        .join(
            ReviewerMembership,
            (ReviewerMembership.activity_id == ReviewSubmission.activity_id)
            & (ReviewerMembership.user_id == ReviewSubmission.reviewer_id),
        )
        .where(
            ReviewSubmission.activity_id == ctx.activity_id,
            ReviewSubmission.round_number == config.round_number,
            ReviewerMembership.status.in_([s.value for s in ACTIVE_MEMBERSHIP_STATUSES]),
        )
    ).scalar_one()
    return count >= ctx.reviewer_count


def author_response_submitted(ctx: PredicateContext, config: RoundConfig) -> bool:
    found = ctx.session.execute(
        select(AuthorResponse.id).where(
            AuthorResponse.activity_id == ctx.activity_id,
            AuthorResponse.round_number == config.round_number,
        )
    ).first()
    return found is not None


def all_finalized(ctx: PredicateContext, config: PredicateConfig) -> bool:
    reviewers = _active_reviewer_ids(ctx)
    if not reviewers:
        return False
    finalized = ctx.session.execute(
        select(func.count(FinalizationStatus.id)).where(
            FinalizationStatus.activity_id == ctx.activity_id,
            FinalizationStatus.user_id.in_(reviewers),
            FinalizationStatus.is_finalized.is_(True),
        )
    ).scalar_one()
    return finalized >= len(reviewers)


def all_awards_distributed(ctx: PredicateContext, config: PredicateConfig) -> bool:
    participants = {ctx.creator_id, *_active_reviewer_ids(ctx)}
    done = ctx.session.execute(
        select(func.count(AwardDistributionStatus.id)).where(
            AwardDistributionStatus.activity_id == ctx.activity_id,
            AwardDistributionStatus.user_id.in_(participants),
        )
    ).scalar_one()
    return done >= len(participants)


def deadline_reached(ctx: PredicateContext, config: PredicateConfig) -> bool:
    return ctx.stage_deadline is not None and ctx.stage_deadline <= ctx.now


def manual(ctx: PredicateContext, config: PredicateConfig) -> bool:
    # Reachable only through an explicit trigger of a manual edge
    return True


DEFAULT_PREDICATES: dict[PredicateKind, Predicate] = {
    PredicateKind.FIRST_REVIEW_SUBMITTED: first_review_submitted,
    PredicateKind.MIN_REVIEWERS_LOCKED_IN: min_reviewers_locked_in,
    PredicateKind.ALL_REVIEWS_SUBMITTED: all_reviews_submitted,
    PredicateKind.AUTHOR_RESPONSE_SUBMITTED: author_response_submitted,
    PredicateKind.ALL_FINALIZED: all_finalized,
    PredicateKind.ALL_AWARDS_DISTRIBUTED: all_awards_distributed,
    PredicateKind.DEADLINE_REACHED: deadline_reached,
    PredicateKind.MANUAL: manual,
}
