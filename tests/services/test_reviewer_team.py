"""
Reviewer team membership: joining, lock-in, and commitment timeouts.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from review_kernel.domain.actions import SubmitReview
from review_kernel.enums import MembershipStatus
from review_kernel.exceptions import (
    ActivityNotActiveError,
    ActivityNotFoundError,
    AuthorCannotReviewError,
    DuplicateMembershipError,
    EnrollmentClosedError,
    NotAParticipantError,
    TeamFullError,
)
from review_kernel.models.team import ReviewerMembership


def _membership_row(session, activity_id, user_id) -> ReviewerMembership:
    return session.execute(
        select(ReviewerMembership).where(
            ReviewerMembership.activity_id == activity_id,
            ReviewerMembership.user_id == user_id,
        )
    ).scalar_one()


class TestJoin:

    def test_join_opens_commitment_window(self, review_engine, activity_id, clock):
        user_id = uuid4()
        view = review_engine.join_team(activity_id, user_id)

        assert view.user_id == user_id
        assert view.status == MembershipStatus.JOINED
        assert view.joined_at == clock.now()
        assert view.commitment_deadline == clock.now() + timedelta(hours=72)
        assert view.final_rank is None

    def test_team_capacity_is_reviewer_count(self, review_engine, activity_id, reviewers):
        with pytest.raises(TeamFullError):
            review_engine.join_team(activity_id, uuid4())
        assert len(review_engine.memberships(activity_id)) == 3

    def test_creator_cannot_join(self, review_engine, activity_id, creator_id):
        with pytest.raises(AuthorCannotReviewError):
            review_engine.join_team(activity_id, creator_id)

    def test_duplicate_join_rejected(self, review_engine, activity_id):
        user_id = uuid4()
        review_engine.join_team(activity_id, user_id)
        with pytest.raises(DuplicateMembershipError):
            review_engine.join_team(activity_id, user_id)

    def test_enrollment_closes_after_posted_stage(self, review_engine, activity_id, reviewers):
        review_engine.record_participant_action(
            activity_id, reviewers[0], SubmitReview(content="first")
        )
        with pytest.raises(EnrollmentClosedError):
            review_engine.join_team(activity_id, uuid4())

    def test_join_finished_activity_rejected(self, review_engine, activity_id, test_actor_id):
        review_engine.force_transition(activity_id, "cancelled", test_actor_id, "withdrawn")
        with pytest.raises(ActivityNotActiveError):
            review_engine.join_team(activity_id, uuid4())

    def test_join_unknown_activity(self, review_engine):
        with pytest.raises(ActivityNotFoundError):
            review_engine.join_team(uuid4(), uuid4())

    def test_review_requires_membership(self, review_engine, activity_id):
        with pytest.raises(NotAParticipantError):
            review_engine.record_participant_action(
                activity_id, uuid4(), SubmitReview(content="drive-by")
            )


class TestLockIn:

    def test_first_review_locks_in(self, review_engine, activity_id, reviewers):
        review_engine.record_participant_action(
            activity_id, reviewers[0], SubmitReview(content="first")
        )
        views = {m.user_id: m for m in review_engine.memberships(activity_id)}
        assert views[reviewers[0]].status == MembershipStatus.LOCKED_IN
        assert views[reviewers[0]].commitment_deadline is None
        assert views[reviewers[1]].status == MembershipStatus.JOINED

    def test_locked_in_reviewer_survives_sweep(self, review_engine, activity_id, reviewers, clock):
        review_engine.record_participant_action(
            activity_id, reviewers[0], SubmitReview(content="first")
        )
        clock.advance(hours=73)
        report = review_engine.run_sweep()

        expired = {m.user_id for m in report.expired_memberships}
        assert reviewers[0] not in expired
        assert expired == {reviewers[1], reviewers[2]}


class TestCommitmentTimeout:

    def test_timed_out_seat_is_freed(self, review_engine, activity_id, session, clock):
        early = uuid4()
        review_engine.join_team(activity_id, early)
        clock.advance(hours=48)
        late = [uuid4(), uuid4()]
        for user_id in late:
            review_engine.join_team(activity_id, user_id)
        with pytest.raises(TeamFullError):
            review_engine.join_team(activity_id, uuid4())

        clock.advance(hours=25)
        report = review_engine.run_sweep()

        assert [m.user_id for m in report.expired_memberships] == [early]
        assert report.failures == ()
        row = _membership_row(session, activity_id, early)
        assert row.status == MembershipStatus.REMOVED
        assert row.removal_reason == "timeout"
        assert row.commitment_deadline is None

        newcomer = uuid4()
        view = review_engine.join_team(activity_id, newcomer)
        assert view.status == MembershipStatus.JOINED

    def test_removed_reviewer_cannot_rejoin(self, review_engine, activity_id, clock):
        user_id = uuid4()
        review_engine.join_team(activity_id, user_id)
        clock.advance(hours=72)
        review_engine.run_sweep()

        with pytest.raises(DuplicateMembershipError):
            review_engine.join_team(activity_id, user_id)

    def test_sweep_before_deadline_is_noop(self, review_engine, activity_id, reviewers, clock):
        clock.advance(hours=71)
        report = review_engine.run_sweep()
        assert report.expired_memberships == ()
        assert report.advanced == ()
        assert all(m.status == MembershipStatus.JOINED for m in review_engine.memberships(activity_id))
