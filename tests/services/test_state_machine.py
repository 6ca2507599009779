"""
Stage progression through ReviewEngine.

Covers automatic cascades after participant actions, deadline edges,
manual triggers, forced transitions, cancellation refunds, and the
append-only state history.
"""

from datetime import timedelta

import pytest

from review_kernel.domain.actions import FinalizeAssessment, SubmitReview, UpdateAssessment
from review_kernel.enums import ActivityStatus, TransitionKind
from review_kernel.exceptions import (
    ActionNotAllowedError,
    ActivityNotActiveError,
    InvalidTransitionError,
)


def _submit(engine, activity_id, reviewer, round_number=1):
    return engine.record_participant_action(
        activity_id, reviewer, SubmitReview(content=f"review by {reviewer}", round_number=round_number)
    )


@pytest.fixture
def in_assessment(review_engine, activity_id, reviewers):
    for reviewer in reviewers:
        _submit(review_engine, activity_id, reviewer)
    assert review_engine.get_activity(activity_id).stage_key == "assessment"
    return activity_id


class TestInitialStage:

    def test_activity_starts_in_initial_stage(self, review_engine, activity_id, clock):
        summary = review_engine.get_activity(activity_id)
        assert summary.stage_key == "posted"
        assert summary.status == ActivityStatus.ACTIVE
        assert summary.entered_at == clock.now()
        assert summary.stage_deadline == clock.now() + timedelta(days=14)

    def test_history_starts_with_initial_entry(self, review_engine, activity_id, creator_id):
        history = review_engine.state_history(activity_id)
        assert len(history) == 1
        assert history[0].sequence == 1
        assert history[0].from_stage_key is None
        assert history[0].to_stage_key == "posted"
        assert history[0].transition_kind == TransitionKind.INITIAL
        assert history[0].actor_id == creator_id

    def test_no_edge_fires_without_activity(self, review_engine, activity_id):
        result = review_engine.advance_activity(activity_id)
        assert not result.advanced
        assert result.stage_key == "posted"


class TestAutomaticTransitions:

    def test_review_round_waits_for_every_seat(self, review_engine, activity_id, reviewers):
        first = _submit(review_engine, activity_id, reviewers[0])
        assert [(f.from_stage, f.to_stage) for f in first.progression.fired] == [
            ("posted", "review_1")
        ]

        second = _submit(review_engine, activity_id, reviewers[1])
        assert not second.progression.advanced
        assert review_engine.get_activity(activity_id).stage_key == "review_1"

        third = _submit(review_engine, activity_id, reviewers[2])
        assert [(f.from_stage, f.to_stage) for f in third.progression.fired] == [
            ("review_1", "assessment")
        ]
        assert third.progression.stage_key == "assessment"
        assert review_engine.get_activity(activity_id).stage_key == "assessment"

    def test_fired_transition_resets_stage_state(
        self, review_engine, activity_id, reviewers, clock
    ):
        clock.advance(hours=5)
        outcome = _submit(review_engine, activity_id, reviewers[0])

        fired = outcome.progression.fired[0]
        assert fired.kind == TransitionKind.AUTOMATIC
        assert fired.occurred_at == clock.now()
        assert fired.new_deadline == clock.now() + timedelta(days=7)
        summary = review_engine.get_activity(activity_id)
        assert summary.entered_at == clock.now()
        assert summary.stage_deadline == clock.now() + timedelta(days=7)

    def test_deadline_edge_fires_on_advance(self, review_engine, activity_id, reviewers, clock):
        _submit(review_engine, activity_id, reviewers[0])
        clock.advance(days=6)
        assert not review_engine.advance_activity(activity_id).advanced

        clock.advance(days=1)
        result = review_engine.advance_activity(activity_id)
        assert result.stage_key == "assessment"
        assert review_engine.list_activities_past_deadline() == []

    def test_posting_expires_without_reviews(
        self, review_engine, activity_id, creator_id, clock
    ):
        clock.advance(days=14)
        result = review_engine.advance_activity(activity_id)

        assert result.stage_key == "cancelled"
        summary = review_engine.get_activity(activity_id)
        assert summary.status == ActivityStatus.CANCELLED
        assert summary.escrow_balance == 0
        assert review_engine.wallet_balance(creator_id) == 50

    def test_history_is_sequential(self, review_engine, activity_id, reviewers):
        for reviewer in reviewers:
            _submit(review_engine, activity_id, reviewer)

        history = review_engine.state_history(activity_id)
        assert [h.sequence for h in history] == [1, 2, 3]
        assert [h.to_stage_key for h in history] == ["posted", "review_1", "assessment"]
        assert history[1].from_stage_key == "posted"
        assert history[2].actor_id == reviewers[2]


class TestAssessmentFinalization:

    def test_all_reviewers_finalizing_moves_to_awards(self, review_engine, in_assessment, reviewers):
        for reviewer in reviewers[:2]:
            outcome = review_engine.record_participant_action(
                in_assessment, reviewer, FinalizeAssessment()
            )
            assert not outcome.progression.advanced

        outcome = review_engine.record_participant_action(
            in_assessment, reviewers[2], FinalizeAssessment()
        )
        assert outcome.progression.stage_key == "awards"

    def test_update_clears_every_finalization(self, review_engine, in_assessment, reviewers):
        review_engine.record_participant_action(in_assessment, reviewers[0], FinalizeAssessment())
        review_engine.record_participant_action(in_assessment, reviewers[1], FinalizeAssessment())
        review_engine.record_participant_action(
            in_assessment, reviewers[2], UpdateAssessment(content="revised summary")
        )

        outcome = review_engine.record_participant_action(
            in_assessment, reviewers[2], FinalizeAssessment()
        )
        assert outcome.progression.stage_key == "assessment"

        for reviewer in reviewers[:2]:
            outcome = review_engine.record_participant_action(
                in_assessment, reviewer, FinalizeAssessment()
            )
        assert outcome.progression.stage_key == "awards"


class TestManualAndForcedTransitions:

    def test_trigger_manual_cancel_refunds_creator(
        self, review_engine, activity_id, reviewers, creator_id, test_actor_id, clock
    ):
        _submit(review_engine, activity_id, reviewers[0])
        result = review_engine.trigger_transition(
            activity_id, "cancelled", test_actor_id, "paper withdrawn"
        )

        assert result.fired[0].kind == TransitionKind.MANUAL
        summary = review_engine.get_activity(activity_id)
        assert summary.status == ActivityStatus.CANCELLED
        assert summary.escrow_balance == 0
        assert review_engine.wallet_balance(creator_id) == 50
        last = review_engine.state_history(activity_id)[-1]
        assert last.reason == "paper withdrawn"
        assert last.actor_id == test_actor_id

    def test_trigger_automatic_edge_rejected(
        self, review_engine, activity_id, reviewers, test_actor_id
    ):
        _submit(review_engine, activity_id, reviewers[0])
        with pytest.raises(InvalidTransitionError, match="automatic"):
            review_engine.trigger_transition(activity_id, "assessment", test_actor_id, "hurry")

    def test_trigger_unknown_stage(self, review_engine, activity_id, test_actor_id):
        with pytest.raises(InvalidTransitionError) as exc_info:
            review_engine.trigger_transition(activity_id, "published", test_actor_id, "x")
        assert exc_info.value.reason == "unknown stage"

    def test_force_requires_an_edge(self, review_engine, activity_id, test_actor_id):
        with pytest.raises(InvalidTransitionError) as exc_info:
            review_engine.force_transition(activity_id, "awards", test_actor_id, "skip ahead")
        assert exc_info.value.reason == "no edge in the template graph"
        assert review_engine.get_activity(activity_id).stage_key == "posted"

    def test_force_bypasses_condition(
        self, review_engine, activity_id, reviewers, test_actor_id
    ):
        _submit(review_engine, activity_id, reviewers[0])
        result = review_engine.force_transition(
            activity_id, "assessment", test_actor_id, "enough reviews"
        )
        assert result.fired[0].kind == TransitionKind.FORCED
        assert result.stage_key == "assessment"

    def test_finished_activity_never_transitions(
        self, review_engine, activity_id, test_actor_id
    ):
        review_engine.force_transition(activity_id, "cancelled", test_actor_id, "spam")
        with pytest.raises(ActivityNotActiveError):
            review_engine.force_transition(activity_id, "review_1", test_actor_id, "undo")
        assert not review_engine.advance_activity(activity_id).advanced
        assert len(review_engine.state_history(activity_id)) == 2

    def test_actions_rejected_after_cancellation(
        self, review_engine, activity_id, reviewers, test_actor_id
    ):
        review_engine.force_transition(activity_id, "cancelled", test_actor_id, "spam")
        with pytest.raises(ActivityNotActiveError):
            _submit(review_engine, activity_id, reviewers[0])

    def test_review_outside_review_stage_rejected(
        self, review_engine, in_assessment, reviewers
    ):
        with pytest.raises(ActionNotAllowedError):
            _submit(review_engine, in_assessment, reviewers[0], round_number=2)
        assert review_engine.get_activity(in_assessment).stage_key == "assessment"
