"""
ReviewEngine boundary behaviour: transaction handling, error translation,
operation logging, template lifecycle, read paths, and the sweep.
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from review_kernel.domain.actions import SubmitReview
from review_kernel.domain.conditions import PredicateKind
from review_kernel.domain.dtos import LedgerStatus
from review_kernel.enums import ActivityStatus
from review_kernel.exceptions import (
    ActivityNotFoundError,
    ConcurrencyConflictError,
    DuplicateTemplateError,
    ErrorKind,
    InternalEngineError,
    NonPositiveAmountError,
    TemplateNotFoundError,
    TemplateRetiredError,
    TemplateValidationError,
)
from review_kernel.services.predicates import DEFAULT_PREDICATES
from review_kernel.services.review_engine import ReviewEngine


def _failing_first_review(bad_activity_id):
    """A predicate map whose first_review_submitted raises for one activity."""
    real = DEFAULT_PREDICATES[PredicateKind.FIRST_REVIEW_SUBMITTED]

    def first_review_submitted(ctx, config):
        if ctx.activity_id == bad_activity_id:
            raise RuntimeError("predicate backend unavailable")
        return real(ctx, config)

    return {**DEFAULT_PREDICATES, PredicateKind.FIRST_REVIEW_SUBMITTED: first_review_submitted}


class TestTemplates:

    def test_find_template_by_name(self, review_engine, template_id):
        assert review_engine.find_template("standard_review") == template_id
        assert review_engine.find_template("standard_review", 1) == template_id

    def test_find_template_picks_highest_version(
        self, review_engine, template_id, template_builder, test_actor_id
    ):
        newer = review_engine.register_template(template_builder(version=2), test_actor_id)
        assert review_engine.find_template("standard_review") == newer

    def test_unknown_template(self, review_engine):
        with pytest.raises(TemplateNotFoundError):
            review_engine.find_template("no_such_template")

    def test_duplicate_version_rejected(
        self, review_engine, template_id, template_spec, test_actor_id
    ):
        with pytest.raises(DuplicateTemplateError):
            review_engine.register_template(template_spec, test_actor_id)

    def test_invalid_template_rejected(self, review_engine, template_builder, test_actor_id):
        with pytest.raises(TemplateValidationError) as exc_info:
            review_engine.register_template(
                template_builder(reviewer_count=0), test_actor_id
            )
        assert "REVIEWER_COUNT" in {issue.code for issue in exc_info.value.issues}
        with pytest.raises(TemplateNotFoundError):
            review_engine.find_template("standard_review")

    def test_retired_template_refuses_new_activities(
        self, review_engine, template_id, activity_id, creator_id, test_actor_id
    ):
        review_engine.retire_template(template_id, test_actor_id)

        with pytest.raises(TemplateRetiredError):
            review_engine.create_activity("doi:10.1234/other", template_id, 10, creator_id)
        # Running activities keep their template
        review_engine.join_team(activity_id, uuid4())
        assert review_engine.get_activity(activity_id).status == ActivityStatus.ACTIVE


class TestCreateActivity:

    def test_create_funds_escrow_in_full(self, review_engine, template_id, creator_id):
        handle = review_engine.create_activity("doi:10.1234/abc", template_id, 10, creator_id)

        assert handle.initial_stage == "posted"
        assert handle.escrow_balance == 10
        assert review_engine.escrow_balance(handle.activity_id) == 10
        assert review_engine.wallet_balance(creator_id) == 40
        summary = review_engine.get_activity(handle.activity_id)
        assert summary.paper_ref == "doi:10.1234/abc"
        assert summary.funding_amount == 10
        assert summary.creator_id == creator_id

    def test_non_positive_funding_rejected(self, review_engine, template_id, creator_id):
        with pytest.raises(NonPositiveAmountError):
            review_engine.create_activity("doi:10.1234/abc", template_id, 0, creator_id)
        assert review_engine.list_active_activities() == []

    def test_unknown_activity(self, review_engine):
        with pytest.raises(ActivityNotFoundError):
            review_engine.get_activity(uuid4())


class TestLedgerResults:

    def test_success_reports_new_balances(self, review_engine, test_actor_id):
        user_id = uuid4()
        result = review_engine.issue_tokens(user_id, 25, test_actor_id)

        assert result.status == LedgerStatus.SUCCESS
        assert result.new_balances[user_id] == 25
        assert result.transfer_id is not None
        assert result.error is None

    def test_failure_is_returned_not_raised(self, review_engine, test_actor_id):
        result = review_engine.issue_tokens(uuid4(), 0, test_actor_id)

        assert result.status == LedgerStatus.FAILED
        assert result.error_kind == ErrorKind.VALIDATION
        assert result.error_code == "NON_POSITIVE_AMOUNT"
        assert "positive" in result.reason


class TestErrorTranslation:

    def test_stale_version_becomes_concurrency_conflict(
        self, review_engine, template_id, session, monkeypatch, test_actor_id
    ):
        def stale_commit():
            raise StaleDataError("version mismatch on workflow_templates")

        monkeypatch.setattr(session, "commit", stale_commit)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            review_engine.retire_template(template_id, test_actor_id)
        assert isinstance(exc_info.value.__cause__, StaleDataError)

    def test_lock_timeout_becomes_concurrency_conflict(
        self, review_engine, template_id, session, monkeypatch, test_actor_id
    ):
        def locked_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "commit", locked_commit)
        with pytest.raises(ConcurrencyConflictError) as exc_info:
            review_engine.retire_template(template_id, test_actor_id)
        assert exc_info.value.kind == ErrorKind.CONCURRENCY_CONFLICT
        assert exc_info.value.operation == "retire_template"

    def test_unexpected_fault_becomes_internal_error(
        self, review_engine, session, activity_id, engine_options, clock
    ):
        broken = ReviewEngine(
            session, engine_options, clock=clock, predicates=_failing_first_review(activity_id)
        )
        with pytest.raises(InternalEngineError) as exc_info:
            broken.advance_activity(activity_id)

        assert exc_info.value.original_type == "RuntimeError"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert review_engine.get_activity(activity_id).stage_key == "posted"

    def test_failed_operation_rolls_back(
        self, review_engine, activity_id, reviewers, session, engine_options, clock
    ):
        broken = ReviewEngine(
            session, engine_options, clock=clock, predicates=_failing_first_review(activity_id)
        )
        with pytest.raises(InternalEngineError):
            broken.record_participant_action(activity_id, reviewers[0], SubmitReview(content="x"))

        # The review row was rolled back with the failed evaluation
        outcome = review_engine.record_participant_action(
            activity_id, reviewers[0], SubmitReview(content="x")
        )
        assert outcome.progression.stage_key == "review_1"


class TestOperationLogging:

    def test_operation_logs_carry_context(
        self, review_engine, template_id, creator_id, captured_logs
    ):
        handle = review_engine.create_activity("doi:10.1234/log", template_id, 10, creator_id)
        review_engine.join_team(handle.activity_id, uuid4())

        records = captured_logs()
        by_message = {r["message"]: r for r in records}
        assert "create_activity_started" in by_message
        completed = by_message["join_team_completed"]
        assert completed["operation"] == "join_team"
        assert completed["activity_id"] == str(handle.activity_id)
        assert "correlation_id" in completed
        assert completed["duration_ms"] >= 0
        assert by_message["activity_created"]["funding_amount"] == 10

    def test_failure_log_carries_error_code(self, review_engine, captured_logs):
        with pytest.raises(ActivityNotFoundError):
            review_engine.join_team(uuid4(), uuid4())

        failed = [r for r in captured_logs() if r["message"] == "join_team_failed"]
        assert len(failed) == 1
        assert failed[0]["level"] == "ERROR"
        assert failed[0]["error_code"] == "ACTIVITY_NOT_FOUND"
        assert failed[0]["exc_code"] == "ACTIVITY_NOT_FOUND"
        assert failed[0]["exc_kind"] == "not_found"

    def test_correlation_id_differs_per_operation(
        self, review_engine, test_actor_id, captured_logs
    ):
        review_engine.issue_tokens(uuid4(), 5, test_actor_id)
        review_engine.issue_tokens(uuid4(), 5, test_actor_id)

        ids = {r["correlation_id"] for r in captured_logs() if r["message"] == "issue_tokens_completed"}
        assert len(ids) == 2


class TestReadPaths:

    def test_active_and_past_deadline_lists(
        self, review_engine, template_id, creator_id, activity_id, clock
    ):
        clock.advance(days=1)
        later = review_engine.create_activity("doi:10.1234/later", template_id, 10, creator_id)

        active = {s.activity_id for s in review_engine.list_active_activities()}
        assert active == {activity_id, later.activity_id}

        clock.advance(days=13)
        overdue = review_engine.list_activities_past_deadline()
        assert [s.activity_id for s in overdue] == [activity_id]
        assert review_engine.list_activities_past_deadline(clock.now() + timedelta(days=1)) != []

    def test_finished_activities_leave_active_list(
        self, review_engine, activity_id, test_actor_id
    ):
        review_engine.force_transition(activity_id, "cancelled", test_actor_id, "spam")
        assert review_engine.list_active_activities() == []
        assert review_engine.list_activities_past_deadline() == []


class TestSweep:

    def test_sweep_isolates_failures(
        self, review_engine, session, template_id, creator_id, engine_options, clock
    ):
        bad = review_engine.create_activity("doi:10.1234/bad", template_id, 10, creator_id)
        good = review_engine.create_activity("doi:10.1234/good", template_id, 10, creator_id)
        clock.advance(days=14)

        broken = ReviewEngine(
            session, engine_options, clock=clock,
            predicates=_failing_first_review(bad.activity_id),
        )
        report = broken.run_sweep()

        assert [f.activity_id for f in report.failures] == [bad.activity_id]
        assert report.failures[0].error_code == "INTERNAL_ENGINE_ERROR"
        assert report.failures[0].error_kind == ErrorKind.INTERNAL
        assert [r.activity_id for r in report.advanced] == [good.activity_id]
        assert review_engine.get_activity(good.activity_id).status == ActivityStatus.CANCELLED
        assert review_engine.get_activity(bad.activity_id).status == ActivityStatus.ACTIVE
        assert review_engine.wallet_balance(creator_id) == 40

    def test_empty_sweep(self, review_engine):
        report = review_engine.run_sweep()
        assert report.expired_memberships == ()
        assert report.advanced == ()
        assert report.failures == ()
