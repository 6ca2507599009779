"""
ReviewEngine -- the narrow operation surface of the review kernel.

Responsibility:
    Single entry point for request handlers and the periodic sweep.  Each
    mutating operation runs in one transaction: it takes every lock it needs
    in canonical order, re-reads the aggregate under lock, delegates to the
    kernel services, and commits on success or rolls back on failure.

Architecture position:
    Kernel > Services -- imperative shell, owns transaction boundaries.
    Every other service only flushes.

Operations:
    register_template / retire_template
    issue_tokens
    create_activity                 (creates and fully funds the escrow)
    join_team
    record_participant_action       (persist, then evaluate transitions)
    advance_activity                (evaluate transitions, e.g. from a sweep)
    trigger_transition / force_transition
    fund_escrow / transfer_from_escrow / deduct_from_wallet -> LedgerResult
    list_active_activities / list_activities_past_deadline
    state_history / memberships / wallet_balance / verify_conservation
    run_sweep -> SweepReport

Invariants enforced:
    - One transaction per mutating operation; no internal retry.
    - Lock failures and stale optimistic versions surface as
      ConcurrencyConflictError; any other unexpected fault surfaces as
      InternalEngineError with the original exception chained.

Failure modes:
    - Ledger primitives return LedgerResult.failure(error) instead of
      raising.  Every other operation raises a ReviewKernelError subclass.

Audit relevance:
    Every operation is logged with correlation_id, operation, activity_id,
    actor_id and duration_ms.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from review_kernel.db.types import require_positive
from review_kernel.domain.actions import ParticipantAction
from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.conditions import PredicateKind
from review_kernel.domain.dtos import (
    ActionOutcome,
    ActivityHandle,
    EngineOptions,
    ExpiredMembership,
    LedgerResult,
    Movement,
    SweepFailure,
    SweepReport,
    TransitionResult,
)
from review_kernel.domain.template_graph import TemplateSpec
from review_kernel.enums import AccountKind, ActivityStatus
from review_kernel.exceptions import (
    ActivityNotFoundError,
    ConcurrencyConflictError,
    InsufficientBalanceError,
    InternalEngineError,
    ReviewKernelError,
    TemplateRetiredError,
)
from review_kernel.logging_config import LogContext, get_logger
from review_kernel.models.activity import ActivityInstance
from review_kernel.selectors.activity_selector import (
    ActivitySelector,
    ActivitySummary,
    MembershipView,
    StateLogView,
)
from review_kernel.selectors.ledger_selector import ConservationReport, LedgerSelector
from review_kernel.services.award_ranking import AwardRankingService
from review_kernel.services.condition_evaluator import ConditionEvaluator
from review_kernel.services.escrow_ledger import EscrowLedgerService
from review_kernel.services.lock_service import LockService
from review_kernel.services.participation_service import ParticipationService
from review_kernel.services.predicates import Predicate
from review_kernel.services.reviewer_team import ReviewerTeamService
from review_kernel.services.sequence_service import SequenceService
from review_kernel.services.state_machine import ActivityStateMachine
from review_kernel.services.template_service import TemplateService

logger = get_logger("services.review_engine")

T = TypeVar("T")

_LOCK_PGCODES = frozenset({"40001", "40P01", "55P03"})


def _is_lock_failure(exc: OperationalError) -> bool:
    pgcode = getattr(exc.orig, "pgcode", None)
    if pgcode in _LOCK_PGCODES:
        return True
    text = str(exc.orig).lower()
    return "locked" in text or "deadlock" in text


class ReviewEngine:
    """
    Facade over the review kernel services.

    Contract:
        One ReviewEngine per session.  With auto_commit=True (default) every
        mutating operation commits or rolls back its own transaction and
        releases its locks.  With auto_commit=False the caller owns the
        transaction; locks are held until the caller commits or rolls back.
    """

    def __init__(
        self,
        session: Session,
        options: EngineOptions,
        clock: Clock | None = None,
        auto_commit: bool = True,
        lock_timeout_seconds: float | None = None,
        predicates: Mapping[PredicateKind, Predicate] | None = None,
    ):
        self._session = session
        self._options = options
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit

        self._locks = LockService(session, timeout_seconds=lock_timeout_seconds)
        self._templates = TemplateService(session, self._clock)
        self._ledger = EscrowLedgerService(session, self._clock, self._locks)
        self._team = ReviewerTeamService(session, self._clock, options.commitment_window)
        self._participation = ParticipationService(session, options, self._team, self._clock)
        self._ranking = AwardRankingService(
            session, self._ledger, self._team, options.platform_owner_id
        )
        self._machine = ActivityStateMachine(
            session,
            ConditionEvaluator(predicates),
            self._ledger,
            self._ranking,
            self._clock,
        )
        self._activities = ActivitySelector(session)
        self._ledger_view = LedgerSelector(session)

    @property
    def options(self) -> EngineOptions:
        return self._options

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def register_template(self, spec: TemplateSpec, actor_id: UUID) -> UUID:
        """Validate and store a template.  Returns its id."""
        compiled = self._run(
            "register_template",
            lambda: self._templates.register(spec, actor_id),
            actor_id=actor_id,
        )
        return compiled.template_id

    def retire_template(self, template_id: UUID, actor_id: UUID) -> None:
        self._run(
            "retire_template",
            lambda: self._templates.retire(template_id, actor_id),
            actor_id=actor_id,
        )

    def find_template(self, name: str, version: int | None = None) -> UUID:
        return self._templates.find_id(name, version)

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    def create_activity(
        self,
        paper_ref: str,
        template_id: UUID,
        funding_amount: int,
        creator_id: UUID,
    ) -> ActivityHandle:
        """Create an activity in its initial stage with escrow funded in full."""
        return self._run(
            "create_activity",
            lambda: self._create_activity(paper_ref, template_id, funding_amount, creator_id),
            actor_id=creator_id,
        )

    def _create_activity(
        self,
        paper_ref: str,
        template_id: UUID,
        funding_amount: int,
        creator_id: UUID,
    ) -> ActivityHandle:
        row = self._templates.get_row(template_id)
        if not row.is_active:
            raise TemplateRetiredError(str(template_id))
        compiled = self._templates.load(template_id)
        require_positive(funding_amount)

        wallet = self._ledger.find_account(creator_id, AccountKind.USER)
        if wallet is None:
            raise InsufficientBalanceError(str(creator_id), 0, funding_amount)

        activity_id = uuid4()
        escrow_account_id = uuid4()
        self._locks.acquire(
            wallets=[wallet.id],
            escrows=[escrow_account_id],
            activities=[activity_id],
            sequences=[SequenceService.LEDGER_ENTRY],
        )

        self._ledger.open_account(activity_id, AccountKind.ESCROW, account_id=escrow_account_id)
        activity = ActivityInstance(
            id=activity_id,
            paper_ref=paper_ref,
            template_id=template_id,
            activity_kind=compiled.spec.activity_kind,
            creator_id=creator_id,
            funding_amount=funding_amount,
            escrow_balance=0,
            escrow_account_id=escrow_account_id,
            status=ActivityStatus.ACTIVE.value,
            created_by_id=creator_id,
        )
        self._session.add(activity)
        self._session.flush()

        self._machine.start(activity, compiled, creator_id)
        self._ledger.fund_escrow(activity_id, creator_id, funding_amount, actor_id=creator_id)

        logger.info(
            "activity_created",
            extra={
                "activity_id": str(activity_id),
                "template_id": str(template_id),
                "funding_amount": funding_amount,
                "initial_stage": compiled.initial_stage.key,
            },
        )
        return ActivityHandle(
            activity_id=activity_id,
            initial_stage=compiled.initial_stage.key,
            escrow_balance=activity.escrow_balance,
        )

    def join_team(self, activity_id: UUID, user_id: UUID) -> MembershipView:
        def join() -> MembershipView:
            activity = self._lock(activity_id, with_ledger=False)
            compiled = self._templates.load(activity.template_id)
            self._team.join(activity, compiled, user_id)
            return self._activities.membership(activity_id, user_id)

        return self._run("join_team", join, activity_id=activity_id, actor_id=user_id)

    def record_participant_action(
        self,
        activity_id: UUID,
        user_id: UUID,
        action: ParticipantAction,
    ) -> ActionOutcome:
        """Persist the action's data, then evaluate the current stage's edges."""

        def record() -> ActionOutcome:
            activity = self._lock(activity_id)
            compiled = self._templates.load(activity.template_id)
            self._participation.record(activity, compiled, user_id, action)
            progression = self._machine.advance(
                activity, compiled, user_id, reason=f"after {action.name}"
            )
            return ActionOutcome(activity_id=activity_id, action=action.name, progression=progression)

        return self._run(
            "record_participant_action", record, activity_id=activity_id, actor_id=user_id
        )

    def advance_activity(self, activity_id: UUID, actor_id: UUID | None = None) -> TransitionResult:
        """Evaluate automatic edges without recording an action."""

        def advance() -> TransitionResult:
            activity = self._lock(activity_id)
            compiled = self._templates.load(activity.template_id)
            return self._machine.advance(activity, compiled, actor_id)

        return self._run("advance_activity", advance, activity_id=activity_id, actor_id=actor_id)

    def trigger_transition(
        self,
        activity_id: UUID,
        target_stage_key: str,
        actor_id: UUID,
        reason: str,
    ) -> TransitionResult:
        """Fire a manual edge from the current stage whose condition holds."""

        def trigger() -> TransitionResult:
            activity = self._lock(activity_id)
            compiled = self._templates.load(activity.template_id)
            return self._machine.trigger(activity, compiled, target_stage_key, actor_id, reason)

        return self._run("trigger_transition", trigger, activity_id=activity_id, actor_id=actor_id)

    def force_transition(
        self,
        activity_id: UUID,
        target_stage_key: str,
        actor_id: UUID,
        reason: str,
    ) -> TransitionResult:
        """Fire an existing edge regardless of its condition."""

        def force() -> TransitionResult:
            activity = self._lock(activity_id)
            compiled = self._templates.load(activity.template_id)
            return self._machine.force(activity, compiled, target_stage_key, actor_id, reason)

        return self._run("force_transition", force, activity_id=activity_id, actor_id=actor_id)

    # ------------------------------------------------------------------
    # Ledger primitives
    # ------------------------------------------------------------------

    def issue_tokens(self, user_id: UUID, amount: int, actor_id: UUID | None = None) -> LedgerResult:
        return self._ledger_op(
            "issue_tokens",
            lambda: self._ledger.issue_tokens(
                self._options.treasury_owner_id, user_id, amount, actor_id
            ),
            actor_id=actor_id,
        )

    def fund_escrow(self, activity_id: UUID, user_id: UUID, amount: int) -> LedgerResult:
        return self._ledger_op(
            "fund_escrow",
            lambda: self._ledger.fund_escrow(activity_id, user_id, amount),
            activity_id=activity_id,
            actor_id=user_id,
        )

    def transfer_from_escrow(
        self,
        activity_id: UUID,
        receiver_id: UUID,
        amount: int,
        actor_id: UUID | None = None,
    ) -> LedgerResult:
        return self._ledger_op(
            "transfer_from_escrow",
            lambda: self._ledger.transfer_from_escrow(
                activity_id, receiver_id, amount, actor_id=actor_id
            ),
            activity_id=activity_id,
            actor_id=actor_id,
        )

    def deduct_from_wallet(
        self,
        user_id: UUID,
        amount: int,
        activity_ref: UUID | None = None,
    ) -> LedgerResult:
        return self._ledger_op(
            "deduct_from_wallet",
            lambda: self._ledger.deduct_from_wallet(
                user_id, amount, self._options.platform_owner_id, activity_ref
            ),
            activity_id=activity_ref,
            actor_id=user_id,
        )

    # ------------------------------------------------------------------
    # Read paths
    # ------------------------------------------------------------------

    def list_active_activities(self) -> list[ActivitySummary]:
        return self._activities.list_active_activities()

    def list_activities_past_deadline(self, now: datetime | None = None) -> list[ActivitySummary]:
        return self._activities.list_activities_past_deadline(now or self._clock.now())

    def get_activity(self, activity_id: UUID) -> ActivitySummary:
        return self._activities.get_summary(activity_id)

    def state_history(self, activity_id: UUID) -> list[StateLogView]:
        return self._activities.state_history(activity_id)

    def memberships(self, activity_id: UUID) -> list[MembershipView]:
        return self._activities.memberships(activity_id)

    def wallet_balance(self, owner_id: UUID, kind: AccountKind = AccountKind.USER) -> int:
        return self._ledger_view.wallet_balance(owner_id, kind)

    def escrow_balance(self, activity_id: UUID) -> int:
        return self._ledger_view.escrow_balance(activity_id)

    def verify_conservation(self) -> ConservationReport:
        return self._ledger_view.verify_conservation()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def run_sweep(self) -> SweepReport:
        """Expire commitments and advance activities past their deadline.

        Each activity is handled in its own transaction; a failure is
        recorded in the report and the sweep moves on.
        """
        now = self._clock.now()
        candidates = list(dict.fromkeys(
            [*self._team.activities_with_expired_commitments(now),
             *(a.activity_id for a in self._activities.list_activities_past_deadline(now))]
        ))
        logger.info("sweep_started", extra={"candidates": len(candidates)})

        expired: list[ExpiredMembership] = []
        advanced: list[TransitionResult] = []
        failures: list[SweepFailure] = []
        for activity_id in candidates:
            try:
                removed, result = self._run(
                    "sweep_activity",
                    lambda activity_id=activity_id: self._sweep_one(activity_id),
                    activity_id=activity_id,
                )
            except ReviewKernelError as exc:
                failures.append(SweepFailure(activity_id, exc.code, exc.kind))
                continue
            expired.extend(removed)
            if result.advanced:
                advanced.append(result)

        report = SweepReport(
            expired_memberships=tuple(expired),
            advanced=tuple(advanced),
            failures=tuple(failures),
        )
        logger.info(
            "sweep_completed",
            extra={
                "expired_memberships": len(expired),
                "advanced": len(advanced),
                "failures": len(failures),
            },
        )
        return report

    def _sweep_one(self, activity_id: UUID) -> tuple[list[ExpiredMembership], TransitionResult]:
        activity = self._lock(activity_id)
        compiled = self._templates.load(activity.template_id)
        removed = self._team.expire_commitments(activity_id)
        result = self._machine.advance(activity, compiled, None, reason="sweep")
        return removed, result

    # ------------------------------------------------------------------
    # Transaction plumbing
    # ------------------------------------------------------------------

    def _lock(self, activity_id: UUID, with_ledger: bool = True) -> ActivityInstance:
        activity = self._session.get(ActivityInstance, activity_id)
        if activity is None:
            raise ActivityNotFoundError(str(activity_id))
        return self._locks.lock_activity(
            activity_id,
            activity.escrow_account_id,
            sequences=[SequenceService.LEDGER_ENTRY] if with_ledger else (),
        )

    def _ledger_op(self, operation: str, fn: Callable[[], Movement], **context) -> LedgerResult:
        try:
            movement = self._run(operation, fn, **context)
        except ReviewKernelError as exc:
            return LedgerResult.failure(exc)
        return LedgerResult.success(movement.new_balances, movement.transfer_id)

    def _run(
        self,
        operation: str,
        fn: Callable[[], T],
        activity_id: UUID | None = None,
        actor_id: UUID | None = None,
    ) -> T:
        with LogContext.bind(
            correlation_id=uuid4(),
            operation=operation,
            activity_id=activity_id,
            actor_id=actor_id,
        ):
            logger.info(f"{operation}_started")
            t0 = time.monotonic()
            try:
                result = fn()
                if self._auto_commit:
                    self._session.commit()
            except Exception as exc:
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                if self._auto_commit:
                    self._session.rollback()
                error = self._translate(operation, exc)
                logger.error(
                    f"{operation}_failed",
                    extra={
                        "duration_ms": duration_ms,
                        "error_code": error.code,
                        "error_kind": error.kind.value,
                    },
                    exc_info=True,
                )
                if error is exc:
                    raise
                raise error from exc

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(f"{operation}_completed", extra={"duration_ms": duration_ms})
            return result

    @staticmethod
    def _translate(operation: str, exc: Exception) -> ReviewKernelError:
        if isinstance(exc, ReviewKernelError):
            return exc
        if isinstance(exc, StaleDataError):
            return ConcurrencyConflictError(operation, str(exc))
        if isinstance(exc, OperationalError) and _is_lock_failure(exc):
            return ConcurrencyConflictError(operation, str(exc.orig))
        return InternalEngineError(operation, type(exc).__name__, str(exc))
