"""
ActivityStateMachine -- applies stage transitions to one activity.

Responsibility:
    Moves an activity through its template's stage graph.  Automatic edges
    are evaluated in transition_order and the first satisfied edge fires;
    after a fire the new stage's automatic edges are evaluated again until
    none fires or a terminal stage is reached.  Manual edges fire only on an
    explicit trigger whose condition holds.  A forced transition bypasses
    the condition but never the graph.

Architecture position:
    Kernel > Services.  Called by ReviewEngine after every participant
    action, by the sweep, and for manual/forced transitions.  The caller
    holds the activity lock, taken with the ledger sequence so settlement
    and refunds can post entries without taking new locks.

Invariants enforced:
    - APPEND_ONLY_HISTORY: every fire appends one StateLogEntry.
    - On fire the StageState is rewritten whole: key, entered_at, deadline
      (entered_at + deadline_days, or none), empty stage data.  Finalization
      flags are cleared.
    - Entering a completed stage settles the escrow (rank payouts, leftover
      sweep) before the stage is written.  Entering a cancelled stage
      refunds the remaining escrow to the creator first.
    - A terminal activity never transitions again.

Failure modes:
    - InvalidTransitionError when the target is not an outgoing edge of the
      current stage, or when a trigger names an automatic edge.
    - ActionNotAllowedError when a triggered manual edge's condition is false.
    - ActivityNotActiveError for transitions on a finished activity.
    - Evaluator StructuralErrors propagate unchanged.
"""

from datetime import timedelta
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.dtos import FiredTransition, SettlementReport, TransitionResult
from review_kernel.domain.template_graph import CompiledTemplate, StageSpec, TransitionSpec
from review_kernel.enums import (
    ActivityStatus,
    LedgerCategory,
    StageType,
    TransactionOrigin,
    TransitionKind,
)
from review_kernel.exceptions import (
    ActionNotAllowedError,
    ActivityNotActiveError,
    InvalidTransitionError,
)
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance, StageState, StateLogEntry
from review_kernel.services.award_ranking import AwardRankingService
from review_kernel.services.base import BaseService
from review_kernel.services.condition_evaluator import ConditionEvaluator
from review_kernel.services.escrow_ledger import EscrowLedgerService
from review_kernel.services.participation_service import clear_finalizations
from review_kernel.services.predicates import PredicateContext

logger = get_logger("services.state_machine")


class ActivityStateMachine(BaseService[StageState]):

    def __init__(
        self,
        session: Session,
        evaluator: ConditionEvaluator,
        ledger: EscrowLedgerService,
        ranking: AwardRankingService,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._evaluator = evaluator
        self._ledger = ledger
        self._ranking = ranking
        self._clock = clock or SystemClock()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        actor_id: UUID,
    ) -> StageState:
        """Place a new activity in its template's initial stage."""
        initial = template.initial_stage
        now = self._clock.now()
        state = StageState(
            activity_id=activity.id,
            stage_key=initial.key,
            entered_at=now,
            stage_deadline=self._deadline(initial, now),
            stage_data={},
            is_complete=False,
        )
        self.session.add(state)
        self._append_log(activity.id, None, initial.key, TransitionKind.INITIAL, actor_id,
                         "activity created")
        self.session.flush()
        return state

    def advance(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        actor_id: UUID | None = None,
        reason: str = "condition satisfied",
    ) -> TransitionResult:
        """Fire satisfied automatic edges until the activity settles."""
        if not activity.is_active:
            return TransitionResult(activity.id, activity.stage_state.stage_key)
        return self._cascade(activity, template, actor_id, reason, fired=[], settlement=None)

    def trigger(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        target_stage_key: str,
        actor_id: UUID,
        reason: str,
    ) -> TransitionResult:
        """Fire a manual edge whose condition holds, then cascade."""
        edge = self._require_edge(activity, template, target_stage_key)
        if edge.is_automatic:
            raise InvalidTransitionError(
                str(activity.id), edge.from_stage, target_stage_key,
                "edge is automatic and cannot be triggered",
            )
        if not self._evaluator.evaluate(edge.condition, self.context(activity, template)):
            raise ActionNotAllowedError(
                "trigger_transition", edge.from_stage, "transition condition is not satisfied"
            )
        fired, settlement = self._fire(activity, template, edge.to_stage,
                                       TransitionKind.MANUAL, actor_id, reason)
        return self._cascade(activity, template, actor_id, "condition satisfied",
                             fired=[fired], settlement=settlement)

    def force(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        target_stage_key: str,
        actor_id: UUID,
        reason: str,
    ) -> TransitionResult:
        """Fire an existing edge without evaluating its condition, then cascade."""
        edge = self._require_edge(activity, template, target_stage_key)
        fired, settlement = self._fire(activity, template, edge.to_stage,
                                       TransitionKind.FORCED, actor_id, reason)
        return self._cascade(activity, template, actor_id, "condition satisfied",
                             fired=[fired], settlement=settlement)

    def context(self, activity: ActivityInstance, template: CompiledTemplate) -> PredicateContext:
        state = activity.stage_state
        return PredicateContext(
            session=self.session,
            activity_id=activity.id,
            activity_kind=activity.activity_kind,
            stage_key=state.stage_key,
            now=self._clock.now(),
            creator_id=activity.creator_id,
            reviewer_count=template.spec.reviewer_count,
            stage_deadline=state.stage_deadline,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cascade(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        actor_id: UUID | None,
        reason: str,
        fired: list[FiredTransition],
        settlement: SettlementReport | None,
    ) -> TransitionResult:
        # The graph is acyclic, so this loop is bounded by the stage count
        while activity.is_active:
            ctx = self.context(activity, template)
            edge = next(
                (
                    e for e in template.edges_from(ctx.stage_key)
                    if e.is_automatic and self._evaluator.evaluate(e.condition, ctx)
                ),
                None,
            )
            if edge is None:
                break
            step, report = self._fire(activity, template, edge.to_stage,
                                      TransitionKind.AUTOMATIC, actor_id, reason)
            fired.append(step)
            settlement = report or settlement
        return TransitionResult(
            activity_id=activity.id,
            stage_key=activity.stage_state.stage_key,
            fired=tuple(fired),
            settlement=settlement,
        )

    def _require_edge(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        target_stage_key: str,
    ) -> TransitionSpec:
        if not activity.is_active:
            raise ActivityNotActiveError(str(activity.id), ActivityStatus(activity.status).value)
        current = activity.stage_state.stage_key
        edge = template.edge(current, target_stage_key)
        if edge is None:
            reason = (
                "unknown stage" if target_stage_key not in template.stages_by_key
                else "no edge in the template graph"
            )
            raise InvalidTransitionError(str(activity.id), current, target_stage_key, reason)
        return edge

    def _fire(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        to_stage_key: str,
        kind: TransitionKind,
        actor_id: UUID | None,
        reason: str,
    ) -> tuple[FiredTransition, SettlementReport | None]:
        target = template.stage(to_stage_key)
        from_stage_key = activity.stage_state.stage_key

        settlement = None
        if target.is_terminal and target.stage_type == StageType.COMPLETED:
            settlement = self._ranking.settle(activity, template, actor_id)
        elif target.is_terminal and activity.escrow_balance > 0:
            self._ledger.transfer_from_escrow(
                activity.id,
                activity.creator_id,
                activity.escrow_balance,
                category=LedgerCategory.REFUND,
                origin=TransactionOrigin.SYSTEM,
                actor_id=actor_id,
            )

        now = self._clock.now()
        state = activity.stage_state
        state.stage_key = target.key
        state.entered_at = now
        state.stage_deadline = self._deadline(target, now)
        state.stage_data = {}
        state.is_complete = target.is_terminal
        self._append_log(activity.id, from_stage_key, target.key, kind, actor_id, reason)
        clear_finalizations(self.session, activity.id)

        if target.is_terminal:
            activity.status = (
                ActivityStatus.COMPLETED.value
                if target.stage_type == StageType.COMPLETED
                else ActivityStatus.CANCELLED.value
            )
            activity.completed_at = now
        self.session.flush()

        logger.info(
            "stage_transition_fired",
            extra={
                "from_stage": from_stage_key,
                "to_stage": target.key,
                "transition_kind": kind.value,
                "stage_deadline": state.stage_deadline,
            },
        )
        return (
            FiredTransition(
                from_stage=from_stage_key,
                to_stage=target.key,
                kind=kind,
                occurred_at=now,
                new_deadline=state.stage_deadline,
            ),
            settlement,
        )

    def _append_log(
        self,
        activity_id: UUID,
        from_stage_key: str | None,
        to_stage_key: str,
        kind: TransitionKind,
        actor_id: UUID | None,
        reason: str,
    ) -> None:
        last = self.session.execute(
            select(func.coalesce(func.max(StateLogEntry.sequence), 0)).where(
                StateLogEntry.activity_id == activity_id
            )
        ).scalar_one()
        self.session.add(
            StateLogEntry(
                activity_id=activity_id,
                sequence=last + 1,
                from_stage_key=from_stage_key,
                to_stage_key=to_stage_key,
                transition_kind=kind.value,
                actor_id=actor_id,
                reason=reason[:1000],
                occurred_at=self._clock.now(),
            )
        )

    @staticmethod
    def _deadline(stage: StageSpec, now):
        if stage.deadline_days is None:
            return None
        return now + timedelta(days=stage.deadline_days)
