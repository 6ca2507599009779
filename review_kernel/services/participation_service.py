"""
ParticipationService -- persists participant actions.

Responsibility:
    Validates each participant action against the activity's current stage
    and the actor's role, then records its domain data: review submissions,
    author responses, the collaborative assessment, finalization flags,
    awards and award-distribution completion.  Progression is not decided
    here; the engine re-evaluates transitions after the action is stored.

Architecture position:
    Kernel > Services.  The caller holds the activity lock.

Invariants enforced:
    - A review is accepted in the open-enrollment stage (round 1) or in a
      review round with the same round number, once per reviewer per round,
      and locks the reviewer in.
    - Any change to the assessment content clears every finalization flag.
    - One award per (giver, kind); no self-awards; the receiver is an active
      reviewer; the creator's awards weigh author_award_points.

Failure modes:
    - ActionNotAllowedError when the stage does not accept the action.
    - NotAParticipantError, SelfAwardError, DuplicateAwardError,
      DuplicateSubmissionError for role and uniqueness violations.
"""

from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from review_kernel.domain.actions import (
    CompleteAwardDistribution,
    FinalizeAssessment,
    GiveAward,
    ParticipantAction,
    SubmitAuthorResponse,
    SubmitReview,
    UpdateAssessment,
)
from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.dtos import EngineOptions
from review_kernel.domain.template_graph import CompiledTemplate, StageSpec
from review_kernel.enums import ActivityStatus, AwardKind, StageType
from review_kernel.exceptions import (
    ActionNotAllowedError,
    ActivityNotActiveError,
    DuplicateAwardError,
    DuplicateSubmissionError,
    NotAParticipantError,
    SelfAwardError,
)
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance
from review_kernel.models.participation import (
    AuthorResponse,
    AwardDistributionStatus,
    FinalizationStatus,
    ReviewSubmission,
)
from review_kernel.models.team import AwardRecord
from review_kernel.services.base import BaseService
from review_kernel.services.reviewer_team import ReviewerTeamService

logger = get_logger("services.participation")


def clear_finalizations(session: Session, activity_id: UUID) -> int:
    """Reset every finalization flag of an activity.  Returns rows changed."""
    result = session.execute(
        update(FinalizationStatus)
        .where(
            FinalizationStatus.activity_id == activity_id,
            FinalizationStatus.is_finalized.is_(True),
        )
        .values(is_finalized=False, finalized_at=None)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


class ParticipationService(BaseService[ReviewSubmission]):

    def __init__(
        self,
        session: Session,
        options: EngineOptions,
        team: ReviewerTeamService,
        clock: Clock | None = None,
    ):
        super().__init__(session)
        self._options = options
        self._team = team
        self._clock = clock or SystemClock()
        self._handlers = {
            SubmitReview: self._submit_review,
            SubmitAuthorResponse: self._submit_author_response,
            UpdateAssessment: self._update_assessment,
            FinalizeAssessment: self._finalize_assessment,
            GiveAward: self._give_award,
            CompleteAwardDistribution: self._complete_award_distribution,
        }

    def record(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        user_id: UUID,
        action: ParticipantAction,
    ) -> None:
        handler = self._handlers.get(type(action))
        if handler is None:
            raise ActionNotAllowedError(
                type(action).__name__, activity.stage_state.stage_key, "unknown action"
            )
        if not activity.is_active:
            raise ActivityNotActiveError(str(activity.id), ActivityStatus(activity.status).value)
        stage = template.stage(activity.stage_state.stage_key)
        handler(activity, stage, user_id, action)
        self.session.flush()
        logger.info(
            "participant_action_recorded",
            extra={"action": action.name, "stage_key": stage.key, "user_id": str(user_id)},
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _submit_review(self, activity, stage: StageSpec, user_id: UUID, action: SubmitReview):
        open_round = stage.stage_type == StageType.POSTED and action.round_number == 1
        review_round = (
            stage.stage_type == StageType.REVIEW_ROUND
            and (stage.round_number or 1) == action.round_number
        )
        if not (open_round or review_round):
            raise ActionNotAllowedError(
                action.name, stage.key, f"round {action.round_number} is not open for reviews"
            )
        membership = self._team.require_active(activity.id, user_id)

        duplicate = self.session.execute(
            select(ReviewSubmission.id).where(
                ReviewSubmission.activity_id == activity.id,
                ReviewSubmission.reviewer_id == user_id,
                ReviewSubmission.round_number == action.round_number,
            )
        ).first()
        if duplicate is not None:
            raise DuplicateSubmissionError(str(activity.id), str(user_id), action.round_number)

        self.session.add(
            ReviewSubmission(
                activity_id=activity.id,
                reviewer_id=user_id,
                round_number=action.round_number,
                content=action.content,
                submitted_at=self._clock.now(),
            )
        )
        self._team.lock_in(membership)

    def _submit_author_response(
        self, activity, stage: StageSpec, user_id: UUID, action: SubmitAuthorResponse
    ):
        if user_id != activity.creator_id:
            raise NotAParticipantError(str(activity.id), str(user_id), "author")
        if (
            stage.stage_type != StageType.AUTHOR_RESPONSE
            or (stage.round_number or 1) != action.round_number
        ):
            raise ActionNotAllowedError(
                action.name, stage.key, f"no author response open for round {action.round_number}"
            )
        duplicate = self.session.execute(
            select(AuthorResponse.id).where(
                AuthorResponse.activity_id == activity.id,
                AuthorResponse.round_number == action.round_number,
            )
        ).first()
        if duplicate is not None:
            raise DuplicateSubmissionError(str(activity.id), str(user_id), action.round_number)

        self.session.add(
            AuthorResponse(
                activity_id=activity.id,
                author_id=user_id,
                round_number=action.round_number,
                content=action.content,
                submitted_at=self._clock.now(),
            )
        )

    def _update_assessment(self, activity, stage: StageSpec, user_id: UUID, action: UpdateAssessment):
        self._require_stage(stage, StageType.COLLABORATIVE_ASSESSMENT, action.name)
        self._team.require_active(activity.id, user_id)

        state = activity.stage_state
        data = dict(state.stage_data or {})
        data["assessment"] = action.content
        data["assessment_revision"] = int(data.get("assessment_revision", 0)) + 1
        data["assessment_updated_by"] = str(user_id)
        state.stage_data = data

        cleared = clear_finalizations(self.session, activity.id)
        if cleared:
            logger.info("finalizations_invalidated", extra={"cleared": cleared})

    def _finalize_assessment(
        self, activity, stage: StageSpec, user_id: UUID, action: FinalizeAssessment
    ):
        self._require_stage(stage, StageType.COLLABORATIVE_ASSESSMENT, action.name)
        self._team.require_active(activity.id, user_id)

        flag = self.session.execute(
            select(FinalizationStatus).where(
                FinalizationStatus.activity_id == activity.id,
                FinalizationStatus.user_id == user_id,
            )
        ).scalar_one_or_none()
        if flag is None:
            flag = FinalizationStatus(activity_id=activity.id, user_id=user_id)
            self.session.add(flag)
        flag.is_finalized = True
        flag.finalized_at = self._clock.now()

    def _give_award(self, activity, stage: StageSpec, user_id: UUID, action: GiveAward):
        self._require_stage(stage, StageType.AWARD_DISTRIBUTION, action.name)
        is_author = user_id == activity.creator_id
        if not is_author:
            giver = self._team.find(activity.id, user_id)
            if giver is None or not giver.is_active:
                raise NotAParticipantError(str(activity.id), str(user_id), "participant")
        if action.receiver_id == user_id:
            raise SelfAwardError(str(user_id))
        receiver = self._team.find(activity.id, action.receiver_id)
        if receiver is None or not receiver.is_active:
            raise NotAParticipantError(str(activity.id), str(action.receiver_id), "reviewer")
        if self._distribution_done(activity.id, user_id):
            raise ActionNotAllowedError(action.name, stage.key, "award distribution already completed")

        award_kind = AwardKind(action.award_kind)
        duplicate = self.session.execute(
            select(AwardRecord.id).where(
                AwardRecord.activity_id == activity.id,
                AwardRecord.giver_id == user_id,
                AwardRecord.award_kind == award_kind.value,
            )
        ).first()
        if duplicate is not None:
            raise DuplicateAwardError(str(activity.id), str(user_id), award_kind.value)

        points = (
            self._options.author_award_points if is_author
            else self._options.reviewer_award_points
        )
        self.session.add(
            AwardRecord(
                activity_id=activity.id,
                giver_id=user_id,
                receiver_id=action.receiver_id,
                award_kind=award_kind.value,
                points=points,
                granted_at=self._clock.now(),
            )
        )

    def _complete_award_distribution(
        self, activity, stage: StageSpec, user_id: UUID, action: CompleteAwardDistribution
    ):
        self._require_stage(stage, StageType.AWARD_DISTRIBUTION, action.name)
        if user_id != activity.creator_id:
            member = self._team.find(activity.id, user_id)
            if member is None or not member.is_active:
                raise NotAParticipantError(str(activity.id), str(user_id), "participant")
        if self._distribution_done(activity.id, user_id):
            return
        self.session.add(
            AwardDistributionStatus(
                activity_id=activity.id,
                user_id=user_id,
                completed_at=self._clock.now(),
            )
        )

    # ------------------------------------------------------------------

    def _distribution_done(self, activity_id: UUID, user_id: UUID) -> bool:
        return self.session.execute(
            select(AwardDistributionStatus.id).where(
                AwardDistributionStatus.activity_id == activity_id,
                AwardDistributionStatus.user_id == user_id,
            )
        ).first() is not None

    @staticmethod
    def _require_stage(stage: StageSpec, stage_type: StageType, action_name: str) -> None:
        if stage.stage_type != stage_type:
            raise ActionNotAllowedError(
                action_name, stage.key, f"requires a {stage_type.value} stage"
            )
