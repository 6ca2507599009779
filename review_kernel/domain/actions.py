"""
Participant actions accepted by ``ReviewEngine.record_participant_action``.

Each action is a frozen value object.  The engine persists the action's
domain data and then re-evaluates the activity's outgoing transitions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Union
from uuid import UUID

from review_kernel.enums import AwardKind


@dataclass(frozen=True)
class SubmitReview:
    name: ClassVar[str] = "submit_review"

    content: str
    round_number: int = 1


@dataclass(frozen=True)
class SubmitAuthorResponse:
    name: ClassVar[str] = "submit_author_response"

    content: str
    round_number: int = 1


@dataclass(frozen=True)
class UpdateAssessment:
    """Replace the collaborative assessment text; clears all finalizations."""

    name: ClassVar[str] = "update_assessment"

    content: str


@dataclass(frozen=True)
class FinalizeAssessment:
    name: ClassVar[str] = "finalize_assessment"


@dataclass(frozen=True)
class GiveAward:
    name: ClassVar[str] = "give_award"

    receiver_id: UUID
    award_kind: AwardKind


@dataclass(frozen=True)
class CompleteAwardDistribution:
    name: ClassVar[str] = "complete_award_distribution"


ParticipantAction = Union[
    SubmitReview,
    SubmitAuthorResponse,
    UpdateAssessment,
    FinalizeAssessment,
    GiveAward,
    CompleteAwardDistribution,
]
