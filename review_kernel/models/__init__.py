"""ORM models for the review kernel."""

from review_kernel.models.activity import ActivityInstance, StageState, StateLogEntry
from review_kernel.models.ledger import LedgerEntry, SequenceCounter, WalletAccount
from review_kernel.models.participation import (
    AuthorResponse,
    AwardDistributionStatus,
    FinalizationStatus,
    ReviewSubmission,
)
from review_kernel.models.team import AwardRecord, ReviewerMembership
from review_kernel.models.template import (
    RankReward,
    StageDefinition,
    TransitionDefinition,
    WorkflowTemplate,
)

__all__ = [
    "ActivityInstance",
    "StageState",
    "StateLogEntry",
    "LedgerEntry",
    "SequenceCounter",
    "WalletAccount",
    "AuthorResponse",
    "AwardDistributionStatus",
    "FinalizationStatus",
    "ReviewSubmission",
    "AwardRecord",
    "ReviewerMembership",
    "RankReward",
    "StageDefinition",
    "TransitionDefinition",
    "WorkflowTemplate",
]
