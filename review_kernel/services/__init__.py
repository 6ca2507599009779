"""
Kernel services -- the imperative shell around the pure domain layer.

Every service flushes within the caller's transaction.  ReviewEngine is the
only component that commits or rolls back.
"""

from review_kernel.services.award_ranking import AwardRankingService
from review_kernel.services.condition_evaluator import ConditionEvaluator
from review_kernel.services.escrow_ledger import EscrowLedgerService
from review_kernel.services.lock_service import LockService
from review_kernel.services.participation_service import ParticipationService
from review_kernel.services.predicates import DEFAULT_PREDICATES, PredicateContext
from review_kernel.services.review_engine import ReviewEngine
from review_kernel.services.reviewer_team import ReviewerTeamService
from review_kernel.services.sequence_service import SequenceService
from review_kernel.services.state_machine import ActivityStateMachine
from review_kernel.services.template_service import TemplateService

__all__ = [
    "ActivityStateMachine",
    "AwardRankingService",
    "ConditionEvaluator",
    "DEFAULT_PREDICATES",
    "EscrowLedgerService",
    "LockService",
    "ParticipationService",
    "PredicateContext",
    "ReviewEngine",
    "ReviewerTeamService",
    "SequenceService",
    "TemplateService",
]
