"""
AwardRankingService -- settles a completed activity.

Responsibility:
    Aggregates award points received by each active reviewer, assigns dense
    ranks, pays each rank's tokens from escrow in ascending rank order,
    sweeps what remains to the configured platform account, and records the
    outcome on the membership rows.

Architecture position:
    Kernel > Services.  Called by the state machine while entering a
    completed terminal stage, before that stage is written.

Invariants enforced:
    - Payouts run in ascending rank order.  A payout the escrow cannot cover
      is logged at WARNING and skipped; later ranks and the sweep still run.
    - The leftover recipient is the single platform account named in
      EngineOptions, never looked up by role.
    - After settlement the activity's escrow balance is zero.

Audit relevance:
    Each payout is a REWARD_PAYOUT movement and the sweep a LEFTOVER_SWEEP
    movement, both linked to the activity.
"""

from collections import defaultdict
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from review_kernel.domain.dtos import PayoutLine, SettlementReport
from review_kernel.domain.ranking import dense_rank, plan_payouts
from review_kernel.domain.template_graph import CompiledTemplate
from review_kernel.enums import AccountKind, LedgerCategory, TransactionOrigin
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance
from review_kernel.models.team import AwardRecord
from review_kernel.services.base import BaseService
from review_kernel.services.escrow_ledger import EscrowLedgerService
from review_kernel.services.reviewer_team import ReviewerTeamService

logger = get_logger("services.award_ranking")


class AwardRankingService(BaseService[AwardRecord]):

    def __init__(
        self,
        session: Session,
        ledger: EscrowLedgerService,
        team: ReviewerTeamService,
        platform_owner_id: UUID,
    ):
        super().__init__(session)
        self._ledger = ledger
        self._team = team
        self._platform_owner_id = platform_owner_id

    def points_by_reviewer(self, activity_id: UUID) -> dict[UUID, int]:
        """Received points per active reviewer; reviewers with no awards score 0."""
        members = self._team.active_members(activity_id)
        totals: dict[UUID, int] = defaultdict(int)
        for member in members:
            totals[member.user_id] = 0
        awards = self.session.execute(
            select(AwardRecord.receiver_id, AwardRecord.points).where(
                AwardRecord.activity_id == activity_id
            )
        ).all()
        for receiver_id, points in awards:
            if receiver_id in totals:
                totals[receiver_id] += points
        return dict(totals)

    def settle(
        self,
        activity: ActivityInstance,
        template: CompiledTemplate,
        actor_id: UUID | None = None,
    ) -> SettlementReport:
        """Rank, pay, sweep.  The activity must be locked by the caller."""
        members = {m.user_id: m for m in self._team.active_members(activity.id)}
        ranked = dense_rank(self.points_by_reviewer(activity.id))
        planned = plan_payouts(ranked, template.rank_table())

        lines: list[PayoutLine] = []
        for payout in planned:
            paid = False
            if payout.tokens > 0:
                if payout.tokens <= activity.escrow_balance:
                    self._ledger.transfer_from_escrow(
                        activity.id,
                        payout.user_id,
                        payout.tokens,
                        category=LedgerCategory.REWARD_PAYOUT,
                        origin=TransactionOrigin.SYSTEM,
                        actor_id=actor_id,
                    )
                    paid = True
                else:
                    logger.warning(
                        "payout_skipped_insufficient_escrow",
                        extra={
                            "user_id": str(payout.user_id),
                            "rank": payout.rank,
                            "tokens": payout.tokens,
                            "escrow_balance": activity.escrow_balance,
                        },
                    )

            member = members[payout.user_id]
            member.final_rank = payout.rank
            member.total_points = payout.points
            member.tokens_awarded = payout.tokens if paid else 0
            self._team.complete(member)
            lines.append(
                PayoutLine(
                    user_id=payout.user_id,
                    rank=payout.rank,
                    points=payout.points,
                    tokens=payout.tokens,
                    paid=paid,
                )
            )

        leftover = activity.escrow_balance
        platform = self._ledger.open_account(self._platform_owner_id, AccountKind.PLATFORM)
        if leftover > 0:
            self._ledger.transfer_from_escrow(
                activity.id,
                self._platform_owner_id,
                leftover,
                category=LedgerCategory.LEFTOVER_SWEEP,
                receiver_kind=AccountKind.PLATFORM,
                origin=TransactionOrigin.SYSTEM,
                actor_id=actor_id,
            )
        self.session.flush()

        report = SettlementReport(
            activity_id=activity.id,
            payouts=tuple(lines),
            leftover_swept=leftover,
            platform_account_id=platform.id,
        )
        logger.info(
            "settlement_completed",
            extra={
                "reviewers": len(lines),
                "total_paid": report.total_paid,
                "skipped": len(report.skipped),
                "leftover_swept": leftover,
            },
        )
        return report
