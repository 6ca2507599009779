"""
Ranking -- dense ranking of reviewers and the rank-based payout plan.

Responsibility:
    Pure computation of final ranks from award points and of the ordered
    list of payouts the settlement step will attempt.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - Dense ranking: equal points share a rank; the next distinct score takes
      the next sequential rank (10, 10, 7, 3 -> 1, 1, 2, 3).
    - Deterministic order: rank ascending, then user id.
    - Every reviewer holding a rank that appears in the rank table is paid
      that rank's amount; ranks beyond the table are paid nothing.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from uuid import UUID


@dataclass(frozen=True)
class RankedReviewer:
    user_id: UUID
    points: int
    rank: int


@dataclass(frozen=True)
class PlannedPayout:
    user_id: UUID
    rank: int
    points: int
    tokens: int


def dense_rank(points_by_user: Mapping[UUID, int]) -> list[RankedReviewer]:
    """Assign dense ranks by descending points."""
    ordered = sorted(points_by_user.items(), key=lambda item: (-item[1], str(item[0])))
    ranked: list[RankedReviewer] = []
    rank = 0
    previous: int | None = None
    for user_id, points in ordered:
        if points != previous:
            rank += 1
            previous = points
        ranked.append(RankedReviewer(user_id=user_id, points=points, rank=rank))
    return ranked


def plan_payouts(
    ranked: list[RankedReviewer],
    rank_table: Mapping[int, int],
) -> list[PlannedPayout]:
    """Map ranks to token amounts, ascending rank order.

    Reviewers whose rank is not in the table get a zero-token entry so the
    caller can still record their final rank.
    """
    return [
        PlannedPayout(
            user_id=r.user_id,
            rank=r.rank,
            points=r.points,
            tokens=rank_table.get(r.rank, 0),
        )
        for r in sorted(ranked, key=lambda r: (r.rank, str(r.user_id)))
    ]
