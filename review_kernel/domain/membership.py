"""
Reviewer membership lifecycle.

    JOINED --lock-in--> LOCKED_IN --settlement--> COMPLETED
       |                    |
       +----> REMOVED <-----+

REMOVED and COMPLETED are terminal.  A JOINED member holds a commitment
deadline; lock-in clears it and removes the member from timeout risk.
"""

from review_kernel.enums import MembershipStatus

MEMBERSHIP_TRANSITIONS: dict[MembershipStatus, frozenset[MembershipStatus]] = {
    MembershipStatus.JOINED: frozenset({
        MembershipStatus.LOCKED_IN,
        MembershipStatus.REMOVED,
        MembershipStatus.COMPLETED,
    }),
    MembershipStatus.LOCKED_IN: frozenset({
        MembershipStatus.REMOVED,
        MembershipStatus.COMPLETED,
    }),
    MembershipStatus.REMOVED: frozenset(),
    MembershipStatus.COMPLETED: frozenset(),
}

TERMINAL_MEMBERSHIP_STATUSES: frozenset[MembershipStatus] = frozenset({
    MembershipStatus.REMOVED,
    MembershipStatus.COMPLETED,
})

TIMEOUT_REASON = "timeout"


def can_transition(current: MembershipStatus | str, target: MembershipStatus) -> bool:
    return target in MEMBERSHIP_TRANSITIONS[MembershipStatus(current)]
