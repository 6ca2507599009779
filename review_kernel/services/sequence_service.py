"""
SequenceService -- monotonic sequence allocation via locked counter rows.

Responsibility:
    Provides strictly increasing sequence numbers for ledger entries.  Uses
    the sequence_counters table with row-level locking
    (``SELECT ... FOR UPDATE``) plus the in-process sequence mutex from
    LockService, so ledger order matches commit order.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by EscrowLedgerService for every ledger entry.

Invariants enforced:
    - Sequences are strictly monotonic.  The aggregate-max-plus-one pattern
      is never used; the locked counter row is the sole source of truth.
    - The increment is only visible after the caller's transaction commits.
      Rollback returns the value.

Failure modes:
    - ConcurrencyConflictError if two transactions create the same counter
      row for the first time concurrently (IntegrityError on the unique name).
"""

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from review_kernel.exceptions import ConcurrencyConflictError
from review_kernel.logging_config import get_logger
from review_kernel.models.ledger import SequenceCounter
from review_kernel.services.lock_service import LockService

logger = get_logger("services.sequence")


class SequenceService:
    """
    Service for generating transactional sequence numbers.

    Guarantees:
        - Strictly monotonic values per sequence name.
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
    """

    # Well-known sequence names
    LEDGER_ENTRY = "ledger_entry"

    def __init__(self, session: Session, locks: LockService | None = None):
        self._session = session
        self._locks = locks or LockService(session)

    def next_value(self, sequence_name: str) -> int:
        """
        Lock the counter, increment it, and return the new value.

        Returns:
            The next sequence value (always > 0).
        """
        self._locks.acquire(sequences=[sequence_name])

        counter = self._session.execute(
            select(SequenceCounter)
            .where(SequenceCounter.name == sequence_name)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

        if counter is None:
            counter = SequenceCounter(name=sequence_name, current_value=0)
            self._session.add(counter)
            try:
                self._session.flush()
            except IntegrityError as exc:
                raise ConcurrencyConflictError(
                    "sequence_allocation",
                    f"counter {sequence_name} created concurrently",
                ) from exc

        counter.current_value += 1
        self._session.flush()
        logger.debug(
            "sequence_allocated",
            extra={"sequence_name": sequence_name, "value": counter.current_value},
        )
        return counter.current_value

    def current_value(self, sequence_name: str) -> int | None:
        """Current value without incrementing, or None if never allocated."""
        return self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.name == sequence_name)
        ).scalar_one_or_none()
