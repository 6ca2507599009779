"""
LockService -- canonical-order exclusive locks on ledger and activity aggregates.

Responsibility:
    Acquires every lock a mutating operation needs, in one fixed total order,
    before the operation reads-then-writes balances or stage state.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.  Used by the escrow
    ledger, the state machine, the reviewer team service and the sequence
    service.

Lock order (CANONICAL_LOCK_ORDER):
    1. wallet accounts (user, platform, treasury), ascending id
    2. escrow accounts, ascending id
    3. activity rows, ascending id
    4. sequence counters, ascending name

Two layers:
    - Row locks: ``SELECT ... FOR UPDATE`` with ``populate_existing`` so the
      rows in the identity map are re-read after the lock is granted.
      PostgreSQL enforces these across processes.
    - Per-aggregate mutexes: one ``threading.Lock`` per aggregate key, held
      until the session's outermost transaction ends.  They serialize
      writers within one process on stores without row locks (SQLite).

Invariants enforced:
    - Locks are taken in canonical order.  Asking for a key that sorts
      before a key the session already holds is a programming error and
      raises InternalEngineError instead of risking a deadlock.
    - A session never waits on a mutex it already holds.

Failure modes:
    - By default a session waits for a busy mutex as long as it takes, the
      way a row lock wait behaves.  When ``timeout_seconds`` is set, a wait
      that runs out raises ConcurrencyConflictError and the caller retries
      the whole operation.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from review_kernel.exceptions import ConcurrencyConflictError, InternalEngineError
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance, StageState
from review_kernel.models.ledger import WalletAccount

logger = get_logger("services.locks")

WALLET = 1
ESCROW = 2
ACTIVITY = 3
SEQUENCE = 4

_GROUP_NAMES = {WALLET: "wallet", ESCROW: "escrow", ACTIVITY: "activity", SEQUENCE: "sequence"}

_HELD_KEY = "review_kernel.held_locks"
_LISTENER_KEY = "review_kernel.lock_listener"


@dataclass(frozen=True, order=True)
class LockKey:
    group: int
    ident: str

    def __str__(self) -> str:
        return f"{_GROUP_NAMES[self.group]}:{self.ident}"


@dataclass
class _Entry:
    mutex: threading.Lock = field(default_factory=threading.Lock)
    # Sessions holding or waiting for the mutex
    users: int = 0


class AggregateLockRegistry:
    """
    Process-wide table of per-aggregate mutexes.

    An entry exists only while some session holds or waits for its mutex.
    The last user to let go removes it, so the table is bounded by the
    aggregates in use right now, not by every aggregate ever touched.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[LockKey, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def acquire(self, key: LockKey, timeout: float | None = None) -> bool:
        """Take the mutex for ``key``.  None blocks until it is free."""
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
        if entry.mutex.acquire(timeout=-1 if timeout is None else timeout):
            return True
        with self._guard:
            self._drop_user(key, entry)
        return False

    def release(self, key: LockKey) -> None:
        with self._guard:
            entry = self._entries[key]
            entry.mutex.release()
            self._drop_user(key, entry)

    def _drop_user(self, key: LockKey, entry: _Entry) -> None:
        entry.users -= 1
        if entry.users == 0:
            del self._entries[key]


process_registry = AggregateLockRegistry()


def _release_on_transaction_end(session: Session, transaction) -> None:
    if transaction.parent is not None:
        return
    held: list[tuple[LockKey, AggregateLockRegistry]] = session.info.pop(_HELD_KEY, [])
    for key, registry in reversed(held):
        registry.release(key)
    if held:
        logger.debug("aggregate_locks_released", extra={"count": len(held)})


def _held(session: Session) -> list[tuple[LockKey, AggregateLockRegistry]]:
    if not session.info.get(_LISTENER_KEY):
        event.listen(session, "after_transaction_end", _release_on_transaction_end)
        session.info[_LISTENER_KEY] = True
    return session.info.setdefault(_HELD_KEY, [])


class LockService:
    """
    Acquires canonical-order locks for the caller's transaction.

    Locks are released when the session commits, rolls back, or closes.
    With ``timeout_seconds=None`` (the default) a caller waits until the
    mutex is free; a number turns a long wait into ConcurrencyConflictError.
    """

    def __init__(
        self,
        session: Session,
        timeout_seconds: float | None = None,
        registry: AggregateLockRegistry | None = None,
    ):
        self._session = session
        self._timeout = timeout_seconds
        self._registry = process_registry if registry is None else registry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def acquire(
        self,
        *,
        wallets: Iterable[UUID] = (),
        escrows: Iterable[UUID] = (),
        activities: Iterable[UUID] = (),
        sequences: Iterable[str] = (),
    ) -> None:
        """Lock every named aggregate, in canonical order."""
        keys = sorted(
            {LockKey(WALLET, str(i)) for i in wallets}
            | {LockKey(ESCROW, str(i)) for i in escrows}
            | {LockKey(ACTIVITY, str(i)) for i in activities}
            | {LockKey(SEQUENCE, name) for name in sequences}
        )
        for key in keys:
            self._acquire_mutex(key)
        for key in keys:
            self._lock_row(key)

    def lock_activity(
        self,
        activity_id: UUID,
        escrow_account_id: UUID | None,
        sequences: Iterable[str] = (),
    ) -> ActivityInstance:
        """Lock an activity aggregate (its escrow account first) and re-read it.

        Operations that may post ledger entries later in the transaction pass
        the ledger sequence name so every lock is held before the first write.
        """
        self.acquire(
            escrows=[escrow_account_id] if escrow_account_id else [],
            activities=[activity_id],
            sequences=sequences,
        )
        return self._session.execute(
            select(ActivityInstance)
            .where(ActivityInstance.id == activity_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _acquire_mutex(self, key: LockKey) -> None:
        held = _held(self._session)
        if any(k == key for k, _ in held):
            return
        if held and max(k for k, _ in held) > key:
            raise InternalEngineError(
                operation="lock_acquire",
                original_type="LockOrderViolation",
                detail=f"{key} requested after {max(k for k, _ in held)}",
            )
        if not self._registry.acquire(key, self._timeout):
            logger.warning("aggregate_lock_timeout", extra={"lock_key": str(key)})
            raise ConcurrencyConflictError("lock_acquire", f"timed out waiting for {key}")
        held.append((key, self._registry))

    def _lock_row(self, key: LockKey) -> None:
        if key.group in (WALLET, ESCROW):
            self._session.execute(
                select(WalletAccount)
                .where(WalletAccount.id == UUID(key.ident))
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        elif key.group == ACTIVITY:
            activity_id = UUID(key.ident)
            self._session.execute(
                select(ActivityInstance)
                .where(ActivityInstance.id == activity_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
            self._session.execute(
                select(StageState)
                .where(StageState.activity_id == activity_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        # Sequence rows are locked by SequenceService when it reads the counter
