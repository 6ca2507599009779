"""
EscrowLedgerService -- atomic token movements between wallets and escrows.

Responsibility:
    Posts every token movement as a balanced pair of LedgerEntry rows and
    keeps ActivityInstance.escrow_balance in step with the activity's escrow
    account.  Exposes the ledger primitives: issue, fund, transfer, deduct.

Architecture position:
    Kernel > Services -- imperative shell.  Called by ReviewEngine and by
    the state machine (settlement and cancellation refunds).

Invariants enforced:
    - BALANCE_FROM_ENTRIES: balances are read back as entry sums, never
      stored on the account.
    - NON_NEGATIVE_WALLETS: a debit is refused unless the locked, re-read
      balance covers it.  Only the treasury may go negative.
    - ESCROW_BOUNDS: 0 <= escrow_balance <= funding_amount after every call.
    - CONSERVATION: both entries of a movement share a transfer_id and sum
      to zero.
    - CANONICAL_LOCK_ORDER: every lock is taken through LockService before
      the first write.

Failure modes:
    - NonPositiveAmountError for amount <= 0.
    - InsufficientBalanceError when the debited account cannot cover amount.
      A user with no wallet has balance 0.
    - EscrowCeilingExceededError when funding would exceed funding_amount.
    - ActivityNotFoundError / ActivityNotActiveError for escrow operations
      on an unknown or finished activity.

Audit relevance:
    Each entry records category, origin, actor and the linked activity.
"""

from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from review_kernel.db.types import require_positive
from review_kernel.domain.clock import Clock, SystemClock
from review_kernel.domain.dtos import Movement
from review_kernel.enums import AccountKind, ActivityStatus, LedgerCategory, TransactionOrigin
from review_kernel.exceptions import (
    ActivityNotActiveError,
    ActivityNotFoundError,
    EscrowCeilingExceededError,
    InsufficientBalanceError,
)
from review_kernel.logging_config import get_logger
from review_kernel.models.activity import ActivityInstance
from review_kernel.models.ledger import LedgerEntry, WalletAccount
from review_kernel.selectors.ledger_selector import LedgerSelector
from review_kernel.services.base import BaseService
from review_kernel.services.lock_service import LockService
from review_kernel.services.sequence_service import SequenceService

logger = get_logger("services.escrow_ledger")


class EscrowLedgerService(BaseService[LedgerEntry]):
    """
    Posts balanced ledger movements under canonical-order locks.

    Contract:
        Every public method flushes but never commits.  Escrow methods take
        an activity id and lock the activity aggregate themselves; locks
        already held by the session are reused.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        locks: LockService | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._locks = locks or LockService(session)
        self._sequences = SequenceService(session, self._locks)
        self._balances = LedgerSelector(session)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def find_account(self, owner_id: UUID, kind: AccountKind) -> WalletAccount | None:
        return self.session.execute(
            select(WalletAccount).where(
                WalletAccount.owner_id == owner_id, WalletAccount.kind == kind.value
            )
        ).scalar_one_or_none()

    def open_account(
        self,
        owner_id: UUID,
        kind: AccountKind,
        account_id: UUID | None = None,
    ) -> WalletAccount:
        """Return the owner's account of this kind, creating it if needed.

        Only called on the credit side of a movement, or for a new escrow,
        after every lock the operation needs is held.
        """
        account = self.find_account(owner_id, kind)
        if account is not None:
            return account
        account = WalletAccount(
            id=account_id or uuid4(),
            owner_id=owner_id,
            kind=kind.value,
            opened_at=self._clock.now(),
        )
        self.session.add(account)
        self.session.flush()
        logger.info(
            "wallet_account_opened",
            extra={"owner_id": str(owner_id), "account_kind": kind.value},
        )
        return account

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def issue_tokens(
        self,
        treasury_owner_id: UUID,
        user_id: UUID,
        amount: int,
        actor_id: UUID | None = None,
        description: str = "",
    ) -> Movement:
        """Move newly issued tokens from the treasury to a user wallet."""
        require_positive(amount)
        self._locks.acquire(sequences=[SequenceService.LEDGER_ENTRY])
        treasury = self.open_account(treasury_owner_id, AccountKind.TREASURY)
        wallet = self.open_account(user_id, AccountKind.USER)
        return self._post_transfer(
            debit=treasury,
            credit=wallet,
            amount=amount,
            category=LedgerCategory.ISSUANCE,
            origin=TransactionOrigin.SUPERADMIN,
            actor_id=actor_id,
            description=description or "token issuance",
        )

    def fund_escrow(
        self,
        activity_id: UUID,
        user_id: UUID,
        amount: int,
        actor_id: UUID | None = None,
    ) -> Movement:
        """Debit the user's wallet and credit the activity's escrow."""
        require_positive(amount)
        activity = self._find_activity(activity_id)
        wallet = self.find_account(user_id, AccountKind.USER)
        if wallet is None:
            raise InsufficientBalanceError(str(user_id), 0, amount)

        self._locks.acquire(
            wallets=[wallet.id],
            escrows=[activity.escrow_account_id],
            activities=[activity_id],
            sequences=[SequenceService.LEDGER_ENTRY],
        )
        activity = self._reload(activity_id)
        self._require_active(activity)

        balance = self._balances.account_balance(wallet.id)
        if balance < amount:
            raise InsufficientBalanceError(str(user_id), balance, amount)
        if activity.escrow_balance + amount > activity.funding_amount:
            raise EscrowCeilingExceededError(
                str(activity_id), activity.escrow_balance, amount, activity.funding_amount
            )

        escrow = self._escrow_account(activity)
        movement = self._post_transfer(
            debit=wallet,
            credit=escrow,
            amount=amount,
            category=LedgerCategory.ESCROW_FUNDING,
            origin=TransactionOrigin.ACTIVITY,
            activity_id=activity_id,
            actor_id=actor_id or user_id,
            description=f"fund escrow of {activity.paper_ref}",
        )
        activity.escrow_balance += amount
        self.session.flush()
        return movement

    def transfer_from_escrow(
        self,
        activity_id: UUID,
        receiver_id: UUID,
        amount: int,
        *,
        category: LedgerCategory = LedgerCategory.ESCROW_TRANSFER,
        receiver_kind: AccountKind = AccountKind.USER,
        origin: TransactionOrigin = TransactionOrigin.ACTIVITY,
        actor_id: UUID | None = None,
    ) -> Movement:
        """Debit the activity's escrow and credit the receiver's wallet."""
        require_positive(amount)
        activity = self._find_activity(activity_id)
        activity = self._locks.lock_activity(
            activity_id,
            activity.escrow_account_id,
            sequences=[SequenceService.LEDGER_ENTRY],
        )
        self._require_active(activity)

        if amount > activity.escrow_balance:
            raise InsufficientBalanceError(
                f"escrow:{activity_id}", activity.escrow_balance, amount
            )

        escrow = self._escrow_account(activity)
        receiver = self.open_account(receiver_id, receiver_kind)
        movement = self._post_transfer(
            debit=escrow,
            credit=receiver,
            amount=amount,
            category=category,
            origin=origin,
            activity_id=activity_id,
            actor_id=actor_id,
            description=f"{category.value} from {activity.paper_ref}",
        )
        activity.escrow_balance -= amount
        self.session.flush()
        return movement

    def deduct_from_wallet(
        self,
        user_id: UUID,
        amount: int,
        platform_owner_id: UUID,
        activity_ref: UUID | None = None,
    ) -> Movement:
        """Charge an entry fee: debit the user, credit the platform account."""
        require_positive(amount)
        if activity_ref is not None:
            self._find_activity(activity_ref)
        wallet = self.find_account(user_id, AccountKind.USER)
        if wallet is None:
            raise InsufficientBalanceError(str(user_id), 0, amount)

        self._locks.acquire(wallets=[wallet.id], sequences=[SequenceService.LEDGER_ENTRY])
        balance = self._balances.account_balance(wallet.id)
        if balance < amount:
            raise InsufficientBalanceError(str(user_id), balance, amount)

        platform = self.open_account(platform_owner_id, AccountKind.PLATFORM)
        return self._post_transfer(
            debit=wallet,
            credit=platform,
            amount=amount,
            category=LedgerCategory.ENTRY_FEE,
            origin=TransactionOrigin.ACTIVITY,
            activity_id=activity_ref,
            actor_id=user_id,
            description="activity entry fee",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _post_transfer(
        self,
        *,
        debit: WalletAccount,
        credit: WalletAccount,
        amount: int,
        category: LedgerCategory,
        origin: TransactionOrigin,
        activity_id: UUID | None = None,
        actor_id: UUID | None = None,
        description: str = "",
    ) -> Movement:
        transfer_id = uuid4()
        now = self._clock.now()
        for account, counterparty, signed in (
            (debit, credit, -amount),
            (credit, debit, amount),
        ):
            self.session.add(
                LedgerEntry(
                    sequence=self._sequences.next_value(SequenceService.LEDGER_ENTRY),
                    transfer_id=transfer_id,
                    account_id=account.id,
                    counterparty_account_id=counterparty.id,
                    amount=signed,
                    category=category.value,
                    origin=origin.value,
                    activity_id=activity_id,
                    actor_id=actor_id,
                    description=description[:500],
                    created_at=now,
                )
            )
        self.session.flush()

        new_balances = {
            debit.owner_id: self._balances.account_balance(debit.id),
            credit.owner_id: self._balances.account_balance(credit.id),
        }
        logger.info(
            "ledger_transfer_posted",
            extra={
                "transfer_id": str(transfer_id),
                "category": category.value,
                "amount": amount,
                "debit_owner": str(debit.owner_id),
                "credit_owner": str(credit.owner_id),
            },
        )
        return Movement(
            transfer_id=transfer_id,
            debit_account_id=debit.id,
            credit_account_id=credit.id,
            amount=amount,
            new_balances=new_balances,
        )

    def _find_activity(self, activity_id: UUID) -> ActivityInstance:
        activity = self.session.get(ActivityInstance, activity_id)
        if activity is None:
            raise ActivityNotFoundError(str(activity_id))
        return activity

    def _reload(self, activity_id: UUID) -> ActivityInstance:
        return self.session.execute(
            select(ActivityInstance)
            .where(ActivityInstance.id == activity_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _escrow_account(self, activity: ActivityInstance) -> WalletAccount:
        return self.session.get(WalletAccount, activity.escrow_account_id)

    @staticmethod
    def _require_active(activity: ActivityInstance) -> None:
        if not activity.is_active:
            raise ActivityNotActiveError(str(activity.id), ActivityStatus(activity.status).value)
