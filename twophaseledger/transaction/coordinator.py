"""
Transaction coordinator for two-phase commit.

Moves a transfer between two accounts through durable states on a store that
is only atomic per record:

    claim → apply → commit → settle → finish          (commit path)
    cancel_begin → cancel_undo → cancel_finish        (cancel path)

Every step is a single conditional update (per account for apply, settle and
cancel_undo) and is idempotent, so any step may be repeated after a crash.
Account steps re-read the transaction first and only run for its owner, so a
stale snapshot never moves money twice.
"""

import time
from collections import Counter
from typing import Callable, Dict, Iterable, Optional

from twophaseledger.errors import ClaimLost, IrreversibleState, PreconditionFailed
from twophaseledger.ledger.account import AccountCondition, AccountMutation
from twophaseledger.transaction.claim import OwnershipClaim
from twophaseledger.transaction.log import TransactionLog
from twophaseledger.transaction.state import Transaction, TransactionState, now_ms
from twophaseledger.utils.logging import get_logger
from twophaseledger.utils.retry import RetryConfig, RetryManager

logger = get_logger(__name__)


class TransactionCoordinator:
    """
    Executes the 2PC step sequence for transfers.

    Responsibilities:
    1. Create transfers in the transaction log
    2. Run the idempotent commit and cancel steps
    3. Resolve commit/cancel races through compare-and-set on state
    4. Retry transient store failures with backoff
    """

    def __init__(
        self,
        store,
        owner_id: str,
        lease_ms: int = 30000,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize transaction coordinator.

        Args:
            store: RecordStore holding accounts and transactions
            owner_id: Identity of the worker running this coordinator
            lease_ms: Ownership lease duration
            retry_config: Backoff policy for RecordStoreUnavailable
            clock: Millisecond clock
            sleep: Sleep function used between retries
        """
        self.store = store
        self.owner_id = owner_id
        self.clock = clock

        self.transaction_log = TransactionLog(store)
        self.claimer = OwnershipClaim(store, owner_id, lease_ms=lease_ms, clock=clock)
        self.retry = RetryManager(retry_config, sleep=sleep)

        self._step_counts: Counter = Counter()

        logger.info(
            "TransactionCoordinator initialized",
            owner=owner_id,
            lease_ms=lease_ms,
        )

    def _call(self, operation_name: str, operation: Callable):
        return self.retry.execute_with_retry(operation, operation_name)

    def _reload(self, transaction_id: str) -> Transaction:
        return self._call(
            "get_transaction",
            lambda: self.store.get_transaction(transaction_id),
        )

    def _current_in(
        self,
        transaction: Transaction,
        step: str,
        state: TransactionState,
    ) -> Optional[Transaction]:
        """
        Re-read a transaction before an account step.

        Account guards only look at pending markers, which settle and
        cancel_undo remove. The transaction state is what tells a caller
        holding an old snapshot that the step is already behind it.

        Returns:
            The current record, or None if it is no longer in state

        Raises:
            ClaimLost: If the record is owned by another worker
        """
        current = self._reload(transaction.id)

        if current.state != state:
            logger.debug(
                "Step skipped",
                transaction_id=current.id,
                step=step,
                state=current.state.value,
            )
            return None

        if current.owner != self.owner_id:
            logger.warning(
                "Step refused, transaction owned elsewhere",
                transaction_id=current.id,
                step=step,
                owner=current.owner,
            )
            raise ClaimLost(self.owner_id, current.id)

        return current

    # Creation and claim

    def create_transaction(
        self,
        source: str,
        destination: str,
        value: int,
        transaction_id: Optional[str] = None,
    ) -> str:
        """
        Create a transfer in INITIAL state.

        Args:
            source: Account to debit
            destination: Account to credit
            value: Positive integer amount
            transaction_id: Explicit id (generated if omitted)

        Returns:
            Transaction id
        """
        transaction = self._call(
            "create_transaction",
            lambda: self.transaction_log.create(
                source, destination, value, transaction_id=transaction_id,
            ),
        )
        return transaction.id

    def claim(self, transaction_id: str) -> Transaction:
        """
        Claim a specific INITIAL transaction for this coordinator's owner.

        Raises:
            ClaimLost: If another owner won the race
        """
        self._step_counts["claim"] += 1
        return self._call("claim", lambda: self.claimer.claim(transaction_id))

    # Commit path steps

    def apply(self, transaction: Transaction) -> int:
        """
        Move the value between the two accounts and mark both pending.

        Runs only while the transaction is PENDING and owned by this
        coordinator. The absence of the pending marker is the per-account
        guard: an account already carrying it is left untouched.

        Args:
            transaction: Transfer to apply

        Returns:
            Number of accounts changed by this call (0 when fully re-applied
            or the transaction moved past PENDING)

        Raises:
            ClaimLost: If another worker owns the transaction
        """
        self._step_counts["apply"] += 1
        changed = 0

        if self._current_in(transaction, "apply", TransactionState.PENDING) is None:
            return changed

        for account_id in transaction.accounts():
            condition = AccountCondition(pending_excludes=transaction.id)
            mutation = AccountMutation(
                balance_delta=transaction.delta_for(account_id),
                add_pending=transaction.id,
            )
            if self._call(
                "apply",
                lambda: self.store.update_account(account_id, condition, mutation),
            ):
                changed += 1

        logger.debug(
            "Transaction applied",
            transaction_id=transaction.id,
            accounts_changed=changed,
        )

        return changed

    def commit(self, transaction: Transaction) -> Transaction:
        """PENDING → COMMITTED. No-op if already committed or done."""
        self._step_counts["commit"] += 1
        return self._transition(
            transaction,
            step="commit",
            expected=[TransactionState.PENDING],
            target=TransactionState.COMMITTED,
        )

    def settle(self, transaction: Transaction) -> int:
        """
        Remove the pending marker from both accounts of a COMMITTED transfer.

        Returns:
            Number of markers removed by this call
        """
        self._step_counts["settle"] += 1
        removed = 0

        if self._current_in(transaction, "settle", TransactionState.COMMITTED) is None:
            return removed

        for account_id in transaction.accounts():
            condition = AccountCondition(pending_contains=transaction.id)
            mutation = AccountMutation(remove_pending=transaction.id)
            if self._call(
                "settle",
                lambda: self.store.update_account(account_id, condition, mutation),
            ):
                removed += 1

        logger.debug(
            "Transaction settled",
            transaction_id=transaction.id,
            markers_removed=removed,
        )

        return removed

    def finish(self, transaction: Transaction) -> Transaction:
        """COMMITTED → DONE. No-op if already done."""
        self._step_counts["finish"] += 1
        result = self._transition(
            transaction,
            step="finish",
            expected=[TransactionState.COMMITTED],
            target=TransactionState.DONE,
        )

        logger.info(
            "Transaction done",
            transaction_id=transaction.id,
            source=transaction.source,
            destination=transaction.destination,
            value=transaction.value,
        )

        return result

    # Cancel path steps

    def cancel_begin(self, transaction: Transaction) -> Transaction:
        """
        INITIAL/PENDING → CANCELING.

        Compare-and-set against the current state, so a concurrent commit
        and cancel cannot both win. An unowned (INITIAL) transaction becomes
        owned by this coordinator so recovery can finish the cancel.

        Returns:
            The transaction in CANCELING or CANCELLED

        Raises:
            IrreversibleState: If the transaction already committed
        """
        self._step_counts["cancel_begin"] += 1

        while True:
            current = self._reload(transaction.id)

            if current.state.reaches(TransactionState.CANCELING):
                return current

            if not current.state.is_cancellable():
                logger.warning(
                    "Cancel rejected, transaction committed",
                    transaction_id=current.id,
                    state=current.state.value,
                )
                raise IrreversibleState(current.id, current.state)

            current_time = self.clock()
            changes = {
                "state": TransactionState.CANCELING,
                "updated_ms": current_time,
            }
            if current.owner is None:
                changes["owner"] = self.owner_id
                changes["lease_expires_ms"] = current_time + self.claimer.lease_ms

            result = self._call(
                "cancel_begin",
                lambda: self.store.update_transaction(
                    current.id,
                    expected_states=[current.state],
                    changes=changes,
                    expected_owner=current.owner,
                ),
            )

            if result is not None:
                logger.info(
                    "Transaction canceling",
                    transaction_id=result.id,
                    previous_state=current.state.value,
                    owner=result.owner,
                )
                return result

            # Lost a race with claim or commit; re-read and decide again

    def cancel_undo(self, transaction: Transaction) -> int:
        """
        Reverse apply on every account still carrying the pending marker.

        Runs only while the transaction is CANCELING and owned by this
        coordinator.

        Returns:
            Number of accounts reverted by this call
        """
        self._step_counts["cancel_undo"] += 1
        reverted = 0

        if self._current_in(transaction, "cancel_undo", TransactionState.CANCELING) is None:
            return reverted

        for account_id in transaction.accounts():
            condition = AccountCondition(pending_contains=transaction.id)
            mutation = AccountMutation(
                balance_delta=-transaction.delta_for(account_id),
                remove_pending=transaction.id,
            )
            if self._call(
                "cancel_undo",
                lambda: self.store.update_account(account_id, condition, mutation),
            ):
                reverted += 1

        logger.debug(
            "Transaction undone",
            transaction_id=transaction.id,
            accounts_reverted=reverted,
        )

        return reverted

    def cancel_finish(self, transaction: Transaction) -> Transaction:
        """CANCELING → CANCELLED. No-op if already cancelled."""
        self._step_counts["cancel_finish"] += 1
        result = self._transition(
            transaction,
            step="cancel_finish",
            expected=[TransactionState.CANCELING],
            target=TransactionState.CANCELLED,
        )

        logger.info(
            "Transaction cancelled",
            transaction_id=transaction.id,
        )

        return result

    def _transition(
        self,
        transaction: Transaction,
        step: str,
        expected: Iterable[TransactionState],
        target: TransactionState,
    ) -> Transaction:
        """
        Conditional state update with idempotent failure handling.

        If the precondition fails because the transaction already reached
        target on the same path, the step is a no-op.

        Raises:
            PreconditionFailed: If the transaction is elsewhere
        """
        expected = list(expected)
        result = self._call(
            step,
            lambda: self.store.update_transaction(
                transaction.id,
                expected_states=expected,
                changes={"state": target, "updated_ms": self.clock()},
            ),
        )

        if result is not None:
            logger.debug(
                "Transaction state updated",
                transaction_id=transaction.id,
                new_state=target.value,
            )
            return result

        current = self._reload(transaction.id)

        if current.state.reaches(target):
            logger.debug(
                "Step already performed",
                transaction_id=transaction.id,
                step=step,
                state=current.state.value,
            )
            return current

        raise PreconditionFailed(transaction.id, expected, current.state, step=step)

    # Step sequences used by workers and the recovery scanner

    def run_pending_step(self, transaction: Transaction) -> Transaction:
        """
        Resume a PENDING transaction: apply, commit, then settle and finish.

        If a cancel wins the race against commit, the cancel is completed
        instead, which also reverts anything this call applied.

        Returns:
            The transaction in its terminal state
        """
        self.apply(transaction)

        try:
            self.commit(transaction)
        except PreconditionFailed as e:
            if e.actual in (TransactionState.CANCELING.value, TransactionState.CANCELLED.value):
                logger.info(
                    "Commit lost to cancel",
                    transaction_id=transaction.id,
                    state=e.actual,
                )
                return self.run_canceling_step(transaction)
            raise

        return self.run_committed_step(transaction)

    def run_committed_step(self, transaction: Transaction) -> Transaction:
        """Resume a COMMITTED transaction: settle, then finish."""
        self.settle(transaction)
        return self.finish(transaction)

    def run_canceling_step(self, transaction: Transaction) -> Transaction:
        """Resume a CANCELING transaction: undo, then finish the cancel."""
        self.cancel_undo(transaction)
        return self.cancel_finish(transaction)

    def drive(self, transaction_id: str) -> Transaction:
        """
        Run the remainder of the sequence from the transaction's current state.

        INITIAL transactions are left alone; they must be claimed first.

        Returns:
            The transaction as it stands afterwards
        """
        transaction = self._reload(transaction_id)
        state = transaction.state

        if state == TransactionState.PENDING:
            return self.run_pending_step(transaction)
        if state == TransactionState.COMMITTED:
            return self.run_committed_step(transaction)
        if state == TransactionState.CANCELING:
            return self.run_canceling_step(transaction)

        return transaction

    def process_next(self) -> Optional[Transaction]:
        """
        Claim one INITIAL transaction and drive it to a terminal state.

        Returns:
            The finished transaction, or None if the backlog is empty
        """
        transaction = self._call("claim_next", self.claimer.claim_next)
        if transaction is None:
            return None

        self._step_counts["claim"] += 1
        return self.run_pending_step(transaction)

    def request_cancel(self, transaction_id: str) -> Transaction:
        """
        Cancel a transaction that has not committed yet.

        The cancel is completed here when this coordinator owns the
        transaction or its owner's lease has lapsed. Otherwise it stays in
        CANCELING for the owner to complete: the owner's commit fails and it
        switches to the cancel path.

        Returns:
            The transaction (CANCELLED, or CANCELING if left to its owner)

        Raises:
            IrreversibleState: If the transaction already committed
            TransactionNotFound: If no such transaction
        """
        transaction = self.cancel_begin(self._reload(transaction_id))

        if transaction.state == TransactionState.CANCELLED:
            return transaction

        if transaction.owner == self.owner_id:
            return self.run_canceling_step(transaction)

        taken = self._call("take_over", lambda: self.claimer.take_over(transaction))
        if taken is not None:
            return self.run_canceling_step(taken)

        logger.info(
            "Cancel handed to owner",
            transaction_id=transaction.id,
            owner=transaction.owner,
        )

        return transaction

    def compensate(self, transaction_id: str) -> str:
        """
        Create the reverse transfer of a DONE transaction.

        Returns:
            Id of the new compensating transaction

        Raises:
            PreconditionFailed: If the transaction is not DONE
        """
        transaction = self._reload(transaction_id)

        if transaction.state != TransactionState.DONE:
            raise PreconditionFailed(
                transaction.id,
                [TransactionState.DONE],
                transaction.state,
                step="compensate",
            )

        compensation_id = self.create_transaction(
            source=transaction.destination,
            destination=transaction.source,
            value=transaction.value,
        )

        logger.info(
            "Compensating transaction created",
            transaction_id=compensation_id,
            compensates=transaction.id,
        )

        return compensation_id

    def get_stats(self) -> Dict:
        """
        Get coordinator statistics.

        Returns:
            Statistics dict
        """
        return {
            "owner": self.owner_id,
            "transaction_log": self.transaction_log.get_stats(),
            "steps": dict(self._step_counts),
        }
