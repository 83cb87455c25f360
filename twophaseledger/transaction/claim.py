"""
Ownership claim.

The claim is the only mutual-exclusion point of the system: exactly one
worker moves a transaction out of INITIAL, and it does so in the same atomic
store operation that selects the record. Ownership is held under a lease;
a lapsed lease is the only way ownership changes hands.
"""

from typing import Callable, List, Optional

from twophaseledger.errors import ClaimLost
from twophaseledger.transaction.state import Transaction, TransactionState, now_ms
from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)

# Non-terminal states in which a transaction has an owner
OWNED_STATES = (
    TransactionState.PENDING,
    TransactionState.COMMITTED,
    TransactionState.CANCELING,
)


class OwnershipClaim:
    """
    Claims transactions for one worker identity.

    Lease policy:
    - claim() sets owner and lease_expires_ms = now + lease_ms
    - renew() extends the lease, guarded on still being the owner
    - take_over_expired() reassigns transactions whose lease lapsed,
      guarded on the previous owner and state
    """

    def __init__(
        self,
        store,
        owner_id: str,
        lease_ms: int = 30000,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize ownership claim.

        Args:
            store: RecordStore holding the transactions
            owner_id: Worker/application identity
            lease_ms: Lease duration in milliseconds
            clock: Millisecond clock
        """
        self.store = store
        self.owner_id = owner_id
        self.lease_ms = lease_ms
        self.clock = clock

    def claim_next(self) -> Optional[Transaction]:
        """
        Claim the oldest unowned INITIAL transaction.

        Returns:
            The claimed transaction (now PENDING and owned), or None if the
            backlog is empty
        """
        current_time = self.clock()
        transaction = self.store.claim_transaction(
            owner_id=self.owner_id,
            lease_expires_ms=current_time + self.lease_ms,
            now_ms=current_time,
        )

        if transaction is not None:
            logger.info(
                "Transaction claimed",
                transaction_id=transaction.id,
                owner=self.owner_id,
            )

        return transaction

    def claim(self, transaction_id: str) -> Transaction:
        """
        Claim one specific INITIAL transaction.

        Args:
            transaction_id: Transaction to claim

        Returns:
            The claimed transaction

        Raises:
            ClaimLost: If the transaction is no longer INITIAL and unowned
        """
        current_time = self.clock()
        transaction = self.store.update_transaction(
            transaction_id,
            expected_states=[TransactionState.INITIAL],
            changes={
                "state": TransactionState.PENDING,
                "owner": self.owner_id,
                "lease_expires_ms": current_time + self.lease_ms,
                "updated_ms": current_time,
            },
            expected_owner=None,
        )

        if transaction is None:
            logger.debug(
                "Claim lost",
                transaction_id=transaction_id,
                owner=self.owner_id,
            )
            raise ClaimLost(self.owner_id, transaction_id)

        logger.info(
            "Transaction claimed",
            transaction_id=transaction_id,
            owner=self.owner_id,
        )

        return transaction

    def renew(self, transaction: Transaction) -> Optional[Transaction]:
        """
        Extend the lease on an owned transaction.

        Args:
            transaction: Transaction owned by this worker

        Returns:
            Updated transaction, or None if no longer owned or already terminal
        """
        return self.store.update_transaction(
            transaction.id,
            expected_states=OWNED_STATES,
            changes={"lease_expires_ms": self.clock() + self.lease_ms},
            expected_owner=self.owner_id,
        )

    def renew_all(self) -> int:
        """
        Heartbeat every non-terminal transaction owned by this worker.

        Returns:
            Number of leases renewed
        """
        renewed = 0
        for transaction in self.store.find_transactions(OWNED_STATES, owner=self.owner_id):
            if self.renew(transaction) is not None:
                renewed += 1

        if renewed:
            logger.debug("Leases renewed", owner=self.owner_id, count=renewed)

        return renewed

    def take_over(self, transaction: Transaction) -> Optional[Transaction]:
        """
        Reassign a transaction whose owner's lease has lapsed.

        Args:
            transaction: Transaction as last read

        Returns:
            Updated transaction, or None if its lease is live or another
            worker took it over first
        """
        current_time = self.clock()
        if not transaction.is_lease_expired(current_time):
            return None

        taken = self.store.update_transaction(
            transaction.id,
            expected_states=[transaction.state],
            changes={
                "owner": self.owner_id,
                "lease_expires_ms": current_time + self.lease_ms,
            },
            expected_owner=transaction.owner,
        )

        if taken is not None:
            logger.warning(
                "Took over transaction with expired lease",
                transaction_id=transaction.id,
                previous_owner=transaction.owner,
                owner=self.owner_id,
                state=transaction.state.value,
            )

        return taken

    def take_over_expired(self) -> List[Transaction]:
        """
        Take over every non-terminal transaction with a lapsed lease.

        Returns:
            Transactions now owned by this worker
        """
        current_time = self.clock()
        taken = []

        for transaction in self.store.find_transactions(OWNED_STATES):
            if transaction.owner == self.owner_id:
                continue
            if not transaction.is_lease_expired(current_time):
                continue

            result = self.take_over(transaction)
            if result is not None:
                taken.append(result)

        return taken
