"""
Transaction log.

The append-mostly set of Transaction records. A transaction is inserted once
in INITIAL state and never deleted; its record is the audit trail of the
transfer.
"""

import uuid
from typing import Dict, Iterable, List, Optional

from twophaseledger.errors import InvalidTransfer, TransactionNotFound
from twophaseledger.transaction.state import Transaction, TransactionState, now_ms
from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)


class TransactionLog:
    """
    Transaction records held in a record store.

    Only creation and reads live here. State transitions are written by the
    coordinator and the ownership claim through conditional updates.
    """

    def __init__(self, store, id_prefix: str = "txn"):
        """
        Initialize transaction log.

        Args:
            store: RecordStore holding the transactions
            id_prefix: Prefix of generated transaction ids
        """
        self.store = store
        self.id_prefix = id_prefix

    def new_id(self) -> str:
        """Generate a fresh transaction id."""
        return f"{self.id_prefix}-{uuid.uuid4().hex}"

    def create(
        self,
        source: str,
        destination: str,
        value: int,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        """
        Insert a new transfer in INITIAL state.

        Args:
            source: Account to debit
            destination: Account to credit
            value: Positive integer amount
            transaction_id: Explicit id (generated if omitted)

        Returns:
            The stored transaction

        Raises:
            InvalidTransfer: If source equals destination or value is not positive
            AccountNotFound: If either account does not exist
        """
        if source == destination:
            raise InvalidTransfer(f"Source and destination are both {source}")

        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise InvalidTransfer(f"Transfer value must be a positive integer, got {value!r}")

        # Both lookups raise AccountNotFound
        self.store.get_account(source)
        self.store.get_account(destination)

        created = now_ms()
        transaction = Transaction(
            id=transaction_id or self.new_id(),
            source=source,
            destination=destination,
            value=value,
            state=TransactionState.INITIAL,
            created_ms=created,
            updated_ms=created,
        )
        self.store.insert_transaction(transaction)

        logger.info(
            "Transaction created",
            transaction_id=transaction.id,
            source=source,
            destination=destination,
            value=value,
        )

        return transaction

    def get(self, transaction_id: str) -> Transaction:
        """
        Read a transaction.

        Raises:
            TransactionNotFound: If no such transaction
        """
        return self.store.get_transaction(transaction_id)

    def find(self, transaction_id: str) -> Optional[Transaction]:
        """Read a transaction, or None if it does not exist."""
        try:
            return self.store.get_transaction(transaction_id)
        except TransactionNotFound:
            return None

    def find_by_state(
        self,
        states: Iterable[TransactionState],
        owner: Optional[str] = None,
    ) -> List[Transaction]:
        """
        Query transactions by state, oldest first.

        Args:
            states: States to match
            owner: Restrict to one owner identity
        """
        return self.store.find_transactions(states, owner=owner)

    def get_stats(self) -> Dict:
        """
        Get log statistics.

        Returns:
            Statistics dict
        """
        state_counts = {}
        for txn in self.store.find_transactions(list(TransactionState)):
            state = txn.state.value
            state_counts[state] = state_counts.get(state, 0) + 1

        return {
            "total_transactions": sum(state_counts.values()),
            "state_counts": state_counts,
        }
