"""
Record store contract.

The store guarantees atomicity for a single record only. Cross-record
atomicity is built on top of it by the transaction coordinator, which
expresses every step as one of the conditional updates below.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from twophaseledger.ledger.account import Account, AccountCondition, AccountMutation
from twophaseledger.transaction.state import Transaction, TransactionState


class _AnyOwner:
    """Sentinel: do not guard an update on the current owner."""

    def __repr__(self):
        return "ANY_OWNER"


ANY_OWNER = _AnyOwner()

# Fields of a transaction a conditional update may change
MUTABLE_TRANSACTION_FIELDS = frozenset({"state", "owner", "lease_expires_ms", "updated_ms"})


class RecordStore(ABC):
    """
    Durable keyed storage of Account and Transaction records.

    Implementations must make each method atomic with respect to the one
    record it touches, and raise RecordStoreUnavailable on transient failures.
    """

    # Accounts

    @abstractmethod
    def insert_account(self, account: Account) -> None:
        """
        Insert a new account.

        Raises:
            DuplicateRecord: If the id already exists
        """

    @abstractmethod
    def get_account(self, account_id: str) -> Account:
        """
        Read an account.

        Raises:
            AccountNotFound: If no such account
        """

    @abstractmethod
    def list_accounts(self) -> List[Account]:
        """Read all accounts, ordered by id."""

    @abstractmethod
    def update_account(
        self,
        account_id: str,
        condition: AccountCondition,
        mutation: AccountMutation,
    ) -> bool:
        """
        Atomically apply mutation if condition holds on the current record.

        Args:
            account_id: Account to update
            condition: Set-membership precondition on the pending set
            mutation: Balance increment and pending set changes

        Returns:
            True if the condition held and the mutation was applied

        Raises:
            AccountNotFound: If no such account
        """

    # Transactions

    @abstractmethod
    def insert_transaction(self, transaction: Transaction) -> None:
        """
        Insert a new transaction.

        Raises:
            DuplicateRecord: If the id already exists
        """

    @abstractmethod
    def get_transaction(self, transaction_id: str) -> Transaction:
        """
        Read a transaction.

        Raises:
            TransactionNotFound: If no such transaction
        """

    @abstractmethod
    def update_transaction(
        self,
        transaction_id: str,
        expected_states: Iterable[TransactionState],
        changes: Dict[str, Any],
        expected_owner: Any = ANY_OWNER,
    ) -> Optional[Transaction]:
        """
        Compare-and-set on a transaction's state (and optionally owner).

        Args:
            transaction_id: Transaction to update
            expected_states: States the record must currently be in
            changes: New values for fields in MUTABLE_TRANSACTION_FIELDS
            expected_owner: Owner the record must currently have, or ANY_OWNER

        Returns:
            The updated transaction, or None if the precondition failed

        Raises:
            TransactionNotFound: If no such transaction
        """

    @abstractmethod
    def claim_transaction(
        self,
        owner_id: str,
        lease_expires_ms: int,
        now_ms: int,
    ) -> Optional[Transaction]:
        """
        Find the oldest unowned initial transaction and claim it atomically.

        Sets state to PENDING, owner to owner_id and the lease expiry in the
        same operation that selects the record.

        Returns:
            The claimed transaction, or None if none is available
        """

    @abstractmethod
    def find_transactions(
        self,
        states: Iterable[TransactionState],
        owner: Optional[str] = None,
    ) -> List[Transaction]:
        """
        Query transactions by state, oldest first.

        Args:
            states: States to match
            owner: Restrict to this owner if given
        """

    def close(self) -> None:
        """Release resources held by the store."""


def validate_changes(changes: Dict[str, Any]) -> None:
    """
    Reject changes to immutable transaction fields.

    Args:
        changes: Proposed field changes

    Raises:
        ValueError: If a field is not mutable
    """
    illegal = set(changes) - MUTABLE_TRANSACTION_FIELDS
    if illegal:
        raise ValueError(f"Immutable transaction fields: {sorted(illegal)}")
