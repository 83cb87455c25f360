"""
In-memory record store.

Stands in for a single-record-atomic storage engine inside one process.
Records are copied on every read and write so callers never share mutable
state with the store.
"""

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional

from twophaseledger.errors import (
    AccountNotFound,
    DuplicateRecord,
    TransactionNotFound,
)
from twophaseledger.ledger.account import Account, AccountCondition, AccountMutation
from twophaseledger.store.base import ANY_OWNER, RecordStore, validate_changes
from twophaseledger.transaction.state import Transaction, TransactionState
from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)


class MemoryRecordStore(RecordStore):
    """
    Record store backed by dictionaries.

    The internal lock models the engine's per-record atomicity; it is never
    exposed to, or relied upon by, the coordinator.
    """

    def __init__(self):
        """Initialize empty store."""
        self._accounts: Dict[str, Account] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._lock = threading.RLock()

        logger.debug("MemoryRecordStore initialized")

    def insert_account(self, account: Account) -> None:
        with self._lock:
            if account.id in self._accounts:
                raise DuplicateRecord("Account", account.id)
            self._accounts[account.id] = copy.deepcopy(account)

    def get_account(self, account_id: str) -> Account:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)
            return copy.deepcopy(account)

    def list_accounts(self) -> List[Account]:
        with self._lock:
            return [
                copy.deepcopy(self._accounts[account_id])
                for account_id in sorted(self._accounts)
            ]

    def update_account(
        self,
        account_id: str,
        condition: AccountCondition,
        mutation: AccountMutation,
    ) -> bool:
        with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                raise AccountNotFound(account_id)

            if not condition.holds(account):
                return False

            mutation.apply_to(account)
            return True

    def insert_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            if transaction.id in self._transactions:
                raise DuplicateRecord("Transaction", transaction.id)
            self._transactions[transaction.id] = copy.deepcopy(transaction)

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self._lock:
            transaction = self._transactions.get(transaction_id)
            if transaction is None:
                raise TransactionNotFound(transaction_id)
            return copy.deepcopy(transaction)

    def update_transaction(
        self,
        transaction_id: str,
        expected_states: Iterable[TransactionState],
        changes: Dict[str, Any],
        expected_owner: Any = ANY_OWNER,
    ) -> Optional[Transaction]:
        validate_changes(changes)
        expected = set(expected_states)

        with self._lock:
            transaction = self._transactions.get(transaction_id)
            if transaction is None:
                raise TransactionNotFound(transaction_id)

            if transaction.state not in expected:
                return None
            if expected_owner is not ANY_OWNER and transaction.owner != expected_owner:
                return None

            for name, value in changes.items():
                setattr(transaction, name, value)

            return copy.deepcopy(transaction)

    def claim_transaction(
        self,
        owner_id: str,
        lease_expires_ms: int,
        now_ms: int,
    ) -> Optional[Transaction]:
        with self._lock:
            candidates = [
                txn for txn in self._transactions.values()
                if txn.state == TransactionState.INITIAL and txn.owner is None
            ]
            if not candidates:
                return None

            transaction = min(candidates, key=lambda t: (t.created_ms, t.id))
            transaction.state = TransactionState.PENDING
            transaction.owner = owner_id
            transaction.lease_expires_ms = lease_expires_ms
            transaction.updated_ms = now_ms

            return copy.deepcopy(transaction)

    def find_transactions(
        self,
        states: Iterable[TransactionState],
        owner: Optional[str] = None,
    ) -> List[Transaction]:
        wanted = set(states)

        with self._lock:
            matches = [
                txn for txn in self._transactions.values()
                if txn.state in wanted and (owner is None or txn.owner == owner)
            ]
            matches.sort(key=lambda t: (t.created_ms, t.id))
            return [copy.deepcopy(txn) for txn in matches]
