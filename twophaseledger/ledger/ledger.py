"""
Account ledger.

Read-side view of the Account records plus checks of the invariants that tie
balances and pending markers to the transaction log.
"""

from typing import Dict, List, Optional

from twophaseledger.ledger.account import Account
from twophaseledger.transaction.state import TransactionState
from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)

# States in which a transaction's pending markers legitimately exist
_MARKED_STATES = (TransactionState.PENDING, TransactionState.COMMITTED)


class AccountLedger:
    """
    The set of accounts held in a record store.

    Account creation lives here; balances and pending sets are only ever
    mutated by the transaction coordinator.
    """

    def __init__(self, store):
        """
        Initialize ledger.

        Args:
            store: RecordStore holding the accounts
        """
        self.store = store

    def open_account(
        self,
        account_id: str,
        name: Optional[str] = None,
        balance: int = 0,
    ) -> Account:
        """
        Create an account.

        Args:
            account_id: Stable account identifier
            name: External label (defaults to the id)
            balance: Opening balance

        Returns:
            The created account

        Raises:
            DuplicateRecord: If the account already exists
        """
        account = Account(id=account_id, name=name or account_id, balance=balance)
        self.store.insert_account(account)

        logger.info(
            "Account opened",
            account_id=account_id,
            balance=balance,
        )

        return account

    def get(self, account_id: str) -> Account:
        """Read one account."""
        return self.store.get_account(account_id)

    def balances(self) -> Dict[str, int]:
        """Map of account id to balance."""
        return {account.id: account.balance for account in self.store.list_accounts()}

    def total_balance(self) -> int:
        """Sum of all balances. Constant under any number of transfers."""
        return sum(self.balances().values())

    def check_pending_invariant(self, transaction_log) -> List[str]:
        """
        Verify every pending marker against the transaction log.

        A marker T on an account requires transaction T to exist, to name
        the account, and to be PENDING or COMMITTED. The converse direction
        only holds between steps (apply and settle touch one account at a
        time), so it is left to callers that know the system is quiescent.

        Args:
            transaction_log: TransactionLog to check against

        Returns:
            Human-readable violations, empty if consistent
        """
        violations = []

        for account in self.store.list_accounts():
            for txn_id in sorted(account.pending_transactions):
                txn = transaction_log.find(txn_id)
                if txn is None:
                    violations.append(
                        f"{account.id}: marker {txn_id} has no transaction"
                    )
                elif account.id not in txn.accounts():
                    violations.append(
                        f"{account.id}: marker {txn_id} names other accounts"
                    )
                elif txn.state not in _MARKED_STATES:
                    violations.append(
                        f"{account.id}: marker {txn_id} in state {txn.state.value}"
                    )

        if violations:
            logger.warning("Pending invariant violated", violations=len(violations))

        return violations
