"""
Error taxonomy for the transfer coordinator.

ClaimLost and PreconditionFailed are expected outcomes of concurrent workers
and are normally handled inside the coordinator. IrreversibleState is surfaced
to callers. RecordStoreUnavailable is the only retried error.
"""

from typing import Iterable, Optional

from twophaseledger.utils.retry import RetryableError


class LedgerError(Exception):
    """Base class for ledger errors."""
    pass


class ClaimLost(LedgerError):
    """Another owner won the claim race for a transaction."""

    def __init__(self, owner_id: str, transaction_id: Optional[str] = None):
        self.owner_id = owner_id
        self.transaction_id = transaction_id
        target = transaction_id or "any initial transaction"
        super().__init__(f"Owner {owner_id} lost claim on {target}")


class PreconditionFailed(LedgerError):
    """A conditional update found the record in an unexpected state."""

    def __init__(
        self,
        transaction_id: str,
        expected: Iterable,
        actual,
        step: str = "",
    ):
        self.transaction_id = transaction_id
        self.expected = sorted(getattr(s, "value", s) for s in expected)
        self.actual = getattr(actual, "value", actual)
        self.step = step
        super().__init__(
            f"{step or 'update'} on transaction {transaction_id}: "
            f"expected state in {self.expected}, found {self.actual}"
        )


class IrreversibleState(LedgerError):
    """Cancel requested on a transaction that already committed."""

    def __init__(self, transaction_id: str, state):
        self.transaction_id = transaction_id
        self.state = getattr(state, "value", state)
        super().__init__(
            f"Transaction {transaction_id} is {self.state} and cannot be cancelled; "
            f"create a compensating transaction instead"
        )


class RecordStoreUnavailable(RetryableError, LedgerError):
    """Transient storage failure. Safe to retry, every step is idempotent."""
    pass


class TransactionNotFound(LedgerError):
    """No transaction with the given id."""

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class AccountNotFound(LedgerError):
    """No account with the given id."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class InvalidTransfer(LedgerError, ValueError):
    """Transfer arguments violate the transaction invariants."""
    pass


class DuplicateRecord(LedgerError):
    """A record with the same id already exists."""

    def __init__(self, kind: str, record_id: str):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id} already exists")
