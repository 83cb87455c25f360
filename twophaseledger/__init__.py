"""
twophaseledger - multi-account transfers on a single-record-atomic store.

Implements the two-phase-commit pattern for document stores:
- Durable transfer state machine (initial → pending → committed → done)
- Idempotent apply/commit/settle/finish steps as conditional updates
- Cancellation that loses every race against commit
- Atomic ownership claims with leases for concurrent workers
- A recovery scanner that resumes interrupted transfers
"""

__version__ = "0.1.0"

from twophaseledger import errors
from twophaseledger.ledger import AccountLedger
from twophaseledger.transaction import (
    RecoveryScanner,
    Transaction,
    TransactionCoordinator,
    TransactionState,
)
from twophaseledger.store import open_store
from twophaseledger.worker import Worker

__all__ = [
    "errors",
    "AccountLedger",
    "RecoveryScanner",
    "Transaction",
    "TransactionCoordinator",
    "TransactionState",
    "open_store",
    "Worker",
]
