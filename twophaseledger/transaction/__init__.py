"""
Two-phase commit of transfers over a single-record-atomic store.

Provides the transfer state machine, ownership claims, the coordinator and
the recovery scanner.
"""

from twophaseledger.transaction.state import (
    Transaction,
    TransactionState,
)
from twophaseledger.transaction.log import TransactionLog
from twophaseledger.transaction.claim import OwnershipClaim
from twophaseledger.transaction.coordinator import TransactionCoordinator
from twophaseledger.transaction.recovery import (
    RecoveryReport,
    RecoveryScanner,
)

__all__ = [
    # State
    "Transaction",
    "TransactionState",
    # Transaction Log
    "TransactionLog",
    # Ownership
    "OwnershipClaim",
    # Coordinator
    "TransactionCoordinator",
    # Recovery
    "RecoveryReport",
    "RecoveryScanner",
]
