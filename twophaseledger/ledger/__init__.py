"""
Account ledger.

Accounts, their balances and pending-transaction markers.
"""

from twophaseledger.ledger.account import (
    Account,
    AccountCondition,
    AccountMutation,
)
from twophaseledger.ledger.ledger import AccountLedger

__all__ = [
    "Account",
    "AccountCondition",
    "AccountMutation",
    "AccountLedger",
]
