"""
Account entity.
"""

from dataclasses import dataclass, field
from typing import Optional, Set


@dataclass
class Account:
    """
    A ledger account.

    Attributes:
        id: Stable account identifier
        name: External label
        balance: Signed integer balance, may go transiently negative
        pending_transactions: Ids of applied but not yet settled transactions
    """
    id: str
    name: str = ""
    balance: int = 0
    pending_transactions: Set[str] = field(default_factory=set)

    def __post_init__(self):
        if not self.name:
            self.name = self.id

    def has_pending(self, transaction_id: str) -> bool:
        """Check for a pending marker."""
        return transaction_id in self.pending_transactions

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "balance": self.balance,
            "pending_transactions": sorted(self.pending_transactions),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Account":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            balance=data.get("balance", 0),
            pending_transactions=set(data.get("pending_transactions", [])),
        )


@dataclass(frozen=True)
class AccountCondition:
    """
    Precondition of a conditional account update.

    Attributes:
        pending_contains: Transaction id that must be in the pending set
        pending_excludes: Transaction id that must not be in the pending set
    """
    pending_contains: Optional[str] = None
    pending_excludes: Optional[str] = None

    def holds(self, account: Account) -> bool:
        """Evaluate against an account's current fields."""
        if self.pending_contains is not None and not account.has_pending(self.pending_contains):
            return False
        if self.pending_excludes is not None and account.has_pending(self.pending_excludes):
            return False
        return True


@dataclass(frozen=True)
class AccountMutation:
    """
    Mutation applied when an AccountCondition holds.

    Attributes:
        balance_delta: Signed increment applied to the balance
        add_pending: Transaction id added to the pending set
        remove_pending: Transaction id removed from the pending set
    """
    balance_delta: int = 0
    add_pending: Optional[str] = None
    remove_pending: Optional[str] = None

    def apply_to(self, account: Account) -> None:
        """Mutate an account in place."""
        account.balance += self.balance_delta
        if self.add_pending is not None:
            account.pending_transactions.add(self.add_pending)
        if self.remove_pending is not None:
            account.pending_transactions.discard(self.remove_pending)
