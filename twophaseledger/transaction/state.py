"""
Transaction state management.

Defines the transfer record, its states and the permitted state transitions.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


class TransactionState(Enum):
    """
    Transfer lifecycle states.

    State transitions:
    INITIAL → PENDING → COMMITTED → DONE
       ↘         ↘
        CANCELING → CANCELLED

    PENDING covers "claimed, accounts possibly applied, not committed".
    COMMITTED covers "committed, pending markers possibly not yet settled".
    """

    INITIAL = "initial"
    PENDING = "pending"
    COMMITTED = "committed"
    DONE = "done"
    CANCELING = "canceling"
    CANCELLED = "cancelled"

    def is_terminal(self) -> bool:
        """Check if state is terminal (done or cancelled)."""
        return self in (TransactionState.DONE, TransactionState.CANCELLED)

    def is_cancellable(self) -> bool:
        """Check if a cancel may still win against commit."""
        return self in (TransactionState.INITIAL, TransactionState.PENDING)

    def can_transition_to(self, new_state: 'TransactionState') -> bool:
        """
        Check if transition to new state is valid.

        Args:
            new_state: Target state

        Returns:
            True if transition is valid
        """
        return new_state in _VALID_TRANSITIONS.get(self, frozenset())

    def reaches(self, target: 'TransactionState') -> bool:
        """
        Check if this state equals target or lies beyond it on the same path.

        Used to decide whether a step whose precondition failed was already
        performed by another actor.
        """
        for path in (_COMMIT_PATH, _CANCEL_PATH):
            if self in path and target in path:
                return path.index(self) >= path.index(target)
        return False


_VALID_TRANSITIONS = {
    TransactionState.INITIAL: frozenset({
        TransactionState.PENDING,
        TransactionState.CANCELING,
    }),
    TransactionState.PENDING: frozenset({
        TransactionState.COMMITTED,
        TransactionState.CANCELING,
    }),
    TransactionState.COMMITTED: frozenset({TransactionState.DONE}),
    TransactionState.CANCELING: frozenset({TransactionState.CANCELLED}),
    TransactionState.DONE: frozenset(),  # Terminal
    TransactionState.CANCELLED: frozenset(),  # Terminal
}

_COMMIT_PATH = (
    TransactionState.INITIAL,
    TransactionState.PENDING,
    TransactionState.COMMITTED,
    TransactionState.DONE,
)

_CANCEL_PATH = (
    TransactionState.CANCELING,
    TransactionState.CANCELLED,
)


@dataclass
class Transaction:
    """
    Durable record of one transfer's intent and progress.

    Attributes:
        id: Transaction ID (immutable)
        source: Account debited
        destination: Account credited
        value: Positive amount moved
        state: Current state
        owner: Worker identity that claimed the transaction
        lease_expires_ms: Owner lease expiry timestamp (ms)
        created_ms: Creation timestamp (ms)
        updated_ms: Last state update timestamp (ms)
    """
    id: str
    source: str
    destination: str
    value: int
    state: TransactionState = TransactionState.INITIAL
    owner: Optional[str] = None
    lease_expires_ms: int = 0
    created_ms: int = 0
    updated_ms: int = 0

    def __post_init__(self):
        if self.created_ms == 0:
            self.created_ms = now_ms()
        if self.updated_ms == 0:
            self.updated_ms = self.created_ms

    def accounts(self) -> tuple:
        """Accounts touched, in the fixed source-then-destination order."""
        return (self.source, self.destination)

    def delta_for(self, account_id: str) -> int:
        """
        Signed balance effect of this transaction on an account.

        Args:
            account_id: Source or destination account

        Returns:
            -value for the source, +value for the destination
        """
        if account_id == self.source:
            return -self.value
        if account_id == self.destination:
            return self.value
        raise ValueError(f"Account {account_id} is not part of transaction {self.id}")

    def is_lease_expired(self, current_time: int) -> bool:
        """
        Check if the owner's lease has lapsed.

        Args:
            current_time: Current timestamp (ms)

        Returns:
            True if owned, non-terminal and past its lease
        """
        if self.owner is None or self.state.is_terminal():
            return False
        return current_time >= self.lease_expires_ms

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "source": self.source,
            "destination": self.destination,
            "value": self.value,
            "state": self.state.value,
            "owner": self.owner,
            "lease_expires_ms": self.lease_expires_ms,
            "created_ms": self.created_ms,
            "updated_ms": self.updated_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Transaction":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            source=data["source"],
            destination=data["destination"],
            value=data["value"],
            state=TransactionState(data["state"]),
            owner=data.get("owner"),
            lease_expires_ms=data.get("lease_expires_ms", 0),
            created_ms=data.get("created_ms", 0),
            updated_ms=data.get("updated_ms", 0),
        )
