"""
Recovery scanner.

Finds transactions left in a non-terminal state by a crashed or interrupted
worker and re-drives the coordinator from the step their state implies:

    PENDING   → apply, commit, settle, finish
    COMMITTED → settle, finish
    CANCELING → cancel_undo, cancel_finish

No progress is tracked within a step; the whole idempotent remainder is
re-run and each step's guard absorbs work already done.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from twophaseledger.errors import LedgerError
from twophaseledger.transaction.state import TransactionState
from twophaseledger.utils.logging import get_logger

logger = get_logger(__name__)

SCOPE_OWNER = "owner"
SCOPE_GLOBAL = "global"

_RESUMABLE_STATES = (
    TransactionState.PENDING,
    TransactionState.COMMITTED,
    TransactionState.CANCELING,
)


@dataclass
class RecoveryReport:
    """
    Outcome of one scan.

    Attributes:
        pending: PENDING transactions resumed
        committed: COMMITTED transactions resumed
        canceling: CANCELING transactions resumed
        taken_over: Transactions reassigned from expired owners
        skipped: Transactions left alone because another worker holds a live lease
        completed: Transactions that reached a terminal state
        failed: Ids whose resumption raised
    """
    pending: int = 0
    committed: int = 0
    canceling: int = 0
    taken_over: int = 0
    skipped: int = 0
    completed: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def resumed(self) -> int:
        return self.pending + self.committed + self.canceling


class RecoveryScanner:
    """
    Re-drives interrupted transactions.

    In owner scope the scanner only touches transactions owned by its
    coordinator's identity, after taking over any whose owner's lease has
    lapsed. In global scope it looks at every owner's transactions but takes
    ownership before resuming one, and skips those under a live lease.
    Both scopes heartbeat the leases this worker already holds.
    """

    def __init__(
        self,
        coordinator,
        scope: str = SCOPE_OWNER,
        interval_ms: int = 10000,
    ):
        """
        Initialize recovery scanner.

        Args:
            coordinator: TransactionCoordinator used to resume transactions
            scope: "owner" or "global"
            interval_ms: Period of the background scan
        """
        if scope not in (SCOPE_OWNER, SCOPE_GLOBAL):
            raise ValueError(f"Unknown recovery scope: {scope}")

        self.coordinator = coordinator
        self.scope = scope
        self.interval_ms = interval_ms

        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        logger.info(
            "RecoveryScanner initialized",
            owner=coordinator.owner_id,
            scope=scope,
            interval_ms=interval_ms,
        )

    def scan(self) -> RecoveryReport:
        """
        Resume every non-terminal transaction within scope once.

        A failure on one transaction is logged and recorded; the scan
        continues with the next.

        Returns:
            RecoveryReport
        """
        report = RecoveryReport()
        claimer = self.coordinator.claimer

        if self.scope == SCOPE_OWNER:
            report.taken_over = len(claimer.take_over_expired())
            owner = self.coordinator.owner_id
        else:
            owner = None

        claimer.renew_all()

        for state in _RESUMABLE_STATES:
            for transaction in self.coordinator.transaction_log.find_by_state([state], owner=owner):
                transaction = self._acquire(transaction, report)
                if transaction is not None:
                    self._resume(transaction, report)

        logger.info(
            "Recovery scan complete",
            scope=self.scope,
            pending=report.pending,
            committed=report.committed,
            canceling=report.canceling,
            taken_over=report.taken_over,
            skipped=report.skipped,
            completed=report.completed,
            failed=len(report.failed),
        )

        return report

    def _acquire(self, transaction, report: RecoveryReport):
        """
        Make sure this worker owns a transaction before resuming it.

        Returns:
            The record as returned by the take-over compare-and-set, the
            snapshot itself if already owned, or None to skip it
        """
        if transaction.owner == self.coordinator.owner_id:
            return transaction

        taken = self.coordinator.claimer.take_over(transaction)
        if taken is None:
            # Live lease, or the owner moved the record since the query
            logger.debug(
                "Skipping transaction owned elsewhere",
                transaction_id=transaction.id,
                owner=transaction.owner,
                state=transaction.state.value,
            )
            report.skipped += 1
            return None

        report.taken_over += 1
        return taken

    def _resume(self, transaction, report: RecoveryReport) -> None:
        """Resume one transaction and record the outcome."""
        state = transaction.state

        logger.info(
            "Resuming transaction",
            transaction_id=transaction.id,
            state=state.value,
            owner=transaction.owner,
        )

        try:
            if state == TransactionState.PENDING:
                report.pending += 1
                result = self.coordinator.run_pending_step(transaction)
            elif state == TransactionState.COMMITTED:
                report.committed += 1
                result = self.coordinator.run_committed_step(transaction)
            else:
                report.canceling += 1
                result = self.coordinator.run_canceling_step(transaction)

        except LedgerError as e:
            logger.error(
                "Failed to resume transaction",
                transaction_id=transaction.id,
                state=state.value,
                error=str(e),
            )
            report.failed.append(transaction.id)
            return

        if result.state.is_terminal():
            report.completed += 1

    def start(self, run_immediately: bool = True) -> None:
        """
        Start periodic scanning in a background thread.

        Args:
            run_immediately: Scan once before the first interval elapses
        """
        if self._running:
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._scan_loop,
            args=(run_immediately,),
            name=f"recovery-scanner-{self.coordinator.owner_id}",
            daemon=True,
        )
        self._thread.start()

        logger.info("Started recovery scanner thread")

    def stop(self) -> None:
        """Stop the background thread."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        if self._thread:
            self._thread.join(timeout=5.0)

        logger.info("Stopped recovery scanner thread")

    def is_running(self) -> bool:
        return self._running

    def _scan_loop(self, run_immediately: bool) -> None:
        """Periodic scan loop."""
        if run_immediately:
            self._safe_scan()

        while not self._stop_event.wait(self.interval_ms / 1000.0):
            self._safe_scan()

    def _safe_scan(self) -> None:
        started = time.monotonic()
        try:
            self.scan()
        except LedgerError as e:
            # Store stayed unavailable past all retries; next tick tries again
            logger.error("Recovery scan error", error=str(e))
        else:
            logger.debug(
                "Recovery scan timing",
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
