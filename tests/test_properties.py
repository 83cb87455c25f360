"""
System-level properties: conservation, idempotence, pending-set correctness,
claim exclusivity, recovery convergence and commit-wins-race.
"""

import random
import tempfile
import threading
from pathlib import Path

import pytest

from twophaseledger.errors import IrreversibleState, PreconditionFailed
from twophaseledger.ledger import AccountLedger
from twophaseledger.store import MemoryRecordStore, SQLiteRecordStore
from twophaseledger.transaction import (
    RecoveryScanner,
    TransactionCoordinator,
    TransactionState,
)
from twophaseledger.utils.retry import RetryConfig

FAST_RETRY = RetryConfig(max_retries=20, retry_backoff_ms=1, retry_jitter_ms=2)


class WorkerCrashed(Exception):
    """Raised by CrashingStore to stop a worker between two operations."""


class CrashingStore(MemoryRecordStore):
    """
    Memory store that crashes the caller after a budget of effective writes.

    Once the budget is spent, the next write attempt raises before touching
    the record. Writes whose condition fails do not spend budget.
    """

    def __init__(self):
        super().__init__()
        self.budget = None

    def _check(self):
        if self.budget is not None and self.budget <= 0:
            raise WorkerCrashed()

    def _spend(self, effective):
        if effective and self.budget is not None:
            self.budget -= 1

    def update_account(self, account_id, condition, mutation):
        self._check()
        changed = super().update_account(account_id, condition, mutation)
        self._spend(changed)
        return changed

    def update_transaction(self, transaction_id, expected_states, changes, **kwargs):
        self._check()
        result = super().update_transaction(transaction_id, expected_states, changes, **kwargs)
        self._spend(result is not None)
        return result

    def claim_transaction(self, owner_id, lease_expires_ms, now_ms):
        self._check()
        result = super().claim_transaction(owner_id, lease_expires_ms, now_ms)
        self._spend(result is not None)
        return result


def make_coordinator(store, owner_id="worker-1"):
    return TransactionCoordinator(
        store,
        owner_id=owner_id,
        retry_config=FAST_RETRY,
    )


def assert_quiescent(ledger, coordinator, expected_total):
    """No markers left, total conserved, every marker invariant holds."""
    assert ledger.total_balance() == expected_total
    for account_id in ledger.balances():
        assert ledger.get(account_id).pending_transactions == set()
    assert ledger.check_pending_invariant(coordinator.transaction_log) == []


class TestConservation:
    """Money is moved, never created or destroyed."""

    def test_random_transfers(self):
        rng = random.Random(7)
        store = MemoryRecordStore()
        ledger = AccountLedger(store)
        accounts = ["A", "B", "C", "D"]
        for account_id in accounts:
            ledger.open_account(account_id, balance=1000)

        coordinator = make_coordinator(store)
        expected = dict.fromkeys(accounts, 1000)

        for _ in range(50):
            source, destination = rng.sample(accounts, 2)
            value = rng.randint(1, 300)
            coordinator.create_transaction(source, destination, value)
            expected[source] -= value
            expected[destination] += value

        while coordinator.process_next() is not None:
            pass

        assert ledger.balances() == expected
        assert_quiescent(ledger, coordinator, 4000)

    def test_concurrent_workers_share_backlog(self):
        """Many workers drain one backlog; each transfer applies exactly once."""
        store = MemoryRecordStore()
        ledger = AccountLedger(store)
        for account_id in ("A", "B", "C"):
            ledger.open_account(account_id, balance=500)

        creator = make_coordinator(store, "creator")
        ids = [
            creator.create_transaction(src, dst, 10)
            for src, dst in [("A", "B"), ("B", "C"), ("C", "A")] * 20
        ]

        def worker(worker_id):
            coordinator = make_coordinator(store, worker_id)
            while coordinator.process_next() is not None:
                pass

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for txn_id in ids:
            assert creator.transaction_log.get(txn_id).state == TransactionState.DONE
        # Each account paid and received 20 x 10
        assert ledger.balances() == {"A": 500, "B": 500, "C": 500}
        assert_quiescent(ledger, creator, 1500)


class TestGlobalRepairAlongsideOwners:
    """A global repair scan running next to live owners never moves money twice."""

    def test_repair_loop_during_backlog(self):
        store = MemoryRecordStore()
        ledger = AccountLedger(store)
        ledger.open_account("A", balance=1000)
        ledger.open_account("B", balance=1000)

        creator = make_coordinator(store, "creator")
        for _ in range(30):
            creator.create_transaction("A", "B", 10)

        done = threading.Event()
        failed = []
        scanner = RecoveryScanner(make_coordinator(store, "repair"), scope="global")

        def repair():
            while not done.is_set():
                failed.extend(scanner.scan().failed)

        def worker(worker_id):
            coordinator = make_coordinator(store, worker_id)
            while coordinator.process_next() is not None:
                pass

        repairer = threading.Thread(target=repair)
        repairer.start()
        workers = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(3)]
        for t in workers:
            t.start()
        for t in workers:
            t.join()
        done.set()
        repairer.join()

        assert failed == []
        assert ledger.balances() == {"A": 700, "B": 1300}
        assert_quiescent(ledger, creator, 2000)


class TestSharedSQLiteStore:
    """Separate store handles on one file stand in for separate processes."""

    @pytest.fixture
    def db_path(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield str(Path(tmpdir) / "ledger.sqlite")

    def test_workers_on_separate_connections(self, db_path):
        setup = SQLiteRecordStore(db_path)
        ledger = AccountLedger(setup)
        ledger.open_account("A", balance=1000)
        ledger.open_account("B", balance=1000)

        creator = make_coordinator(setup, "creator")
        ids = [creator.create_transaction("A", "B", 5) for _ in range(20)]

        processed = {}
        lock = threading.Lock()

        def worker(worker_id):
            coordinator = make_coordinator(SQLiteRecordStore(db_path), worker_id)
            while True:
                txn = coordinator.process_next()
                if txn is None:
                    return
                with lock:
                    processed.setdefault(txn.id, []).append(worker_id)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(processed) == sorted(ids)
        assert all(len(owners) == 1 for owners in processed.values())
        for txn_id, owners in processed.items():
            assert creator.transaction_log.get(txn_id).owner == owners[0]

        assert ledger.balances() == {"A": 900, "B": 1100}
        assert_quiescent(ledger, creator, 2000)


class TestRecoveryConvergence:
    """A crash between any two writes is repaired by recovery."""

    # claim, apply x2, commit, settle x2, finish
    COMMIT_PATH_WRITES = 7

    def _setup(self):
        store = CrashingStore()
        ledger = AccountLedger(store)
        ledger.open_account("A", balance=1000)
        ledger.open_account("B", balance=1000)
        return store, ledger

    @pytest.mark.parametrize("crash_after", range(COMMIT_PATH_WRITES))
    def test_commit_path(self, crash_after):
        store, ledger = self._setup()
        coordinator = make_coordinator(store)
        txn_id = coordinator.create_transaction("A", "B", 100)

        store.budget = crash_after
        with pytest.raises(WorkerCrashed):
            coordinator.process_next()
        store.budget = None

        # Restarted worker: recovery first, then the backlog
        restarted = make_coordinator(store)
        scanner = RecoveryScanner(restarted)
        for _ in range(3):
            scanner.scan()
        restarted.process_next()

        assert restarted.transaction_log.get(txn_id).state == TransactionState.DONE
        assert ledger.balances() == {"A": 900, "B": 1100}
        assert_quiescent(ledger, restarted, 2000)

    @pytest.mark.parametrize("crash_after", range(6))
    def test_cancel_path(self, crash_after):
        """claim, apply x2, then cancel_begin, undo x2, cancel_finish crash points."""
        store, ledger = self._setup()
        coordinator = make_coordinator(store)
        txn = coordinator.claim(coordinator.create_transaction("A", "B", 100))
        coordinator.apply(txn)

        store.budget = crash_after
        try:
            coordinator.request_cancel(txn.id)
        except WorkerCrashed:
            pass
        store.budget = None

        report = RecoveryScanner(make_coordinator(store)).scan()
        final = coordinator.transaction_log.get(txn.id)

        if crash_after == 0:
            # Crashed before cancel_begin; recovery completes the transfer
            assert final.state == TransactionState.DONE
            assert ledger.balances() == {"A": 900, "B": 1100}
        else:
            assert final.state == TransactionState.CANCELLED
            assert ledger.balances() == {"A": 1000, "B": 1000}

        assert report.failed == []
        assert_quiescent(ledger, coordinator, 2000)

    def test_repeated_crashes_converge(self):
        """Crash on every restart; each restart still makes progress."""
        store, ledger = self._setup()
        coordinator = make_coordinator(store)
        txn_id = coordinator.create_transaction("A", "B", 100)

        store.budget = 1
        with pytest.raises(WorkerCrashed):
            coordinator.process_next()

        scans = 0
        while coordinator.transaction_log.get(txn_id).state != TransactionState.DONE:
            assert scans < 10
            # One write for the lease renewal, one for a step
            store.budget = 2
            try:
                RecoveryScanner(make_coordinator(store)).scan()
            except WorkerCrashed:
                pass
            scans += 1

        store.budget = None
        assert ledger.balances() == {"A": 900, "B": 1100}
        assert_quiescent(ledger, coordinator, 2000)


class TestCommitWinsRace:
    """Concurrent commit and cancel_begin: exactly one wins."""

    @pytest.mark.parametrize("round_", range(25))
    def test_single_winner(self, round_):
        store = MemoryRecordStore()
        ledger = AccountLedger(store)
        ledger.open_account("A", balance=1000)
        ledger.open_account("B", balance=1000)

        committer = make_coordinator(store, "worker-1")
        canceller = make_coordinator(store, "operator")
        txn = committer.claim(committer.create_transaction("A", "B", 100))
        committer.apply(txn)

        barrier = threading.Barrier(2)
        outcomes = {}

        def commit():
            barrier.wait()
            try:
                committer.commit(txn)
                outcomes["commit"] = True
            except PreconditionFailed:
                outcomes["commit"] = False

        def cancel():
            barrier.wait()
            try:
                canceller.cancel_begin(txn)
                outcomes["cancel"] = True
            except IrreversibleState:
                outcomes["cancel"] = False

        threads = [threading.Thread(target=commit), threading.Thread(target=cancel)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes["commit"] != outcomes["cancel"]

        state = committer.transaction_log.get(txn.id).state
        if outcomes["commit"]:
            assert state == TransactionState.COMMITTED
        else:
            assert state == TransactionState.CANCELING

        # Either way the owner's recovery converges consistently
        RecoveryScanner(committer).scan()
        final = committer.transaction_log.get(txn.id).state
        assert final in (TransactionState.DONE, TransactionState.CANCELLED)
        assert_quiescent(ledger, committer, 2000)
