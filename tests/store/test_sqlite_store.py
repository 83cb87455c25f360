"""
SQLite-specific record store tests.
"""

import sqlite3
import tempfile
from pathlib import Path

import pytest

from twophaseledger.errors import RecordStoreUnavailable
from twophaseledger.ledger import Account, AccountCondition, AccountMutation
from twophaseledger.store import SQLiteRecordStore
from twophaseledger.transaction import Transaction, TransactionState


class TestSQLiteRecordStore:
    """Test SQLiteRecordStore."""

    @pytest.fixture
    def temp_dir(self):
        """Create a temporary directory for tests."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    def test_creates_parent_directory(self, temp_dir):
        path = temp_dir / "nested" / "ledger.sqlite"

        SQLiteRecordStore(str(path))

        assert path.exists()

    def test_records_survive_reopen(self, temp_dir):
        """A second process opening the same file sees the same records."""
        path = str(temp_dir / "ledger.sqlite")

        first = SQLiteRecordStore(path)
        first.insert_account(Account(id="A", balance=1000))
        first.insert_transaction(Transaction(id="T1", source="A", destination="B", value=1))
        first.update_account(
            "A",
            AccountCondition(pending_excludes="T1"),
            AccountMutation(balance_delta=-1, add_pending="T1"),
        )

        second = SQLiteRecordStore(path)
        account = second.get_account("A")

        assert account.balance == 999
        assert account.pending_transactions == {"T1"}
        assert second.get_transaction("T1").state == TransactionState.INITIAL

    def test_insert_account_with_markers(self, temp_dir):
        store = SQLiteRecordStore(str(temp_dir / "ledger.sqlite"))

        store.insert_account(Account(id="A", pending_transactions={"T1", "T2"}))

        assert store.get_account("A").pending_transactions == {"T1", "T2"}

    def test_locked_database_is_unavailable(self, temp_dir):
        """A write lock held elsewhere surfaces as a retryable error."""
        path = str(temp_dir / "ledger.sqlite")
        store = SQLiteRecordStore(path, timeout_s=0.05)
        store.insert_account(Account(id="A", balance=10))

        blocker = sqlite3.connect(path, isolation_level=None)
        blocker.execute("BEGIN IMMEDIATE")
        try:
            with pytest.raises(RecordStoreUnavailable):
                store.update_account("A", AccountCondition(), AccountMutation(balance_delta=1))
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        assert store.get_account("A").balance == 10

    def test_failed_update_rolls_back(self, temp_dir):
        store = SQLiteRecordStore(str(temp_dir / "ledger.sqlite"))
        store.insert_transaction(Transaction(id="T1", source="A", destination="B", value=1))

        with pytest.raises(ValueError):
            store.update_transaction("T1", [TransactionState.INITIAL], {"source": "Z"})

        assert store.get_transaction("T1").source == "A"
