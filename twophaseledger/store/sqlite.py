"""
SQLite-backed record store.

Lets separate worker processes share one account ledger and transaction log
through a database file. Each public method runs in its own short
BEGIN IMMEDIATE transaction, which gives the single-record atomicity the
coordinator relies on; no method ever spans more than one logical record.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from twophaseledger.errors import (
    AccountNotFound,
    DuplicateRecord,
    RecordStoreUnavailable,
    TransactionNotFound,
)
from twophaseledger.ledger.account import Account, AccountCondition, AccountMutation
from twophaseledger.store.base import ANY_OWNER, RecordStore, validate_changes
from twophaseledger.transaction.state import Transaction, TransactionState
from twophaseledger.utils.logging import get_logger
from twophaseledger.utils.retry import is_retryable_error

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    balance INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_markers (
    account_id TEXT NOT NULL REFERENCES accounts(id),
    transaction_id TEXT NOT NULL,
    PRIMARY KEY (account_id, transaction_id)
);

CREATE TABLE IF NOT EXISTS transactions (
    id TEXT PRIMARY KEY,
    source TEXT NOT NULL,
    destination TEXT NOT NULL,
    value INTEGER NOT NULL CHECK (value > 0),
    state TEXT NOT NULL,
    owner TEXT,
    lease_expires_ms INTEGER NOT NULL DEFAULT 0,
    created_ms INTEGER NOT NULL,
    updated_ms INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transactions_state_owner
    ON transactions (state, owner);
"""

_TRANSACTION_COLUMNS = (
    "id, source, destination, value, state, owner, "
    "lease_expires_ms, created_ms, updated_ms"
)


class SQLiteRecordStore(RecordStore):
    """
    Record store persisted in a SQLite database file.

    An account record is its row in `accounts` plus its rows in
    `pending_markers`; both are read and written inside one database
    transaction, so the pending-set membership check and the balance
    increment are a single atomic compare-and-set.
    """

    def __init__(self, path: str, timeout_s: float = 5.0):
        """
        Open (and create if needed) the store.

        Args:
            path: Database file path
            timeout_s: How long to wait on a locked database before failing
        """
        self.path = Path(path)
        self.timeout_s = timeout_s

        if self.path.parent and not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)

        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

        logger.info("SQLiteRecordStore opened", path=str(self.path))

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Open a short-lived autocommit connection."""
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.timeout_s,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise RecordStoreUnavailable(f"Cannot open {self.path}: {e}") from e

        try:
            yield conn
        except sqlite3.OperationalError as e:
            if is_retryable_error(e):
                raise RecordStoreUnavailable(str(e)) from e
            raise
        finally:
            conn.close()

    @contextmanager
    def _atomic(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one write transaction."""
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # Accounts

    def insert_account(self, account: Account) -> None:
        with self._atomic() as conn:
            try:
                conn.execute(
                    "INSERT INTO accounts (id, name, balance) VALUES (?, ?, ?)",
                    (account.id, account.name, account.balance),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateRecord("Account", account.id) from e

            conn.executemany(
                "INSERT INTO pending_markers (account_id, transaction_id) VALUES (?, ?)",
                [(account.id, txn_id) for txn_id in sorted(account.pending_transactions)],
            )

    def get_account(self, account_id: str) -> Account:
        with self._connection() as conn:
            return self._read_account(conn, account_id)

    def list_accounts(self) -> List[Account]:
        with self._connection() as conn:
            ids = [row[0] for row in conn.execute("SELECT id FROM accounts ORDER BY id")]
            return [self._read_account(conn, account_id) for account_id in ids]

    def _read_account(self, conn: sqlite3.Connection, account_id: str) -> Account:
        row = conn.execute(
            "SELECT id, name, balance FROM accounts WHERE id = ?",
            (account_id,),
        ).fetchone()

        if row is None:
            raise AccountNotFound(account_id)

        pending = {
            r[0] for r in conn.execute(
                "SELECT transaction_id FROM pending_markers WHERE account_id = ?",
                (account_id,),
            )
        }

        return Account(id=row[0], name=row[1], balance=row[2], pending_transactions=pending)

    def update_account(
        self,
        account_id: str,
        condition: AccountCondition,
        mutation: AccountMutation,
    ) -> bool:
        with self._atomic() as conn:
            account = self._read_account(conn, account_id)

            if not condition.holds(account):
                return False

            if mutation.balance_delta:
                conn.execute(
                    "UPDATE accounts SET balance = balance + ? WHERE id = ?",
                    (mutation.balance_delta, account_id),
                )
            if mutation.add_pending is not None:
                conn.execute(
                    "INSERT OR IGNORE INTO pending_markers (account_id, transaction_id) "
                    "VALUES (?, ?)",
                    (account_id, mutation.add_pending),
                )
            if mutation.remove_pending is not None:
                conn.execute(
                    "DELETE FROM pending_markers WHERE account_id = ? AND transaction_id = ?",
                    (account_id, mutation.remove_pending),
                )

            return True

    # Transactions

    def insert_transaction(self, transaction: Transaction) -> None:
        row = transaction.to_dict()
        with self._atomic() as conn:
            try:
                conn.execute(
                    f"INSERT INTO transactions ({_TRANSACTION_COLUMNS}) "
                    "VALUES (:id, :source, :destination, :value, :state, :owner, "
                    ":lease_expires_ms, :created_ms, :updated_ms)",
                    row,
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateRecord("Transaction", transaction.id) from e

    def get_transaction(self, transaction_id: str) -> Transaction:
        with self._connection() as conn:
            return self._read_transaction(conn, transaction_id)

    def _read_transaction(self, conn: sqlite3.Connection, transaction_id: str) -> Transaction:
        row = conn.execute(
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ?",
            (transaction_id,),
        ).fetchone()

        if row is None:
            raise TransactionNotFound(transaction_id)

        return self._row_to_transaction(row)

    @staticmethod
    def _row_to_transaction(row: tuple) -> Transaction:
        return Transaction(
            id=row[0],
            source=row[1],
            destination=row[2],
            value=row[3],
            state=TransactionState(row[4]),
            owner=row[5],
            lease_expires_ms=row[6],
            created_ms=row[7],
            updated_ms=row[8],
        )

    def update_transaction(
        self,
        transaction_id: str,
        expected_states: Iterable[TransactionState],
        changes: Dict[str, Any],
        expected_owner: Any = ANY_OWNER,
    ) -> Optional[Transaction]:
        validate_changes(changes)
        expected = {s.value for s in expected_states}

        with self._atomic() as conn:
            current = self._read_transaction(conn, transaction_id)

            if current.state.value not in expected:
                return None
            if expected_owner is not ANY_OWNER and current.owner != expected_owner:
                return None

            params = {
                name: value.value if isinstance(value, TransactionState) else value
                for name, value in changes.items()
            }
            assignments = ", ".join(f"{name} = :{name}" for name in params)
            params["_id"] = transaction_id

            if assignments:
                conn.execute(
                    f"UPDATE transactions SET {assignments} WHERE id = :_id",
                    params,
                )

            return self._read_transaction(conn, transaction_id)

    def claim_transaction(
        self,
        owner_id: str,
        lease_expires_ms: int,
        now_ms: int,
    ) -> Optional[Transaction]:
        with self._atomic() as conn:
            row = conn.execute(
                "SELECT id FROM transactions WHERE state = ? AND owner IS NULL "
                "ORDER BY created_ms, id LIMIT 1",
                (TransactionState.INITIAL.value,),
            ).fetchone()

            if row is None:
                return None

            conn.execute(
                "UPDATE transactions SET state = ?, owner = ?, lease_expires_ms = ?, "
                "updated_ms = ? WHERE id = ?",
                (TransactionState.PENDING.value, owner_id, lease_expires_ms, now_ms, row[0]),
            )

            return self._read_transaction(conn, row[0])

    def find_transactions(
        self,
        states: Iterable[TransactionState],
        owner: Optional[str] = None,
    ) -> List[Transaction]:
        values = [s.value for s in states]
        if not values:
            return []

        placeholders = ", ".join("?" for _ in values)
        query = (
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions "
            f"WHERE state IN ({placeholders})"
        )
        params: list = list(values)

        if owner is not None:
            query += " AND owner = ?"
            params.append(owner)

        query += " ORDER BY created_ms, id"

        with self._connection() as conn:
            return [self._row_to_transaction(row) for row in conn.execute(query, params)]
