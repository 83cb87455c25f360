"""
Ledger worker.

One worker process: a coordinator bound to the worker identity, a recovery
scanner that runs at startup and on a timer, and a loop that drains the
INITIAL backlog. Any number of workers may share one record store.
"""

from typing import Optional

from twophaseledger.errors import LedgerError
from twophaseledger.store import open_store
from twophaseledger.transaction.coordinator import TransactionCoordinator
from twophaseledger.transaction.recovery import RecoveryReport, RecoveryScanner
from twophaseledger.utils.config import Config, get_config
from twophaseledger.utils.logging import bind_worker_context, configure_logging, get_logger
from twophaseledger.utils.retry import RetryConfig

logger = get_logger(__name__)


class Worker:
    """
    Runs the coordinator and recovery scanner for one worker identity.

    Example:
        >>> worker = Worker.from_config(Config("worker.yaml"))
        >>> worker.start()
        >>> worker.process_backlog()
        >>> worker.stop()
    """

    def __init__(
        self,
        store,
        worker_id: str,
        lease_ms: int = 30000,
        recovery_interval_ms: int = 10000,
        recovery_scope: str = "owner",
        batch_size: int = 100,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize worker.

        Args:
            store: Shared RecordStore
            worker_id: Worker/application identity string
            lease_ms: Ownership lease duration
            recovery_interval_ms: Period of the recovery scan
            recovery_scope: "owner" or "global"
            batch_size: Max transactions drained per process_backlog() call
            retry_config: Backoff policy for store failures
        """
        self.store = store
        self.worker_id = worker_id
        self.batch_size = batch_size

        self.coordinator = TransactionCoordinator(
            store,
            owner_id=worker_id,
            lease_ms=lease_ms,
            retry_config=retry_config,
        )
        self.scanner = RecoveryScanner(
            self.coordinator,
            scope=recovery_scope,
            interval_ms=recovery_interval_ms,
        )

        self._started = False

    @classmethod
    def from_config(cls, config: Optional[Config] = None, store=None) -> "Worker":
        """
        Build a worker from configuration.

        Args:
            config: Configuration (global instance if omitted)
            store: Record store to use instead of the configured one

        Returns:
            Worker
        """
        config = config or get_config()

        configure_logging(
            log_level=config.get("logging.level", "INFO"),
            log_format=config.get("logging.format", "json"),
            log_output=config.get("logging.output", "stdout"),
        )

        if store is None:
            store = open_store(
                backend=config.get("store.backend", "memory"),
                path=config.get("store.path", ""),
                timeout_s=config.get("store.timeout_s", 5.0),
            )

        return cls(
            store,
            worker_id=config.get("worker.id", "worker-1"),
            lease_ms=config.get("worker.lease_ms", 30000),
            recovery_interval_ms=config.get("recovery.interval_ms", 10000),
            recovery_scope=config.get("recovery.scope", "owner"),
            batch_size=config.get("worker.batch_size", 100),
            retry_config=RetryConfig.from_dict(config.get("retry")),
        )

    def start(self) -> RecoveryReport:
        """
        Recover interrupted transactions, then start the periodic scanner.

        Returns:
            Report of the startup scan
        """
        if self._started:
            return RecoveryReport()

        bind_worker_context(self.worker_id)

        report = self.scanner.scan()
        self.scanner.start(run_immediately=False)
        self._started = True

        logger.info(
            "Worker started",
            worker_id=self.worker_id,
            recovered=report.resumed,
        )

        return report

    def process_backlog(self, max_transactions: Optional[int] = None) -> int:
        """
        Claim and complete INITIAL transactions until none are left.

        Args:
            max_transactions: Upper bound for this call (batch_size if omitted)

        Returns:
            Number of transactions processed
        """
        limit = max_transactions if max_transactions is not None else self.batch_size
        processed = 0

        while processed < limit:
            try:
                transaction = self.coordinator.process_next()
            except LedgerError as e:
                # Claimed but not finished; the recovery scan resumes it
                logger.error("Transaction processing failed", error=str(e))
                break

            if transaction is None:
                break

            processed += 1

        if processed:
            logger.info("Backlog processed", worker_id=self.worker_id, count=processed)

        return processed

    def stop(self) -> None:
        """Stop the periodic scanner and release the store."""
        if not self._started:
            return

        self.scanner.stop()
        self.store.close()
        self._started = False

        logger.info("Worker stopped", worker_id=self.worker_id)

    def __enter__(self) -> "Worker":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
