"""
Record store backends.

Durable keyed storage with single-record conditional updates.
"""

from twophaseledger.store.base import ANY_OWNER, RecordStore
from twophaseledger.store.memory import MemoryRecordStore
from twophaseledger.store.sqlite import SQLiteRecordStore


def open_store(backend: str = "memory", path: str = "", timeout_s: float = 5.0) -> RecordStore:
    """
    Open a record store.

    Args:
        backend: "memory" or "sqlite"
        path: Database file (sqlite only)
        timeout_s: Lock wait timeout (sqlite only)

    Returns:
        RecordStore
    """
    if backend == "memory":
        return MemoryRecordStore()
    if backend == "sqlite":
        if not path:
            raise ValueError("sqlite store requires a path")
        return SQLiteRecordStore(path, timeout_s=timeout_s)
    raise ValueError(f"Unknown store backend: {backend}")


__all__ = [
    "ANY_OWNER",
    "RecordStore",
    "MemoryRecordStore",
    "SQLiteRecordStore",
    "open_store",
]
