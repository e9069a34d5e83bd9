"""
Storage Services Package

Provides abstract interfaces and the in-memory implementations of the
ledger store, the cloud replica and the audit log.
"""

from timeledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStoreInterface,
    NotFoundError,
    RemoteLedgerInterface,
    StorageError,
    StaleSnapshotError,
    StoreUnavailableError,
)
from timeledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    InMemoryRemoteLedger,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "LedgerStoreInterface",
    "RemoteLedgerInterface",
    # Exceptions
    "NotFoundError",
    "StorageError",
    "StaleSnapshotError",
    "StoreUnavailableError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "InMemoryRemoteLedger",
]
