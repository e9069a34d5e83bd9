"""Services package: ledger storage and exchange rates."""

from timeledger.services.storage import (
    AuditStorageInterface,
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    InMemoryRemoteLedger,
    LedgerStoreInterface,
    NotFoundError,
    RemoteLedgerInterface,
    StorageError,
    StaleSnapshotError,
    StoreUnavailableError,
)
from timeledger.services.rates import (
    ExchangeRateCache,
    ExchangeRateSource,
    FrankfurterRateSource,
    RateError,
    RateTable,
    RateUnavailableError,
)

__all__ = [
    # Storage
    "AuditStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryLedgerStore",
    "InMemoryRemoteLedger",
    "LedgerStoreInterface",
    "NotFoundError",
    "RemoteLedgerInterface",
    "StorageError",
    "StaleSnapshotError",
    "StoreUnavailableError",
    # Exchange rates
    "ExchangeRateCache",
    "ExchangeRateSource",
    "FrankfurterRateSource",
    "RateError",
    "RateTable",
    "RateUnavailableError",
]
