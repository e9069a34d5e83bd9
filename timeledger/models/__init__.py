"""
Data Models Package

This package contains all Pydantic models used by the TimeLedger engine.
All data flowing through the engine must conform to these schemas.
"""

from timeledger.models.ledger import (
    Account,
    AccountCategory,
    BalanceUpdate,
    DebtDirection,
    DebtSummary,
    DebtTotals,
    EndMode,
    FeeMode,
    Frequency,
    LedgerSnapshot,
    PeriodicTransactionDefinition,
    PeriodicType,
    PostingEntry,
    Recurrence,
    SnapshotOrigin,
    Transaction,
    TransactionKind,
    TransactionSource,
    utcnow,
)
from timeledger.models.sync import (
    FieldConflict,
    MergeStats,
    Resolution,
    ResolutionOutcome,
    SyncCheckResult,
    SyncConflict,
    SyncError,
    SyncIdle,
    SyncLoading,
    SyncStrategy,
    SyncSuccess,
    SyncUiState,
)
from timeledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountCategory",
    "BalanceUpdate",
    "DebtDirection",
    "DebtSummary",
    "DebtTotals",
    "EndMode",
    "FeeMode",
    "Frequency",
    "LedgerSnapshot",
    "PeriodicTransactionDefinition",
    "PeriodicType",
    "PostingEntry",
    "Recurrence",
    "SnapshotOrigin",
    "Transaction",
    "TransactionKind",
    "TransactionSource",
    "utcnow",
    # Sync models
    "FieldConflict",
    "MergeStats",
    "Resolution",
    "ResolutionOutcome",
    "SyncCheckResult",
    "SyncConflict",
    "SyncError",
    "SyncIdle",
    "SyncLoading",
    "SyncStrategy",
    "SyncSuccess",
    "SyncUiState",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
