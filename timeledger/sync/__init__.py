"""Reconciliation between the local ledger and its cloud replica."""

from timeledger.sync.coordinator import SyncCoordinator, SyncStatusObserver
from timeledger.sync.reconciler import SyncReconciler, detect_divergence

__all__ = [
    "SyncCoordinator",
    "SyncReconciler",
    "SyncStatusObserver",
    "detect_divergence",
]
