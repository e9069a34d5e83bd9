"""
Abstract Storage Interface

DESIGN DECISION: The engine never chooses how ledger data is persisted.
It works against these contracts, which allows us to:
1. Use the in-memory store for tests and embedding
2. Back the engine with SQLite/Room-style storage later
3. Keep the posting and sync logic independent of storage

The one non-trivial requirement is post_entries: validating the
operation, inserting its transactions and persisting the advanced
periodic definition happen as ONE atomic unit.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from timeledger.models.audit import AuditEvent
from timeledger.models.ledger import (
    Account,
    BalanceUpdate,
    LedgerSnapshot,
    PeriodicTransactionDefinition,
    PostingEntry,
    SnapshotOrigin,
    Transaction,
)


class LedgerStoreInterface(ABC):
    """
    Abstract interface for the local ledger store.

    Any storage implementation must implement these methods.
    """

    @abstractmethod
    async def get_account(self, account_id: UUID) -> Optional[Account]:
        """
        Retrieve an account by its ID.

        Returns:
            The account if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_accounts(self) -> list[Account]:
        """List all accounts."""
        pass

    @abstractmethod
    async def save_account(self, account: Account) -> None:
        """
        Insert or replace an account.

        Raises:
            StoreUnavailableError: If the store cannot be reached
        """
        pass

    @abstractmethod
    async def delete_account(self, account_id: UUID) -> bool:
        """
        Delete an account and its transactions.

        Returns:
            True if an account was deleted
        """
        pass

    @abstractmethod
    async def list_transactions(
        self,
        account_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        """
        List transactions, oldest first.

        Args:
            account_id: Only transactions of this account
        """
        pass

    @abstractmethod
    async def get_balance(self, account_id: UUID) -> Decimal:
        """
        Current balance of an account, derived from its transaction log.

        Raises:
            NotFoundError: If the account doesn't exist
        """
        pass

    @abstractmethod
    async def post_entries(
        self,
        entries: list[PostingEntry],
        definition: Optional[PeriodicTransactionDefinition] = None,
    ) -> list[BalanceUpdate]:
        """
        Apply and persist a posting atomically.

        Every entry is checked against the account rules with the balance
        current at that moment. If all pass, their transactions are inserted
        and `definition` (if given) is saved, together. If any fails,
        nothing is written.

        Returns:
            One BalanceUpdate per entry, in order

        Raises:
            NotFoundError: An entry names a missing account
            InvalidOperationError / LimitExceededError: An entry is refused
            StoreUnavailableError: The store cannot be reached
        """
        pass

    @abstractmethod
    async def list_periodic_definitions(
        self,
        active_only: bool = False,
    ) -> list[PeriodicTransactionDefinition]:
        """List periodic definitions."""
        pass

    @abstractmethod
    async def get_periodic_definition(
        self,
        definition_id: UUID,
    ) -> Optional[PeriodicTransactionDefinition]:
        """Retrieve a periodic definition by its ID."""
        pass

    @abstractmethod
    async def save_periodic_definition(
        self,
        definition: PeriodicTransactionDefinition,
    ) -> None:
        """Insert or replace a periodic definition."""
        pass

    @abstractmethod
    async def export_snapshot(self) -> LedgerSnapshot:
        """
        Export the whole ledger as an immutable snapshot (origin LOCAL).
        """
        pass

    @abstractmethod
    async def import_snapshot(
        self,
        snapshot: LedgerSnapshot,
        expected_revision: Optional[int] = None,
    ) -> None:
        """
        Replace the whole ledger with the snapshot's content, atomically.

        Args:
            snapshot: The content to install
            expected_revision: If given, only replace while the store is
                still at this revision (see LedgerSnapshot.revision)

        Raises:
            StaleSnapshotError: If the store was written since that revision
        """
        pass

    @abstractmethod
    async def get_last_synced_at(self) -> Optional[datetime]:
        """Timestamp of the last successful sync, if any."""
        pass

    @abstractmethod
    async def set_last_synced_at(self, timestamp: datetime) -> None:
        """Record the timestamp of a successful sync."""
        pass


class RemoteLedgerInterface(ABC):
    """
    Abstract interface for the cloud copy of the ledger.

    The remote side only stores whole snapshots.
    """

    origin: SnapshotOrigin = SnapshotOrigin.CLOUD

    @abstractmethod
    async def fetch_snapshot(self) -> Optional[LedgerSnapshot]:
        """
        Fetch the latest cloud snapshot.

        Returns:
            The snapshot, or None if nothing was ever uploaded

        Raises:
            StoreUnavailableError: If the remote cannot be reached
        """
        pass

    @abstractmethod
    async def upload_snapshot(self, snapshot: LedgerSnapshot) -> None:
        """
        Replace the cloud snapshot.

        Raises:
            StoreUnavailableError: If the remote cannot be reached
        """
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one scheduler pass).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class StoreUnavailableError(StorageError):
    """Could not reach the storage backend. Transient: retry the whole pass."""
    pass


class StaleSnapshotError(StorageError):
    """The store was written after the snapshot a write-back was based on."""
    pass
