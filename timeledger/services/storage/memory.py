"""
In-Memory Storage Implementation

DESIGN DECISION: The engine ships with an in-memory implementation of
every storage contract because:
1. Tests need a store with exact, inspectable behavior
2. Embedders can wrap it with their own persistence (export/import snapshots)
3. It documents the atomicity the contract requires

TRADEOFFS:
- Nothing survives the process (callers persist snapshots if they need to)
- One asyncio.Lock serializes all writes (fine for a personal ledger)

`available` can be switched off to simulate an unreachable backend.
"""

import asyncio
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from timeledger.accounts.rules import apply_transaction, compute_balance
from timeledger.models.audit import AuditEvent
from timeledger.models.ledger import (
    Account,
    BalanceUpdate,
    LedgerSnapshot,
    PeriodicTransactionDefinition,
    PostingEntry,
    SnapshotOrigin,
    Transaction,
    utcnow,
)
from timeledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStoreInterface,
    NotFoundError,
    RemoteLedgerInterface,
    StaleSnapshotError,
    StoreUnavailableError,
)


class InMemoryLedgerStore(LedgerStoreInterface):
    """
    Ledger store kept in process memory.

    Balances are derived from the transaction log and memoized per account;
    every write that touches an account drops its memoized balance.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._accounts: dict[UUID, Account] = {}
        self._transactions: dict[UUID, Transaction] = {}
        self._definitions: dict[UUID, PeriodicTransactionDefinition] = {}
        self._balance_cache: dict[UUID, Decimal] = {}
        self._last_synced_at: Optional[datetime] = None
        self._modified_at: datetime = clock()
        self._revision = 0
        self._lock = asyncio.Lock()
        self.available = True

    def _ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Ledger store is unavailable")

    def _touch(self, *account_ids: UUID) -> None:
        for account_id in account_ids:
            self._balance_cache.pop(account_id, None)
        self._modified_at = self._clock()
        self._revision += 1

    def _derive_balance(self, account: Account) -> Decimal:
        cached = self._balance_cache.get(account.id)
        if cached is None:
            cached = compute_balance(account, self._transactions.values())
            self._balance_cache[account.id] = cached
        return cached

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: UUID) -> Optional[Account]:
        self._ensure_available()
        return self._accounts.get(account_id)

    async def list_accounts(self) -> list[Account]:
        self._ensure_available()
        return list(self._accounts.values())

    async def save_account(self, account: Account) -> None:
        self._ensure_available()
        async with self._lock:
            self._accounts[account.id] = account
            self._touch(account.id)

    async def delete_account(self, account_id: UUID) -> bool:
        self._ensure_available()
        async with self._lock:
            if self._accounts.pop(account_id, None) is None:
                return False
            self._transactions = {
                tid: t for tid, t in self._transactions.items()
                if t.account_id != account_id
            }
            self._touch(account_id)
            return True

    # ------------------------------------------------------------------
    # Transactions and balances
    # ------------------------------------------------------------------

    async def list_transactions(
        self,
        account_id: Optional[UUID] = None,
    ) -> list[Transaction]:
        self._ensure_available()
        transactions = [
            t for t in self._transactions.values()
            if account_id is None or t.account_id == account_id
        ]
        return sorted(transactions, key=lambda t: t.occurred_at)

    async def get_balance(self, account_id: UUID) -> Decimal:
        self._ensure_available()
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return self._derive_balance(account)

    async def post_entries(
        self,
        entries: list[PostingEntry],
        definition: Optional[PeriodicTransactionDefinition] = None,
    ) -> list[BalanceUpdate]:
        self._ensure_available()
        async with self._lock:
            # Validate everything against running balances before writing anything
            running: dict[UUID, Decimal] = {}
            updates: list[BalanceUpdate] = []
            staged: list[Transaction] = []

            for entry in entries:
                account = self._accounts.get(entry.account_id)
                if account is None:
                    raise NotFoundError(f"Account not found: {entry.account_id}")

                balance = running[account.id] if account.id in running else self._derive_balance(account)
                update = apply_transaction(account, balance, entry.amount, entry.kind)
                running[account.id] = update.new_balance
                updates.append(update)

                staged.append(Transaction(
                    account_id=account.id,
                    kind=entry.kind,
                    amount=update.delta,
                    occurred_at=entry.occurred_at,
                    updated_at=self._clock(),
                    note=entry.note,
                    counterparty=entry.counterparty,
                    interest=entry.interest,
                    source=entry.source,
                    definition_id=entry.definition_id,
                    transfer_id=entry.transfer_id,
                    related_account_id=entry.related_account_id,
                ))

            for transaction in staged:
                self._transactions[transaction.id] = transaction
            if definition is not None:
                self._definitions[definition.id] = definition
            self._touch(*running.keys())

            return updates

    # ------------------------------------------------------------------
    # Periodic definitions
    # ------------------------------------------------------------------

    async def list_periodic_definitions(
        self,
        active_only: bool = False,
    ) -> list[PeriodicTransactionDefinition]:
        self._ensure_available()
        return [
            d for d in self._definitions.values()
            if d.active or not active_only
        ]

    async def get_periodic_definition(
        self,
        definition_id: UUID,
    ) -> Optional[PeriodicTransactionDefinition]:
        self._ensure_available()
        return self._definitions.get(definition_id)

    async def save_periodic_definition(
        self,
        definition: PeriodicTransactionDefinition,
    ) -> None:
        self._ensure_available()
        async with self._lock:
            self._definitions[definition.id] = definition
            self._touch()

    # ------------------------------------------------------------------
    # Snapshots and sync marker
    # ------------------------------------------------------------------

    async def export_snapshot(self) -> LedgerSnapshot:
        self._ensure_available()
        async with self._lock:
            return LedgerSnapshot(
                origin=SnapshotOrigin.LOCAL,
                modified_at=self._modified_at,
                revision=self._revision,
                accounts=tuple(self._accounts.values()),
                transactions=tuple(sorted(self._transactions.values(), key=lambda t: t.occurred_at)),
                periodic_definitions=tuple(self._definitions.values()),
            )

    async def import_snapshot(
        self,
        snapshot: LedgerSnapshot,
        expected_revision: Optional[int] = None,
    ) -> None:
        self._ensure_available()
        async with self._lock:
            if expected_revision is not None and expected_revision != self._revision:
                raise StaleSnapshotError(
                    f"Ledger changed since revision {expected_revision} (now {self._revision})"
                )
            self._accounts = {a.id: a for a in snapshot.accounts}
            self._transactions = {t.id: t for t in snapshot.transactions}
            self._definitions = {d.id: d for d in snapshot.periodic_definitions}
            self._balance_cache.clear()
            self._modified_at = snapshot.modified_at
            self._revision += 1

    async def get_last_synced_at(self) -> Optional[datetime]:
        self._ensure_available()
        return self._last_synced_at

    async def set_last_synced_at(self, timestamp: datetime) -> None:
        self._ensure_available()
        self._last_synced_at = timestamp


class InMemoryRemoteLedger(RemoteLedgerInterface):
    """Cloud replica kept in process memory (one 'latest' snapshot)."""

    def __init__(self, snapshot: Optional[LedgerSnapshot] = None):
        self._snapshot = snapshot
        self.available = True
        self.upload_count = 0

    async def fetch_snapshot(self) -> Optional[LedgerSnapshot]:
        if not self.available:
            raise StoreUnavailableError("Cloud ledger is unavailable")
        return self._snapshot

    async def upload_snapshot(self, snapshot: LedgerSnapshot) -> None:
        if not self.available:
            raise StoreUnavailableError("Cloud ledger is unavailable")
        self._snapshot = snapshot.model_copy(update={"origin": SnapshotOrigin.CLOUD})
        self.upload_count += 1


class InMemoryAuditStorage(AuditStorageInterface):
    """Append-only audit log kept in process memory."""

    def __init__(self):
        self._events: list[AuditEvent] = []
        self._by_correlation: dict[UUID, list[AuditEvent]] = defaultdict(list)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        if event.correlation_id:
            self._by_correlation[event.correlation_id].append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return list(self._by_correlation.get(correlation_id, []))

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        return list(reversed(self._events))[:limit]
