"""
Sync Reconciler

Decides what the ledger looks like after a local and a cloud snapshot meet.

Strategies:
- OVERWRITE_CLOUD: the local snapshot is the answer (it gets uploaded).
- OVERWRITE_LOCAL: the cloud snapshot is the answer (it gets imported).
- MERGE: entity-level merge by id across accounts, transactions and
  periodic definitions. The version with the later updated_at wins.
  Two versions with the same updated_at but different content cannot be
  ordered, so the merge stops with a CONFLICT resolution listing them.

DESIGN DECISION: The reconciler is pure apart from currency conversion.
It never writes; the coordinator applies a RESOLVED snapshot to both sides.

There are no deletion markers. An entity present on one side only is kept.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, TypeVar
from uuid import UUID

import structlog
from pydantic import BaseModel

from timeledger.models.ledger import (
    Account,
    LedgerSnapshot,
    SnapshotOrigin,
    Transaction,
)
from timeledger.models.sync import (
    FieldConflict,
    MergeStats,
    Resolution,
    ResolutionOutcome,
    SyncConflict,
    SyncStrategy,
    SyncSuccess,
)
from timeledger.services.rates.cache import ExchangeRateCache


logger = structlog.get_logger(__name__)

Entity = TypeVar("Entity", bound=BaseModel)

LOCAL = "local"
REMOTE = "remote"


def detect_divergence(
    local: LedgerSnapshot,
    remote: Optional[LedgerSnapshot],
    last_synced_at: Optional[datetime],
) -> bool:
    """
    Whether both sides changed since the last successful sync.

    Two non-empty ledgers that were never synced count as divergent.
    """
    if remote is None or remote.is_empty or local.is_empty:
        return False
    if last_synced_at is None:
        return True
    return local.modified_at > last_synced_at and remote.modified_at > last_synced_at


def _changed_fields(local: BaseModel, remote: BaseModel) -> list[str]:
    local_data = local.model_dump()
    remote_data = remote.model_dump()
    return sorted(
        name for name in local_data
        if name != "updated_at" and local_data[name] != remote_data.get(name)
    )


class SyncReconciler:
    """
    Reconciles two ledger snapshots under a strategy.

    Usage:
        reconciler = SyncReconciler(rate_cache)
        resolution = await reconciler.reconcile(local, remote, SyncStrategy.MERGE)
        if resolution.is_conflict:
            ...  # ask the user for OVERWRITE_CLOUD / OVERWRITE_LOCAL
    """

    def __init__(self, rates: ExchangeRateCache):
        self._rates = rates

    async def reconcile(
        self,
        local: LedgerSnapshot,
        remote: LedgerSnapshot,
        strategy: SyncStrategy,
    ) -> Resolution:
        """
        Raises:
            RateUnavailableError: A merge needed a currency conversion that failed
        """
        if strategy == SyncStrategy.OVERWRITE_CLOUD:
            return Resolution(
                outcome=ResolutionOutcome.RESOLVED,
                strategy=strategy,
                snapshot=local,
                state=SyncSuccess(message="Local data uploaded to cloud"),
            )
        if strategy == SyncStrategy.OVERWRITE_LOCAL:
            return Resolution(
                outcome=ResolutionOutcome.RESOLVED,
                strategy=strategy,
                snapshot=remote,
                state=SyncSuccess(message="Cloud data restored locally"),
            )
        return await self.merge(local, remote)

    async def merge(self, local: LedgerSnapshot, remote: LedgerSnapshot) -> Resolution:
        stats = MergeStats()
        conflicts: list[FieldConflict] = []

        accounts, account_winners = self._merge_entities(
            "account", local.accounts, remote.accounts, stats, conflicts,
        )
        conflicted = {c.entity_id for c in conflicts}
        local_transactions, remote_transactions = await self._redenominate(
            local, remote, account_winners, conflicted,
        )
        transactions = self._merge_transactions(
            local_transactions, remote_transactions, stats, conflicts,
        )
        definitions, _ = self._merge_entities(
            "periodic_definition",
            local.periodic_definitions,
            remote.periodic_definitions,
            stats,
            conflicts,
        )

        if conflicts:
            logger.warning("merge_conflict", conflicts=len(conflicts))
            return Resolution(
                outcome=ResolutionOutcome.CONFLICT,
                strategy=SyncStrategy.MERGE,
                conflicts=conflicts,
                stats=stats,
                state=SyncConflict(remote_timestamp=remote.modified_at),
            )

        snapshot = LedgerSnapshot(
            origin=SnapshotOrigin.LOCAL,
            modified_at=max(local.modified_at, remote.modified_at),
            accounts=tuple(accounts.values()),
            transactions=tuple(sorted(transactions.values(), key=lambda t: (t.occurred_at, str(t.id)))),
            periodic_definitions=tuple(definitions.values()),
        )
        logger.info("merge_completed", **stats.model_dump())
        return Resolution(
            outcome=ResolutionOutcome.RESOLVED,
            strategy=SyncStrategy.MERGE,
            snapshot=snapshot,
            stats=stats,
            state=SyncSuccess(message=(
                f"Merged: {stats.added_from_remote} from cloud, "
                f"{stats.added_from_local} from this device, "
                f"{stats.updated} updated, {stats.duplicates_dropped} duplicates skipped"
            )),
        )

    # ------------------------------------------------------------------
    # Entity merge
    # ------------------------------------------------------------------

    def _pick(
        self,
        entity_type: str,
        local_item: Entity,
        remote_item: Entity,
        stats: MergeStats,
        conflicts: list[FieldConflict],
    ) -> tuple[Entity, str]:
        """Choose between two versions of one entity."""
        if local_item == remote_item:
            return local_item, LOCAL
        if local_item.updated_at > remote_item.updated_at:
            stats.updated += 1
            return local_item, LOCAL
        if remote_item.updated_at > local_item.updated_at:
            stats.updated += 1
            return remote_item, REMOTE

        fields = _changed_fields(local_item, remote_item)
        if not fields:
            return local_item, LOCAL
        local_data = local_item.model_dump(mode="json")
        remote_data = remote_item.model_dump(mode="json")
        conflicts.append(FieldConflict(
            entity_type=entity_type,
            entity_id=local_item.id,
            fields=fields,
            local_value={name: local_data[name] for name in fields},
            remote_value={name: remote_data[name] for name in fields},
            updated_at=local_item.updated_at,
        ))
        return local_item, LOCAL

    def _merge_entities(
        self,
        entity_type: str,
        local_items: tuple[Entity, ...],
        remote_items: tuple[Entity, ...],
        stats: MergeStats,
        conflicts: list[FieldConflict],
    ) -> tuple[dict[UUID, Entity], dict[UUID, str]]:
        """Merge by id. Returns the merged entities and which side each came from."""
        remote_by_id = {item.id: item for item in remote_items}
        merged: dict[UUID, Entity] = {}
        winners: dict[UUID, str] = {}

        for item in local_items:
            other = remote_by_id.get(item.id)
            if other is None:
                merged[item.id] = item
                winners[item.id] = LOCAL
                stats.added_from_local += 1
            else:
                merged[item.id], winners[item.id] = self._pick(
                    entity_type, item, other, stats, conflicts,
                )

        for item in remote_items:
            if item.id not in merged:
                merged[item.id] = item
                winners[item.id] = REMOTE
                stats.added_from_remote += 1

        return merged, winners

    def _merge_transactions(
        self,
        local_items: list[Transaction],
        remote_items: list[Transaction],
        stats: MergeStats,
        conflicts: list[FieldConflict],
    ) -> dict[UUID, Transaction]:
        """
        Merge by id, then drop remote-only transactions that duplicate a
        local one under a different id (the same periodic occurrence posted
        on two devices).
        """
        local_ids = {t.id for t in local_items}
        local_keys = {t.identity_key for t in local_items}
        kept_remote = []
        for transaction in remote_items:
            if transaction.id not in local_ids and transaction.identity_key in local_keys:
                stats.duplicates_dropped += 1
                continue
            kept_remote.append(transaction)

        merged, _ = self._merge_entities(
            "transaction", tuple(local_items), tuple(kept_remote), stats, conflicts,
        )
        return merged

    # ------------------------------------------------------------------
    # Currency
    # ------------------------------------------------------------------

    async def _redenominate(
        self,
        local: LedgerSnapshot,
        remote: LedgerSnapshot,
        account_winners: dict[UUID, str],
        conflicted: set[UUID],
    ) -> tuple[list[Transaction], list[Transaction]]:
        """
        Convert the losing side's transactions of accounts whose currency
        changed into the winning version's currency.
        """
        local_accounts = {a.id: a for a in local.accounts}
        remote_accounts = {a.id: a for a in remote.accounts}
        changes: dict[tuple[str, UUID], tuple[str, str]] = {}

        for account_id, local_account in local_accounts.items():
            remote_account = remote_accounts.get(account_id)
            if remote_account is None or remote_account.currency == local_account.currency:
                continue
            if account_id in conflicted:
                continue
            winner = account_winners.get(account_id, LOCAL)
            losing_side = REMOTE if winner == LOCAL else LOCAL
            losing: Account = remote_account if winner == LOCAL else local_account
            winning: Account = local_account if winner == LOCAL else remote_account
            changes[(losing_side, account_id)] = (losing.currency, winning.currency)

        async def convert(side: str, transactions: tuple[Transaction, ...]) -> list[Transaction]:
            result = []
            for transaction in transactions:
                change = changes.get((side, transaction.account_id))
                if change is None:
                    result.append(transaction)
                    continue
                from_currency, to_currency = change
                magnitude = await self._rates.convert(
                    abs(transaction.amount),
                    from_currency,
                    to_currency,
                    transaction.occurred_at.date(),
                )
                sign = Decimal("-1") if transaction.amount < 0 else Decimal("1")
                result.append(transaction.model_copy(update={"amount": magnitude * sign}))
            return result

        if changes:
            logger.info("redenominating_transactions", accounts=len(changes))
        return await convert(LOCAL, local.transactions), await convert(REMOTE, remote.transactions)
