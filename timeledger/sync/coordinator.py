"""
Sync Coordinator

Drives a reconciliation run between the local store and the cloud replica
and publishes its progress as SyncUiState values.

Flow:
    start_sync()
      -> no cloud data:            perform_sync(OVERWRITE_CLOUD)
      -> cloud data, no local data: perform_sync(OVERWRITE_LOCAL)
      -> both changed since last sync: Conflict(remote timestamp), wait for a strategy
      -> only one side changed:     propagate the newer side
    perform_sync(strategy)
      Idle -> Loading -> Success | Error | Conflict, then back to Idle after a delay
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from timeledger.audit.logger import AuditLogger
from timeledger.config import SyncSettings, get_settings
from timeledger.models.audit import AuditEventBuilder
from timeledger.models.ledger import LedgerSnapshot, SnapshotOrigin
from timeledger.models.sync import (
    Resolution,
    SyncCheckResult,
    SyncConflict,
    SyncError,
    SyncIdle,
    SyncLoading,
    SyncStrategy,
    SyncSuccess,
    SyncUiState,
)
from timeledger.services.rates.source import RateError
from timeledger.services.storage.interface import (
    LedgerStoreInterface,
    RemoteLedgerInterface,
    StaleSnapshotError,
    StorageError,
)
from timeledger.sync.reconciler import SyncReconciler, detect_divergence


logger = structlog.get_logger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SyncStatusObserver:
    """
    Holds the current SyncUiState and notifies subscribers of every change.
    """

    def __init__(self):
        self._state: SyncUiState = SyncIdle()
        self._subscribers: list[Callable[[SyncUiState], None]] = []
        self.history: list[SyncUiState] = []

    @property
    def state(self) -> SyncUiState:
        return self._state

    def subscribe(self, callback: Callable[[SyncUiState], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, state: SyncUiState) -> None:
        self._state = state
        self.history.append(state)
        for callback in list(self._subscribers):
            callback(state)


class SyncCoordinator:
    """
    Runs reconciliation between a LedgerStoreInterface and a RemoteLedgerInterface.

    Only one run is in flight at a time; a request made while one is running
    returns the current state instead of starting another.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        remote: RemoteLedgerInterface,
        reconciler: SyncReconciler,
        observer: Optional[SyncStatusObserver] = None,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SyncSettings] = None,
    ):
        self._store = store
        self._remote = remote
        self._reconciler = reconciler
        self.observer = observer or SyncStatusObserver()
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().sync
        self._lock = asyncio.Lock()
        self._reset_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SyncUiState:
        return self.observer.state

    async def _publish(self, state: SyncUiState) -> None:
        self.observer.publish(state)
        message = getattr(state, "message", None)
        logger.info("sync_state_changed", state=state.state, message=message)
        if self._audit_logger:
            await self._audit_logger.log_sync_state(state.state, message)

    def _cancel_reset(self) -> None:
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

    def _schedule_reset(self) -> None:
        delay = self._settings.reset_to_idle_after_seconds
        if delay <= 0:
            return

        async def reset_later() -> None:
            await asyncio.sleep(delay)
            await self._publish(SyncIdle())

        self._reset_task = asyncio.create_task(reset_later())

    async def reset(self) -> None:
        """Return to Idle immediately."""
        self._cancel_reset()
        await self._publish(SyncIdle())

    # ------------------------------------------------------------------
    # Status check
    # ------------------------------------------------------------------

    async def check_cloud_status(self) -> SyncCheckResult:
        """
        Raises:
            StorageError: If either side cannot be read
        """
        local = await self._store.export_snapshot()
        remote = await self._remote.fetch_snapshot()
        return SyncCheckResult(
            has_cloud_data=remote is not None and not remote.is_empty,
            has_local_data=not local.is_empty,
            cloud_timestamp=remote.modified_at if remote is not None else None,
            local_timestamp=local.modified_at,
            last_synced_at=await self._store.get_last_synced_at(),
        )

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_sync(self) -> SyncUiState:
        """Check both sides and either sync directly or stop at Conflict."""
        if self._lock.locked():
            return self.state

        async with self._lock:
            self._cancel_reset()
            await self._publish(SyncIdle())
            await self._publish(SyncLoading(message="Checking cloud data..."))

            try:
                status = await self.check_cloud_status()
                local = await self._store.export_snapshot()
                remote = await self._remote.fetch_snapshot()
            except StorageError as e:
                return await self._fail(str(e) or "Connection failed")

            if not status.has_cloud_data:
                return await self._perform(SyncStrategy.OVERWRITE_CLOUD)
            if not status.has_local_data:
                return await self._perform(SyncStrategy.OVERWRITE_LOCAL)

            if detect_divergence(local, remote, status.last_synced_at):
                conflict = SyncConflict(remote_timestamp=status.cloud_timestamp)
                await self._publish(conflict)
                if self._audit_logger:
                    await self._audit_logger.log(AuditEventBuilder.sync_conflict_detected(
                        remote_timestamp=status.cloud_timestamp,
                        conflict_count=0,
                    ))
                return conflict

            if remote.modified_at > local.modified_at:
                return await self._perform(SyncStrategy.OVERWRITE_LOCAL)
            if local.modified_at > remote.modified_at:
                return await self._perform(SyncStrategy.OVERWRITE_CLOUD)

            done = SyncSuccess(message="Already up to date")
            await self._publish(done)
            self._schedule_reset()
            return done

    async def perform_sync(self, strategy: SyncStrategy) -> SyncUiState:
        """Reconcile under `strategy` and write the result back to both sides."""
        if self._lock.locked():
            return self.state

        async with self._lock:
            self._cancel_reset()
            await self._publish(SyncIdle())
            return await self._perform(strategy)

    async def _perform(self, strategy: SyncStrategy) -> SyncUiState:
        message = "Merging..." if strategy == SyncStrategy.MERGE else "Syncing..."
        await self._publish(SyncLoading(message=message))

        try:
            resolution = await self._reconcile_and_write(strategy)
        except StaleSnapshotError as e:
            logger.warning("sync_local_changed", strategy=strategy.value, error=str(e))
            return await self._fail("Local ledger changed during sync; try again")
        except (StorageError, RateError) as e:
            if self._audit_logger:
                await self._audit_logger.log_external_service_error("sync", str(e))
            return await self._fail(str(e) or "Sync failed")
        except Exception as e:
            logger.exception("sync_failed", strategy=strategy.value)
            if self._audit_logger:
                await self._audit_logger.log_error(type(e).__name__, str(e))
            return await self._fail(str(e) or "Sync failed")

        if resolution.is_conflict:
            await self._publish(resolution.state)
            if self._audit_logger:
                await self._audit_logger.log(AuditEventBuilder.sync_conflict_detected(
                    remote_timestamp=resolution.state.remote_timestamp,
                    conflict_count=len(resolution.conflicts),
                ))
            return resolution.state

        await self._publish(resolution.state)
        self._schedule_reset()
        return resolution.state

    async def _reconcile_and_write(self, strategy: SyncStrategy) -> Resolution:
        """
        Reconcile and write the result back to both sides.

        The local write-back only lands if the store is still at the revision
        the local snapshot was exported at. A merge whose base went stale is
        redone against the new local state. A stale restore is not redone: the
        newer local write is kept and the run fails.

        Raises:
            StaleSnapshotError: If the local side kept changing
        """
        attempts = self._settings.write_back_attempts if strategy == SyncStrategy.MERGE else 1

        for attempt in range(1, attempts + 1):
            local = await self._store.export_snapshot()
            remote = await self._remote.fetch_snapshot()
            if remote is None:
                remote = LedgerSnapshot(origin=SnapshotOrigin.CLOUD, modified_at=EPOCH)

            resolution = await self._reconciler.reconcile(local, remote, strategy)
            if resolution.is_conflict:
                return resolution

            snapshot = resolution.snapshot
            if strategy != SyncStrategy.OVERWRITE_CLOUD:
                try:
                    await self._store.import_snapshot(snapshot, expected_revision=local.revision)
                except StaleSnapshotError:
                    if attempt == attempts:
                        raise
                    logger.info("sync_remerge", attempt=attempt, strategy=strategy.value)
                    continue
            if strategy != SyncStrategy.OVERWRITE_LOCAL:
                await self._remote.upload_snapshot(snapshot)
            await self._store.set_last_synced_at(snapshot.modified_at)
            return resolution

    async def _fail(self, message: str) -> SyncUiState:
        error = SyncError(message=message)
        await self._publish(error)
        self._schedule_reset()
        return error
