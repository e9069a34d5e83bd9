"""
Main Orchestrator for TimeLedger

This module ties together all the components and defines the two
entry points a host application drives:
1. Scheduler pass (due definitions -> posted transactions)
2. Sync run (local + cloud snapshots -> reconciled ledger on both sides)

DESIGN DECISION: Every component receives the SAME store, rate cache and
audit logger, so a manual posting, a periodic posting and a merge all see
one ledger and one set of rates.
"""

from datetime import datetime
from typing import Callable, Optional

from timeledger.accounts.service import LedgerService
from timeledger.audit.logger import AuditLogger
from timeledger.config import Settings, get_settings
from timeledger.models.ledger import utcnow
from timeledger.models.sync import SyncStrategy, SyncUiState
from timeledger.queries.debts import DebtSummaryQuery
from timeledger.scheduler.periodic import PeriodicScheduler, SchedulerRunReport
from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.rates.source import ExchangeRateSource, FrankfurterRateSource
from timeledger.services.storage.interface import (
    AuditStorageInterface,
    LedgerStoreInterface,
    RemoteLedgerInterface,
)
from timeledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
    InMemoryRemoteLedger,
)
from timeledger.sync.coordinator import SyncCoordinator, SyncStatusObserver
from timeledger.sync.reconciler import SyncReconciler
from timeledger.triggers import run_with_backoff


class LedgerEngine:
    """
    The consistency engine with all of its components wired together.

    Usage:
        engine = create_engine_components()
        await engine.ledger.open_account(account)
        report = await engine.run_scheduler()
        state = await engine.start_sync()
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        remote: RemoteLedgerInterface,
        rate_source: Optional[ExchangeRateSource] = None,
        audit_storage: Optional[AuditStorageInterface] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        settings = settings or get_settings()
        self._scheduler_settings = settings.scheduler

        self.store = store
        self.remote = remote
        self.audit_logger = AuditLogger(audit_storage)
        self._rate_source = rate_source or FrankfurterRateSource(settings=settings.exchange_rates)
        self.rates = ExchangeRateCache(self._rate_source, self.audit_logger, clock=clock)
        self.ledger = LedgerService(store, self.rates, self.audit_logger, clock)
        self.scheduler = PeriodicScheduler(
            store,
            self.ledger,
            self.rates,
            self.audit_logger,
            settings=self._scheduler_settings,
            clock=clock,
        )
        self.reconciler = SyncReconciler(self.rates)
        self.sync = SyncCoordinator(
            store,
            remote,
            self.reconciler,
            observer=SyncStatusObserver(),
            audit_logger=self.audit_logger,
            settings=settings.sync,
        )
        self.debts = DebtSummaryQuery(store, self.rates, settings.app.default_currency)

    async def run_scheduler(self, now: Optional[datetime] = None) -> SchedulerRunReport:
        """One scheduler pass, no retries."""
        return await self.scheduler.run(now)

    async def run_scheduler_with_retry(self, now: Optional[datetime] = None) -> SchedulerRunReport:
        """One scheduler pass, re-invoked with backoff while RETRYABLE."""
        return await run_with_backoff(self.scheduler, self._scheduler_settings, now)

    async def start_sync(self) -> SyncUiState:
        return await self.sync.start_sync()

    async def perform_sync(self, strategy: SyncStrategy) -> SyncUiState:
        return await self.sync.perform_sync(strategy)

    async def aclose(self) -> None:
        """Release the HTTP client of the rate source, if it has one."""
        close = getattr(self._rate_source, "aclose", None)
        if close is not None:
            await close()


def create_engine_components(
    store: Optional[LedgerStoreInterface] = None,
    remote: Optional[RemoteLedgerInterface] = None,
    rate_source: Optional[ExchangeRateSource] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> LedgerEngine:
    """
    Factory function to create a fully wired engine.

    Any component left out is replaced by its in-memory implementation
    (the rate source defaults to the Frankfurter HTTP source).
    """
    return LedgerEngine(
        store=store or InMemoryLedgerStore(clock=clock),
        remote=remote or InMemoryRemoteLedger(),
        rate_source=rate_source,
        audit_storage=audit_storage or InMemoryAuditStorage(),
        settings=settings,
        clock=clock,
    )
