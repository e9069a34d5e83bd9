"""
Shared fixtures for TimeLedger tests.

No real API calls in tests: rates come from StaticRateSource, time from
FixedClock, storage from the in-memory implementations.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

import pytest

from timeledger.accounts.service import LedgerService
from timeledger.audit.logger import AuditLogger
from timeledger.config import SchedulerSettings
from timeledger.scheduler.periodic import PeriodicScheduler
from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.rates.source import (
    ExchangeRateSource,
    RateTable,
    RateUnavailableError,
)
from timeledger.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryLedgerStore,
)


NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock the tests move by hand."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class StaticRateSource(ExchangeRateSource):
    """Rate source answering from fixed tables; can be switched offline."""

    def __init__(self, tables: Optional[dict] = None, provider_date: Optional[date] = None):
        self.tables = tables if tables is not None else {
            "CNY": {"USD": "0.14", "EUR": "0.13"},
            "USD": {"CNY": "7.20", "EUR": "0.92"},
        }
        self.provider_date = provider_date
        self.calls: list[tuple[str, Optional[date]]] = []
        self.offline = False

    async def fetch(self, base: str, on: Optional[date] = None) -> RateTable:
        self.calls.append((base, on))
        if self.offline:
            raise RateUnavailableError("rate provider offline")
        rates = self.tables.get(base)
        if rates is None:
            raise RateUnavailableError(f"no table for {base}")
        return RateTable(
            base=base,
            date=self.provider_date or on or NOW.date(),
            rates={code: Decimal(rate) for code, rate in rates.items()},
        )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def rate_source() -> StaticRateSource:
    return StaticRateSource()


@pytest.fixture
def rates(rate_source, clock) -> ExchangeRateCache:
    return ExchangeRateCache(rate_source, clock=clock)


@pytest.fixture
def store(clock) -> InMemoryLedgerStore:
    return InMemoryLedgerStore(clock=clock)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage) -> AuditLogger:
    return AuditLogger(audit_storage)


@pytest.fixture
def ledger(store, rates, audit_logger, clock) -> LedgerService:
    return LedgerService(store, rates, audit_logger, clock)


@pytest.fixture
def scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings(retry_attempts=3, retry_backoff_seconds=0, retry_backoff_max_seconds=0)


@pytest.fixture
def scheduler(store, ledger, rates, audit_logger, scheduler_settings, clock) -> PeriodicScheduler:
    return PeriodicScheduler(
        store,
        ledger,
        rates,
        audit_logger,
        settings=scheduler_settings,
        clock=clock,
    )
