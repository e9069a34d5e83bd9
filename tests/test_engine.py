"""
Tests for the wired engine, the audit logger, triggers and settings.
"""

import asyncio
import pytest
from datetime import timedelta
from decimal import Decimal

from timeledger.audit.logger import AuditLogger
from timeledger.config import SchedulerSettings, Settings, SyncSettings, validate_all_settings
from timeledger.config.settings import AppSettings, ExchangeRateSettings
from timeledger.models.audit import AuditEventBuilder, AuditEventType
from timeledger.models.ledger import (
    Account,
    AccountCategory,
    DebtDirection,
    Frequency,
    PeriodicTransactionDefinition,
    PeriodicType,
    Recurrence,
)
from timeledger.models.sync import SyncSuccess
from timeledger.orchestrator import create_engine_components
from timeledger.scheduler.periodic import RunStatus
from timeledger.services.storage.memory import InMemoryAuditStorage
from timeledger.triggers import run_periodically

from conftest import NOW, FixedClock, StaticRateSource


class BrokenAuditStorage(InMemoryAuditStorage):
    """Audit storage that cannot be written."""

    async def append_event(self, event):
        raise ConnectionError("audit backend down")


class QuickSettings(Settings):
    """Settings with no backoff and no idle reset, for tests."""

    @property
    def scheduler(self):
        return SchedulerSettings(retry_attempts=2, retry_backoff_seconds=0, retry_backoff_max_seconds=0)

    @property
    def sync(self):
        return SyncSettings(reset_to_idle_after_seconds=0)


def make_engine(**overrides):
    clock = FixedClock()
    return create_engine_components(
        rate_source=overrides.pop("rate_source", StaticRateSource()),
        settings=QuickSettings(),
        clock=clock,
        **overrides,
    )


class TestAuditLogger:
    """Tests for the audit logger."""

    @pytest.mark.asyncio
    async def test_events_reach_storage(self):
        """Test that logged events are persisted."""
        storage = InMemoryAuditStorage()
        logger = AuditLogger(storage)
        event = AuditEventBuilder.rate_unavailable("CNY", "USD", "timeout")

        assert await logger.log(event)
        assert await storage.get_recent_events() == [event]

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_propagated(self):
        """Test that a failing audit backend never fails the operation."""
        logger = AuditLogger(BrokenAuditStorage())
        event = AuditEventBuilder.rate_unavailable("CNY", "USD", "timeout")
        assert await logger.log(event) is False

    @pytest.mark.asyncio
    async def test_without_storage(self):
        """Test that local-only logging reports success."""
        assert await AuditLogger().log(AuditEventBuilder.rate_unavailable("CNY", "USD", "x"))


class TestSettings:
    """Tests for configuration groups."""

    def test_defaults(self):
        """Test the documented defaults."""
        scheduler = SchedulerSettings()
        assert scheduler.max_occurrences_per_pass is None
        assert scheduler.retry_attempts == 5
        assert SyncSettings().reset_to_idle_after_seconds == 3.0
        assert SyncSettings().write_back_attempts == 3
        assert set(AppSettings.model_fields) == {"default_currency"}

    def test_environment_overrides(self, monkeypatch):
        """Test that prefixed environment variables are read."""
        monkeypatch.setenv("SCHEDULER_MAX_OCCURRENCES_PER_PASS", "50")
        monkeypatch.setenv("EXCHANGE_RATES_BASE_URL", "https://rates.example/")
        monkeypatch.setenv("DEFAULT_CURRENCY", "usd")

        assert SchedulerSettings().max_occurrences_per_pass == 50
        assert ExchangeRateSettings().base_url == "https://rates.example"
        assert AppSettings().default_currency == "USD"

    def test_invalid_value_rejected(self, monkeypatch):
        """Test that out-of-range values are reported per group."""
        monkeypatch.setenv("SCHEDULER_RETRY_ATTEMPTS", "0")
        results = validate_all_settings()
        assert results["scheduler"] is False
        assert "scheduler_error" in results
        assert results["sync"] is True


class TestLedgerEngine:
    """Tests for the wired engine."""

    @pytest.mark.asyncio
    async def test_post_schedule_and_sync(self):
        """Test a manual posting, a scheduler pass and a first sync on one engine."""
        audit_storage = InMemoryAuditStorage()
        engine = make_engine(audit_storage=audit_storage)
        wallet = Account(name="Wallet", currency="CNY", initial_balance=Decimal("100"))
        await engine.ledger.open_account(wallet)
        await engine.ledger.record_expense(wallet.id, Decimal("10"))
        await engine.store.save_periodic_definition(PeriodicTransactionDefinition(
            type=PeriodicType.EXPENSE,
            source_account_id=wallet.id,
            amount=Decimal("5"),
            currency="USD",
            recurrence=Recurrence(frequency=Frequency.DAILY, anchor=NOW - timedelta(days=1)),
        ))

        report = await engine.run_scheduler_with_retry(NOW)
        state = await engine.start_sync()

        assert report.status == RunStatus.COMPLETED
        assert len(report.posted) == 2
        assert await engine.ledger.balance(wallet.id) == Decimal("90") - 2 * Decimal("36.00")
        assert state == SyncSuccess(message="Local data uploaded to cloud")
        assert len((await engine.remote.fetch_snapshot()).transactions) == 3

        events = await audit_storage.get_recent_events(limit=500)
        kinds = {e.event_type for e in events}
        assert AuditEventType.PERIODIC_OCCURRENCE_POSTED in kinds
        assert AuditEventType.RATES_FETCHED in kinds
        await engine.aclose()

    @pytest.mark.asyncio
    async def test_debt_query_uses_default_currency(self):
        """Test that the engine reports debts in the configured currency."""
        engine = make_engine()
        loan = Account(
            name="Eve",
            currency="USD",
            category=AccountCategory.DEBT,
            debt_direction=DebtDirection.PAYABLE,
        )
        await engine.ledger.open_account(loan)
        await engine.ledger.incur_debt(loan.id, Decimal("10"))

        summary = await engine.debts.summarize("Eve")

        assert summary.outstanding == Decimal("72.00")
        assert await engine.debts.summarize("Nobody") is None


class TestRunPeriodically:
    """Tests for the timer trigger."""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self):
        """Test that passes keep running until the stop event is set."""
        engine = make_engine()
        stop = asyncio.Event()
        settings = SchedulerSettings(interval_seconds=0.01, retry_backoff_seconds=0)

        loop = asyncio.create_task(run_periodically(engine.scheduler, stop, settings))
        await asyncio.sleep(0.05)
        stop.set()
        passes = await asyncio.wait_for(loop, timeout=1)

        assert passes >= 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
