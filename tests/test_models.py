"""
Tests for TimeLedger models

Test strategy:
1. Unit tests for individual components (models, rules, recurrence)
2. Integration tests for scheduler and sync flows against in-memory storage
3. No real API calls in tests (static rate source, httpx.MockTransport)
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from timeledger.models.ledger import (
    Account,
    AccountCategory,
    DebtDirection,
    EndMode,
    FeeMode,
    Frequency,
    LedgerSnapshot,
    PeriodicTransactionDefinition,
    PeriodicType,
    Recurrence,
    SnapshotOrigin,
    Transaction,
    TransactionKind,
    TransactionSource,
)
from timeledger.models.sync import (
    Resolution,
    ResolutionOutcome,
    SyncConflict,
    SyncIdle,
    SyncStrategy,
    SyncSuccess,
)
from timeledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)


ANCHOR = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_definition(**overrides):
    fields = dict(
        type=PeriodicType.EXPENSE,
        source_account_id=uuid4(),
        amount=Decimal("20"),
        currency="cny",
        recurrence=Recurrence(frequency=Frequency.WEEKLY, anchor=ANCHOR),
    )
    fields.update(overrides)
    return PeriodicTransactionDefinition(**fields)


class TestAccountModel:
    """Tests for the Account model and its category fields."""

    def test_funds_account_defaults(self):
        """Test a plain funds account."""
        account = Account(name="  Wallet ", currency="cny")
        assert account.name == "Wallet"
        assert account.currency == "CNY"
        assert account.category == AccountCategory.FUNDS
        assert account.initial_balance == Decimal("0")

    def test_credit_account_requires_limit(self):
        """Test that a credit account without a limit is rejected."""
        with pytest.raises(ValueError, match="credit limit"):
            Account(name="Card", currency="CNY", category=AccountCategory.CREDIT)

    def test_credit_fields_rejected_on_funds(self):
        """Test that credit-only fields are refused on other categories."""
        with pytest.raises(ValueError, match="Only credit accounts"):
            Account(name="Wallet", currency="CNY", credit_limit=Decimal("100"))
        with pytest.raises(ValueError, match="billing or repayment"):
            Account(name="Wallet", currency="CNY", billing_day=5)

    def test_debt_account_requires_direction(self):
        """Test that a debt account must say which way it points."""
        with pytest.raises(ValueError, match="debt direction"):
            Account(name="Alice", currency="CNY", category=AccountCategory.DEBT)

        account = Account(
            name="Alice",
            currency="CNY",
            category=AccountCategory.DEBT,
            debt_direction=DebtDirection.RECEIVABLE,
        )
        assert account.debt_direction == DebtDirection.RECEIVABLE

    def test_invalid_currency_rejected(self):
        """Test that the currency must be a three-letter code."""
        with pytest.raises(ValidationError):
            Account(name="Wallet", currency="YUAN")


class TestTransactionModel:
    """Tests for posted transactions."""

    def test_identity_key_ignores_id(self):
        """Test that the same posting on two devices shares an identity key."""
        account_id = uuid4()
        definition_id = uuid4()
        kwargs = dict(
            account_id=account_id,
            kind=TransactionKind.EXPENSE,
            amount=Decimal("-20"),
            occurred_at=ANCHOR,
            source=TransactionSource.PERIODIC,
            definition_id=definition_id,
        )
        first = Transaction(**kwargs)
        second = Transaction(**kwargs)
        assert first.id != second.id
        assert first.identity_key == second.identity_key

    def test_interest_cannot_be_negative(self):
        """Test that negative interest is rejected."""
        with pytest.raises(ValidationError):
            Transaction(
                account_id=uuid4(),
                kind=TransactionKind.SETTLE,
                amount=Decimal("-10"),
                occurred_at=ANCHOR,
                interest=Decimal("-1"),
            )


class TestPeriodicDefinitionModel:
    """Tests for PeriodicTransactionDefinition validation."""

    def test_next_due_defaults_to_anchor(self):
        """Test that a new definition is first due at its anchor."""
        definition = make_definition()
        assert definition.next_due == ANCHOR
        assert definition.currency == "CNY"
        assert definition.active

    def test_transfer_requires_target(self):
        """Test that transfers need a target account."""
        with pytest.raises(ValueError, match="require a target"):
            make_definition(type=PeriodicType.TRANSFER)

    def test_expense_rejects_target(self):
        """Test that expenses do not take a target account."""
        with pytest.raises(ValueError, match="do not take a target"):
            make_definition(target_account_id=uuid4())

    def test_target_must_differ_from_source(self):
        """Test that a transfer to the same account is rejected."""
        account_id = uuid4()
        with pytest.raises(ValueError, match="must differ"):
            make_definition(
                type=PeriodicType.TRANSFER,
                source_account_id=account_id,
                target_account_id=account_id,
            )

    def test_fee_only_on_transfers(self):
        """Test that a fee on an expense is rejected."""
        with pytest.raises(ValueError, match="Only transfers carry a fee"):
            make_definition(fee=Decimal("1"))

    def test_source_fixed_fee_must_be_smaller_than_amount(self):
        """Test that a fee eating the whole transfer is rejected."""
        with pytest.raises(ValueError, match="Fee must be smaller"):
            make_definition(
                type=PeriodicType.TRANSFER,
                target_account_id=uuid4(),
                fee=Decimal("20"),
            )

        definition = make_definition(
            type=PeriodicType.TRANSFER,
            target_account_id=uuid4(),
            fee=Decimal("20"),
            fee_mode=FeeMode.TARGET_FIXED,
        )
        assert definition.fee == Decimal("20")

    def test_end_rules_require_their_fields(self):
        """Test that end modes need an end date or a count."""
        with pytest.raises(ValueError, match="end date"):
            make_definition(end_mode=EndMode.UNTIL_DATE)
        with pytest.raises(ValueError, match="remaining count"):
            make_definition(end_mode=EndMode.AFTER_COUNT)

    def test_naive_timestamps_rejected(self):
        """Test that every schedule timestamp must carry a timezone."""
        naive = datetime(2024, 5, 1)
        with pytest.raises(ValidationError):
            Recurrence(frequency=Frequency.DAILY, anchor=naive)
        with pytest.raises(ValidationError):
            make_definition(next_due=naive)
        with pytest.raises(ValidationError):
            make_definition(end_mode=EndMode.UNTIL_DATE, end_date=naive)
        with pytest.raises(ValidationError):
            Transaction(
                account_id=uuid4(),
                kind=TransactionKind.EXPENSE,
                amount=Decimal("-10"),
                occurred_at=naive,
            )

    def test_aware_timestamps_normalized_to_utc(self):
        """Test that an offset anchor is stored as the same instant in UTC."""
        shanghai = timezone(timedelta(hours=8))
        definition = make_definition(
            recurrence=Recurrence(
                frequency=Frequency.DAILY,
                anchor=datetime(2024, 1, 1, 17, 0, tzinfo=shanghai),
            ),
        )
        assert definition.recurrence.anchor == ANCHOR
        assert definition.next_due.tzinfo == timezone.utc
        assert definition.next_due <= ANCHOR + timedelta(hours=1)

    def test_interval_bounds(self):
        """Test that the recurrence interval must be at least 1."""
        with pytest.raises(ValidationError):
            Recurrence(frequency=Frequency.DAILY, interval=0, anchor=ANCHOR)


class TestSnapshotModel:
    """Tests for LedgerSnapshot."""

    def test_snapshot_is_frozen(self):
        """Test that a snapshot cannot be modified."""
        snapshot = LedgerSnapshot(origin=SnapshotOrigin.LOCAL, modified_at=ANCHOR)
        with pytest.raises(ValidationError):
            snapshot.modified_at = ANCHOR + timedelta(days=1)

    def test_is_empty(self):
        """Test emptiness is about content, not timestamps."""
        empty = LedgerSnapshot(origin=SnapshotOrigin.CLOUD, modified_at=ANCHOR)
        assert empty.is_empty

        filled = LedgerSnapshot(
            origin=SnapshotOrigin.CLOUD,
            modified_at=ANCHOR,
            accounts=(Account(name="Wallet", currency="CNY"),),
        )
        assert not filled.is_empty


class TestSyncModels:
    """Tests for SyncUiState and Resolution."""

    def test_resolution_state_is_discriminated(self):
        """Test that a serialized resolution restores the right state type."""
        resolution = Resolution(
            outcome=ResolutionOutcome.CONFLICT,
            strategy=SyncStrategy.MERGE,
            state=SyncConflict(remote_timestamp=ANCHOR),
        )
        restored = Resolution.model_validate(resolution.model_dump())
        assert isinstance(restored.state, SyncConflict)
        assert restored.state.remote_timestamp == ANCHOR
        assert restored.is_conflict

    def test_states_are_values(self):
        """Test that equal states compare equal."""
        assert SyncIdle() == SyncIdle()
        assert SyncSuccess(message="ok") == SyncSuccess(message="ok")
        assert SyncSuccess(message="ok").state == "success"


class TestAuditModels:
    """Tests for audit event models."""

    def test_audit_event_creation(self):
        """Test AuditEvent model creation."""
        event = AuditEvent(
            event_type=AuditEventType.TRANSACTION_POSTED,
            description="Posted expense of -20",
        )
        assert event.event_type == AuditEventType.TRANSACTION_POSTED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None
        assert event.timestamp.tzinfo is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        definition_id = uuid4()
        correlation_id = uuid4()
        event = AuditEventBuilder.definition_invalidated(
            definition_id=definition_id,
            reason="account deleted",
            correlation_id=correlation_id,
        )
        log_dict = event.to_log_dict()

        assert log_dict["event_type"] == "definition_invalidated"
        assert log_dict["severity"] == "warning"
        assert log_dict["entity_id"] == str(definition_id)
        assert log_dict["correlation_id"] == str(correlation_id)
        assert log_dict["error_message"] == "account deleted"

    def test_audit_event_builder_pass_finished_severity(self):
        """Test that pass outcomes map to severities."""
        correlation_id = uuid4()
        ok = AuditEventBuilder.scheduler_pass_finished("completed", 3, correlation_id)
        retry = AuditEventBuilder.scheduler_pass_finished("retryable", 0, correlation_id, "offline")
        failed = AuditEventBuilder.scheduler_pass_finished("failed", 1, correlation_id, "boom")

        assert ok.severity == AuditSeverity.INFO
        assert ok.details == {"status": "completed", "posted": 3}
        assert retry.severity == AuditSeverity.WARNING
        assert failed.severity == AuditSeverity.ERROR
        assert failed.error_message == "boom"

    def test_audit_event_builder_rate_unavailable(self):
        """Test the rate failure event."""
        event = AuditEventBuilder.rate_unavailable("CNY", "USD", "timeout")
        assert event.event_type == AuditEventType.RATE_UNAVAILABLE
        assert event.details == {"from": "CNY", "to": "USD"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
