"""
Tests for the account rules and the manual posting path.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from timeledger.accounts.rules import (
    OPERATION_RULES,
    InvalidOperationError,
    LimitExceededError,
    apply_transaction,
    compute_balance,
    funds_leg_kind_for_debt,
    split_transfer,
)
from timeledger.models.audit import AuditEventType
from timeledger.models.ledger import (
    Account,
    AccountCategory,
    DebtDirection,
    FeeMode,
    PostingEntry,
    Transaction,
    TransactionKind,
)
from timeledger.services.storage.interface import NotFoundError


WHEN = datetime(2024, 5, 20, 8, 0, tzinfo=timezone.utc)


def make_funds(name="Wallet", balance="100", currency="CNY"):
    return Account(name=name, currency=currency, initial_balance=Decimal(balance))


def make_credit(limit="1000", balance="0", allow_overpay=False):
    return Account(
        name="Card",
        currency="CNY",
        category=AccountCategory.CREDIT,
        credit_limit=Decimal(limit),
        allow_overpay=allow_overpay,
        initial_balance=Decimal(balance),
    )


def make_debt(name="Alice", direction=DebtDirection.RECEIVABLE, balance="0"):
    return Account(
        name=name,
        currency="CNY",
        category=AccountCategory.DEBT,
        debt_direction=direction,
        initial_balance=Decimal(balance),
    )


class TestOperationRules:
    """Tests for the (category, kind) dispatch table."""

    def test_funds_signs(self):
        """Test income and transfers in add, expense and transfers out subtract."""
        account = make_funds()
        assert apply_transaction(account, Decimal("100"), Decimal("5"), TransactionKind.INCOME).new_balance == Decimal("105")
        assert apply_transaction(account, Decimal("100"), Decimal("5"), TransactionKind.EXPENSE).new_balance == Decimal("95")
        assert apply_transaction(account, Decimal("100"), Decimal("5"), TransactionKind.TRANSFER_IN).delta == Decimal("5")
        assert apply_transaction(account, Decimal("100"), Decimal("5"), TransactionKind.TRANSFER_OUT).delta == Decimal("-5")

    def test_funds_may_go_negative(self):
        """Test that funds accounts carry no lower bound."""
        update = apply_transaction(make_funds(), Decimal("10"), Decimal("50"), TransactionKind.EXPENSE)
        assert update.new_balance == Decimal("-40")

    def test_credit_expense_raises_amount_owed(self):
        """Test that spending on a card increases the owed balance."""
        update = apply_transaction(make_credit(), Decimal("0"), Decimal("200"), TransactionKind.EXPENSE)
        assert update.new_balance == Decimal("200")

        repaid = apply_transaction(make_credit(), Decimal("200"), Decimal("150"), TransactionKind.TRANSFER_IN)
        assert repaid.new_balance == Decimal("50")

    @pytest.mark.parametrize("kind", [
        TransactionKind.INCOME,
        TransactionKind.EXPENSE,
        TransactionKind.TRANSFER_IN,
        TransactionKind.TRANSFER_OUT,
    ])
    def test_debt_accounts_refuse_everything_but_append_and_settle(self, kind):
        """Test that income/expense/transfers never apply to a debt account."""
        account = make_debt(balance="100")
        with pytest.raises(InvalidOperationError):
            apply_transaction(account, Decimal("100"), Decimal("10"), kind)

    def test_append_and_settle_refused_on_funds(self):
        """Test that debt operations are refused on funds and credit accounts."""
        with pytest.raises(InvalidOperationError):
            apply_transaction(make_funds(), Decimal("0"), Decimal("10"), TransactionKind.APPEND)
        with pytest.raises(InvalidOperationError):
            apply_transaction(make_credit(), Decimal("0"), Decimal("10"), TransactionKind.SETTLE)

    def test_every_pair_is_decided(self):
        """Test that the table only names kinds each category supports."""
        debt_kinds = {kind for (category, kind) in OPERATION_RULES if category == AccountCategory.DEBT}
        assert debt_kinds == {TransactionKind.APPEND, TransactionKind.SETTLE}

    def test_non_positive_amount_rejected(self):
        """Test that zero or negative magnitudes are refused."""
        with pytest.raises(InvalidOperationError, match="positive"):
            apply_transaction(make_funds(), Decimal("100"), Decimal("0"), TransactionKind.INCOME)
        with pytest.raises(InvalidOperationError):
            apply_transaction(make_funds(), Decimal("100"), Decimal("-3"), TransactionKind.INCOME)


class TestBalanceBounds:
    """Tests for credit limits and debt settlement bounds."""

    def test_credit_limit_exceeded(self):
        """Test that spending past the limit is refused."""
        with pytest.raises(LimitExceededError, match="credit limit"):
            apply_transaction(make_credit(limit="1000"), Decimal("950"), Decimal("60"), TransactionKind.EXPENSE)

    def test_credit_limit_exactly_reached(self):
        """Test that spending up to the limit is allowed."""
        update = apply_transaction(make_credit(limit="1000"), Decimal("950"), Decimal("50"), TransactionKind.EXPENSE)
        assert update.new_balance == Decimal("1000")

    def test_credit_overpay_refused(self):
        """Test that repaying more than owed is refused without overpay."""
        with pytest.raises(LimitExceededError, match="Overpayment"):
            apply_transaction(make_credit(), Decimal("100"), Decimal("150"), TransactionKind.INCOME)

    def test_credit_overpay_allowed(self):
        """Test that overpay-enabled cards can go below zero and past the limit."""
        account = make_credit(limit="100", allow_overpay=True)
        assert apply_transaction(account, Decimal("10"), Decimal("50"), TransactionKind.INCOME).new_balance == Decimal("-40")
        assert apply_transaction(account, Decimal("90"), Decimal("50"), TransactionKind.EXPENSE).new_balance == Decimal("140")

    def test_over_limit_card_still_accepts_payment(self):
        """Test that a move back toward the bounds is never refused."""
        update = apply_transaction(make_credit(limit="100"), Decimal("150"), Decimal("20"), TransactionKind.TRANSFER_IN)
        assert update.new_balance == Decimal("130")

    def test_debt_over_settlement_refused(self):
        """Test that settling more than outstanding is refused."""
        with pytest.raises(LimitExceededError, match="exceeds outstanding"):
            apply_transaction(make_debt(), Decimal("100"), Decimal("100.01"), TransactionKind.SETTLE)

    def test_debt_settles_to_zero(self):
        """Test that a debt can be settled exactly."""
        update = apply_transaction(make_debt(), Decimal("100"), Decimal("100"), TransactionKind.SETTLE)
        assert update.new_balance == Decimal("0")


class TestBalanceDerivation:
    """Tests for replaying the transaction log."""

    def test_replay_matches_incremental(self):
        """Test that the derived balance equals the incrementally applied one."""
        account = make_funds(balance="100")
        balance = account.initial_balance
        log = []
        for amount, kind in [
            ("30", TransactionKind.INCOME),
            ("45.50", TransactionKind.EXPENSE),
            ("10", TransactionKind.TRANSFER_OUT),
            ("0.25", TransactionKind.TRANSFER_IN),
        ]:
            update = apply_transaction(account, balance, Decimal(amount), kind)
            balance = update.new_balance
            log.append(Transaction(account_id=account.id, kind=kind, amount=update.delta, occurred_at=WHEN))

        assert compute_balance(account, log) == balance == Decimal("74.75")

    def test_replay_ignores_other_accounts(self):
        """Test that only the account's own transactions count."""
        account = make_funds(balance="10")
        foreign = Transaction(account_id=uuid4(), kind=TransactionKind.INCOME, amount=Decimal("99"), occurred_at=WHEN)
        assert compute_balance(account, [foreign]) == Decimal("10")


class TestHelpers:
    """Tests for the transfer and debt leg helpers."""

    def test_split_transfer_source_fixed(self):
        """Test the source pays the amount and the fee comes out of it."""
        assert split_transfer(Decimal("100"), Decimal("2"), FeeMode.SOURCE_FIXED) == (Decimal("100"), Decimal("98"))

    def test_split_transfer_target_fixed(self):
        """Test the target receives the amount and the source pays the fee on top."""
        assert split_transfer(Decimal("100"), Decimal("2"), FeeMode.TARGET_FIXED) == (Decimal("102"), Decimal("100"))

    def test_funds_leg_kind_for_debt(self):
        """Test which way money moves for each debt operation."""
        assert funds_leg_kind_for_debt(DebtDirection.PAYABLE, settling=False) == TransactionKind.INCOME
        assert funds_leg_kind_for_debt(DebtDirection.PAYABLE, settling=True) == TransactionKind.EXPENSE
        assert funds_leg_kind_for_debt(DebtDirection.RECEIVABLE, settling=False) == TransactionKind.EXPENSE
        assert funds_leg_kind_for_debt(DebtDirection.RECEIVABLE, settling=True) == TransactionKind.INCOME


class TestInMemoryPosting:
    """Tests for the store's atomic post_entries."""

    @pytest.mark.asyncio
    async def test_rejected_leg_writes_nothing(self, store):
        """Test that one refused leg leaves every account untouched."""
        wallet = make_funds(balance="100")
        card = make_credit(limit="50")
        await store.save_account(wallet)
        await store.save_account(card)

        with pytest.raises(LimitExceededError):
            await store.post_entries([
                PostingEntry(account_id=wallet.id, kind=TransactionKind.EXPENSE, amount=Decimal("10")),
                PostingEntry(account_id=card.id, kind=TransactionKind.EXPENSE, amount=Decimal("60")),
            ])

        assert await store.get_balance(wallet.id) == Decimal("100")
        assert await store.get_balance(card.id) == Decimal("0")
        assert await store.list_transactions() == []

    @pytest.mark.asyncio
    async def test_legs_on_same_account_use_running_balance(self, store):
        """Test that two legs on one account are checked cumulatively."""
        debt = make_debt(balance="100")
        await store.save_account(debt)

        with pytest.raises(LimitExceededError):
            await store.post_entries([
                PostingEntry(account_id=debt.id, kind=TransactionKind.SETTLE, amount=Decimal("60")),
                PostingEntry(account_id=debt.id, kind=TransactionKind.SETTLE, amount=Decimal("60")),
            ])
        assert await store.get_balance(debt.id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_missing_account(self, store):
        """Test that posting to an unknown account raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await store.post_entries([
                PostingEntry(account_id=uuid4(), kind=TransactionKind.INCOME, amount=Decimal("1")),
            ])


class TestLedgerService:
    """Tests for the manual posting path."""

    @pytest.mark.asyncio
    async def test_record_income_and_expense(self, ledger, audit_storage):
        """Test manual income and expense update the balance and the audit log."""
        wallet = await ledger.open_account(make_funds(balance="100"))

        await ledger.record_income(wallet.id, Decimal("50"), occurred_at=WHEN)
        update = await ledger.record_expense(wallet.id, Decimal("30"), occurred_at=WHEN)

        assert update.new_balance == Decimal("120")
        assert await ledger.balance(wallet.id) == Decimal("120")
        events = await audit_storage.get_recent_events()
        assert [e.event_type for e in events] == [AuditEventType.TRANSACTION_POSTED] * 2

    @pytest.mark.asyncio
    async def test_rejection_is_audited(self, ledger, audit_storage):
        """Test that a refused operation raises and leaves an audit trail."""
        debt = await ledger.open_account(make_debt(balance="10"))

        with pytest.raises(LimitExceededError):
            await ledger.settle_debt(debt.id, Decimal("20"))

        events = await audit_storage.get_recent_events()
        assert events[0].event_type == AuditEventType.TRANSACTION_REJECTED
        assert await ledger.balance(debt.id) == Decimal("10")

    @pytest.mark.asyncio
    async def test_transfer_with_fee(self, ledger, store):
        """Test a same-currency transfer with the fee taken from the amount."""
        wallet = await ledger.open_account(make_funds(balance="100"))
        bank = await ledger.open_account(make_funds(name="Bank", balance="0"))

        updates = await ledger.transfer(wallet.id, bank.id, Decimal("40"), fee=Decimal("1"), occurred_at=WHEN)

        assert [u.new_balance for u in updates] == [Decimal("60"), Decimal("39")]
        legs = await store.list_transactions()
        assert legs[0].transfer_id == legs[1].transfer_id is not None
        assert {t.related_account_id for t in legs} == {wallet.id, bank.id}

    @pytest.mark.asyncio
    async def test_cross_currency_transfer(self, ledger, clock):
        """Test that the target leg is converted into the target's currency."""
        wallet = await ledger.open_account(make_funds(balance="1000"))
        dollars = await ledger.open_account(make_funds(name="USD", balance="0", currency="USD"))

        await ledger.transfer(wallet.id, dollars.id, Decimal("100"), occurred_at=clock())

        assert await ledger.balance(wallet.id) == Decimal("900")
        assert await ledger.balance(dollars.id) == Decimal("14.00")

    @pytest.mark.asyncio
    async def test_transfer_to_same_account_refused(self, ledger):
        """Test that a self-transfer is refused."""
        wallet = await ledger.open_account(make_funds())
        with pytest.raises(InvalidOperationError):
            await ledger.transfer(wallet.id, wallet.id, Decimal("1"))

    @pytest.mark.asyncio
    async def test_lend_and_collect_with_interest(self, ledger, store):
        """Test a receivable: lending takes money out, collecting brings it back with interest."""
        wallet = await ledger.open_account(make_funds(balance="1000"))
        alice = await ledger.open_account(make_debt())

        await ledger.incur_debt(alice.id, Decimal("300"), funds_account_id=wallet.id, occurred_at=WHEN)
        assert await ledger.balance(wallet.id) == Decimal("700")
        assert await ledger.balance(alice.id) == Decimal("300")

        await ledger.settle_debt(
            alice.id,
            Decimal("100"),
            funds_account_id=wallet.id,
            interest=Decimal("5"),
            occurred_at=WHEN,
        )
        assert await ledger.balance(wallet.id) == Decimal("805")
        assert await ledger.balance(alice.id) == Decimal("200")

        settle = [t for t in await store.list_transactions(alice.id) if t.kind == TransactionKind.SETTLE]
        assert settle[0].interest == Decimal("5")
        assert settle[0].counterparty == "Alice"

    @pytest.mark.asyncio
    async def test_debt_operation_on_funds_account_refused(self, ledger):
        """Test that debt helpers refuse a non-debt account."""
        wallet = await ledger.open_account(make_funds())
        with pytest.raises(InvalidOperationError, match="not a debt account"):
            await ledger.incur_debt(wallet.id, Decimal("10"))

    @pytest.mark.asyncio
    async def test_rebase_balance(self, ledger):
        """Test that rebasing sets the current balance and keeps the log."""
        wallet = await ledger.open_account(make_funds(balance="100"))
        await ledger.record_expense(wallet.id, Decimal("30"), occurred_at=WHEN)

        rebased = await ledger.rebase_balance(wallet.id, Decimal("500"))

        assert rebased.initial_balance == Decimal("530")
        assert await ledger.balance(wallet.id) == Decimal("500")

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        """Test that operations on a missing account raise NotFoundError."""
        with pytest.raises(NotFoundError):
            await ledger.record_income(uuid4(), Decimal("1"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
