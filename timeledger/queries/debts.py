"""
Debt Summary Query

DESIGN DECISION: Debt positions are DERIVED, never stored.
Every figure below is recomputed from DEBT-account transactions on each
call, so it can never disagree with the ledger.

A transaction's counterparty is its own `counterparty` field, falling back
to the name of the debt account it was posted on. An account's opening
balance counts as principal lent/borrowed from the account's namesake.
"""

from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Optional

from timeledger.config import get_settings
from timeledger.models.ledger import (
    Account,
    AccountCategory,
    DebtDirection,
    DebtSummary,
    DebtTotals,
    TransactionKind,
)
from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.storage.interface import LedgerStoreInterface


class DebtQueryError(Exception):
    """A debt question that cannot be answered as asked."""
    pass


def _key(name: str) -> str:
    return name.strip().casefold()


class _Position:
    """Running totals for one (counterparty, direction)."""

    def __init__(self, counterparty: str, direction: DebtDirection):
        self.counterparty = counterparty
        self.direction = direction
        self.principal = Decimal("0")
        self.settled = Decimal("0")
        self.interest = Decimal("0")
        self.last_activity: Optional[date] = None

    def touch(self, day: date) -> None:
        if self.last_activity is None or day > self.last_activity:
            self.last_activity = day

    def summary(self) -> DebtSummary:
        return DebtSummary(
            counterparty=self.counterparty,
            direction=self.direction,
            total_principal=self.principal,
            settled_amount=self.settled,
            outstanding=self.principal - self.settled,
            accrued_interest=self.interest,
            last_activity=self.last_activity,
        )


class DebtSummaryQuery:
    """
    Read-only debt aggregates per counterparty.

    Amounts are reported in one currency (default: the app's default
    currency); accounts in other currencies are converted at each
    transaction's date.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        rates: ExchangeRateCache,
        reporting_currency: Optional[str] = None,
    ):
        self._store = store
        self._rates = rates
        self._currency = (reporting_currency or get_settings().app.default_currency).upper()

    async def _convert(self, amount: Decimal, account: Account, on: Optional[date]) -> Decimal:
        return await self._rates.convert(amount, account.currency, self._currency, on)

    async def _positions(self) -> dict[tuple[str, DebtDirection], _Position]:
        positions: dict[tuple[str, DebtDirection], _Position] = {}

        def position(name: str, direction: DebtDirection) -> _Position:
            key = (_key(name), direction)
            if key not in positions:
                positions[key] = _Position(name.strip(), direction)
            return positions[key]

        accounts = [
            a for a in await self._store.list_accounts()
            if a.category == AccountCategory.DEBT
        ]
        for account in accounts:
            transactions = await self._store.list_transactions(account.id)
            if account.initial_balance:
                # First posting's date; latest rates while there is none
                opened_on = transactions[0].occurred_at.date() if transactions else None
                opening = position(account.name, account.debt_direction)
                opening.principal += await self._convert(account.initial_balance, account, opened_on)

            for transaction in transactions:
                day = transaction.occurred_at.date()
                entry = position(transaction.counterparty or account.name, account.debt_direction)
                magnitude = await self._convert(abs(transaction.amount), account, day)
                if transaction.kind == TransactionKind.APPEND:
                    entry.principal += magnitude
                elif transaction.kind == TransactionKind.SETTLE:
                    entry.settled += magnitude
                    if transaction.interest:
                        entry.interest += await self._convert(transaction.interest, account, day)
                entry.touch(day)

        return positions

    async def summarize(
        self,
        counterparty: str,
        direction: Optional[DebtDirection] = None,
    ) -> Optional[DebtSummary]:
        """
        Summary for one counterparty, or None if there is no debt history.

        Raises:
            DebtQueryError: The counterparty has both payable and receivable
                debts and no direction was given
        """
        positions = await self._positions()
        matches = [
            p for (name, d), p in positions.items()
            if name == _key(counterparty) and (direction is None or d == direction)
        ]
        if not matches:
            return None
        if len(matches) > 1:
            raise DebtQueryError(
                f"'{counterparty}' has both payable and receivable debts; pass a direction"
            )
        return matches[0].summary()

    async def summarize_all(self) -> list[DebtSummary]:
        """Every counterparty's summary, largest outstanding first."""
        positions = await self._positions()
        summaries = [p.summary() for p in positions.values()]
        return sorted(summaries, key=lambda s: (-s.outstanding, s.counterparty))

    async def totals(self) -> DebtTotals:
        """Outstanding receivables and payables across all counterparties."""
        sums: dict[DebtDirection, Decimal] = defaultdict(Decimal)
        for summary in await self.summarize_all():
            sums[summary.direction] += summary.outstanding
        return DebtTotals(
            receivable=sums[DebtDirection.RECEIVABLE],
            payable=sums[DebtDirection.PAYABLE],
        )
