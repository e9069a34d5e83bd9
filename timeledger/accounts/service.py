"""
Ledger Service

The manual posting path: record income and expenses, move money between
accounts, incur and settle debts, and rebase an account balance.

Every operation is built as a list of PostingEntry legs and handed to the
store's atomic post_entries. The periodic scheduler builds its legs with the
same helpers, so a periodic transfer and a manual transfer post identically.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from timeledger.accounts.rules import (
    InvalidOperationError,
    TransactionRejectedError,
    funds_leg_kind_for_debt,
    split_transfer,
)
from timeledger.models.ledger import (
    Account,
    AccountCategory,
    BalanceUpdate,
    FeeMode,
    PeriodicTransactionDefinition,
    PostingEntry,
    TransactionKind,
    TransactionSource,
    utcnow,
)
from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.storage.interface import LedgerStoreInterface, NotFoundError


logger = structlog.get_logger(__name__)


class LedgerService:
    """
    Posts user-initiated operations through the account rules.

    Amounts are positive magnitudes. Where an operation involves an account
    in another currency, the amount is converted through the rate cache at
    the date the operation occurred.
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        rates: ExchangeRateCache,
        audit_logger=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._rates = rates
        self._audit_logger = audit_logger
        self._clock = clock

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def open_account(self, account: Account) -> Account:
        await self._store.save_account(account)
        logger.info("account_opened", account_id=str(account.id), category=account.category.value)
        return account

    async def require_account(self, account_id: UUID) -> Account:
        """
        Raises:
            NotFoundError: If the account doesn't exist
        """
        account = await self._store.get_account(account_id)
        if account is None:
            raise NotFoundError(f"Account not found: {account_id}")
        return account

    async def balance(self, account_id: UUID) -> Decimal:
        return await self._store.get_balance(account_id)

    async def rebase_balance(self, account_id: UUID, new_balance: Decimal) -> Account:
        """
        Set a new current balance without touching the transaction log.

        The difference is absorbed by initial_balance, so the replay
        derivation yields `new_balance` afterwards.
        """
        account = await self.require_account(account_id)
        current = await self._store.get_balance(account_id)
        transaction_sum = current - account.initial_balance
        rebased = account.model_copy(update={
            "initial_balance": new_balance - transaction_sum,
            "updated_at": self._clock(),
        })
        await self._store.save_account(rebased)
        logger.info(
            "balance_rebased",
            account_id=str(account_id),
            previous=str(current),
            new=str(new_balance),
        )
        return rebased

    # ------------------------------------------------------------------
    # Leg builders (shared with the scheduler)
    # ------------------------------------------------------------------

    async def _leg(
        self,
        account: Account,
        kind: TransactionKind,
        amount: Decimal,
        currency: str,
        occurred_at: datetime,
        **provenance,
    ) -> PostingEntry:
        converted = await self._rates.convert(amount, currency, account.currency, occurred_at.date())
        if converted <= 0:
            raise InvalidOperationError(
                account.id,
                kind,
                f"{amount} {currency} is worth nothing in {account.currency}",
            )
        return PostingEntry(
            account_id=account.id,
            kind=kind,
            amount=converted,
            occurred_at=occurred_at,
            **provenance,
        )

    async def simple_entries(
        self,
        account: Account,
        kind: TransactionKind,
        amount: Decimal,
        currency: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        definition_id: Optional[UUID] = None,
    ) -> list[PostingEntry]:
        """One income or expense leg."""
        return [await self._leg(
            account,
            kind,
            amount,
            currency or account.currency,
            occurred_at or self._clock(),
            note=note,
            source=source,
            definition_id=definition_id,
        )]

    async def transfer_entries(
        self,
        source_account: Account,
        target_account: Account,
        amount: Decimal,
        fee: Decimal = Decimal("0"),
        fee_mode: FeeMode = FeeMode.SOURCE_FIXED,
        currency: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        definition_id: Optional[UUID] = None,
    ) -> list[PostingEntry]:
        """
        The two legs of a transfer, sharing one transfer_id.

        `amount` and `fee` are in `currency` (default: the source account's).
        """
        if source_account.id == target_account.id:
            raise InvalidOperationError(
                source_account.id,
                TransactionKind.TRANSFER_OUT,
                "Cannot transfer to the same account",
            )
        currency = currency or source_account.currency
        occurred_at = occurred_at or self._clock()
        paid, received = split_transfer(amount, fee, fee_mode)
        if received <= 0:
            raise InvalidOperationError(
                source_account.id,
                TransactionKind.TRANSFER_OUT,
                f"Fee {fee} consumes the whole transfer of {amount}",
            )

        transfer_id = uuid4()
        common = dict(
            note=note,
            source=source,
            definition_id=definition_id,
            transfer_id=transfer_id,
        )
        out_leg = await self._leg(
            source_account,
            TransactionKind.TRANSFER_OUT,
            paid,
            currency,
            occurred_at,
            related_account_id=target_account.id,
            **common,
        )
        in_leg = await self._leg(
            target_account,
            TransactionKind.TRANSFER_IN,
            received,
            currency,
            occurred_at,
            related_account_id=source_account.id,
            **common,
        )
        return [out_leg, in_leg]

    async def debt_entries(
        self,
        debt_account: Account,
        funds_account: Optional[Account],
        amount: Decimal,
        settling: bool,
        interest: Decimal = Decimal("0"),
        counterparty: Optional[str] = None,
        currency: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
        source: TransactionSource = TransactionSource.MANUAL,
        definition_id: Optional[UUID] = None,
    ) -> list[PostingEntry]:
        """
        The debt leg plus (optionally) the funds leg of a debt operation.

        On a settlement the funds leg moves principal plus interest; the
        interest is recorded on the SETTLE transaction.
        """
        kind = TransactionKind.SETTLE if settling else TransactionKind.APPEND
        if debt_account.category != AccountCategory.DEBT:
            raise InvalidOperationError(
                debt_account.id,
                kind,
                f"'{debt_account.name}' is not a debt account",
            )
        currency = currency or debt_account.currency
        occurred_at = occurred_at or self._clock()
        counterparty = counterparty or debt_account.name
        common = dict(note=note, source=source, definition_id=definition_id)

        debt_leg = await self._leg(
            debt_account,
            kind,
            amount,
            currency,
            occurred_at,
            counterparty=counterparty,
            interest=interest if settling else Decimal("0"),
            related_account_id=funds_account.id if funds_account else None,
            **common,
        )
        entries = [debt_leg]
        if funds_account is not None:
            entries.append(await self._leg(
                funds_account,
                funds_leg_kind_for_debt(debt_account.debt_direction, settling),
                amount + interest,
                currency,
                occurred_at,
                counterparty=counterparty,
                related_account_id=debt_account.id,
                **common,
            ))
        return entries

    # ------------------------------------------------------------------
    # Posting
    # ------------------------------------------------------------------

    async def post(
        self,
        entries: list[PostingEntry],
        definition: Optional[PeriodicTransactionDefinition] = None,
        correlation_id: Optional[UUID] = None,
    ) -> list[BalanceUpdate]:
        """
        Post legs atomically (with the advanced definition, if given).

        Raises:
            InvalidOperationError / LimitExceededError: A leg was refused; nothing written
            NotFoundError: A leg names a missing account
            StoreUnavailableError: The store cannot be reached
        """
        try:
            updates = await self._store.post_entries(entries, definition)
        except TransactionRejectedError as e:
            if self._audit_logger:
                await self._audit_logger.log_transaction_rejected(
                    account_id=e.account_id,
                    kind=e.kind.value,
                    reason=str(e),
                    correlation_id=correlation_id,
                )
            raise

        if self._audit_logger:
            await self._audit_logger.log_balance_updates(updates, correlation_id)
        return updates

    async def record_income(
        self,
        account_id: UUID,
        amount: Decimal,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> BalanceUpdate:
        account = await self.require_account(account_id)
        entries = await self.simple_entries(
            account, TransactionKind.INCOME, amount, occurred_at=occurred_at, note=note,
        )
        return (await self.post(entries))[0]

    async def record_expense(
        self,
        account_id: UUID,
        amount: Decimal,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> BalanceUpdate:
        account = await self.require_account(account_id)
        entries = await self.simple_entries(
            account, TransactionKind.EXPENSE, amount, occurred_at=occurred_at, note=note,
        )
        return (await self.post(entries))[0]

    async def transfer(
        self,
        source_account_id: UUID,
        target_account_id: UUID,
        amount: Decimal,
        fee: Decimal = Decimal("0"),
        fee_mode: FeeMode = FeeMode.SOURCE_FIXED,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> list[BalanceUpdate]:
        """Move `amount` (in the source account's currency) between two accounts."""
        source_account = await self.require_account(source_account_id)
        target_account = await self.require_account(target_account_id)
        entries = await self.transfer_entries(
            source_account,
            target_account,
            amount,
            fee=fee,
            fee_mode=fee_mode,
            occurred_at=occurred_at,
            note=note,
        )
        return await self.post(entries)

    async def incur_debt(
        self,
        debt_account_id: UUID,
        amount: Decimal,
        funds_account_id: Optional[UUID] = None,
        counterparty: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> list[BalanceUpdate]:
        """Borrow (PAYABLE) or lend (RECEIVABLE) more."""
        debt_account = await self.require_account(debt_account_id)
        funds_account = await self.require_account(funds_account_id) if funds_account_id else None
        entries = await self.debt_entries(
            debt_account,
            funds_account,
            amount,
            settling=False,
            counterparty=counterparty,
            occurred_at=occurred_at,
            note=note,
        )
        return await self.post(entries)

    async def settle_debt(
        self,
        debt_account_id: UUID,
        amount: Decimal,
        funds_account_id: Optional[UUID] = None,
        interest: Decimal = Decimal("0"),
        counterparty: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        note: Optional[str] = None,
    ) -> list[BalanceUpdate]:
        """Repay (PAYABLE) or collect (RECEIVABLE) principal, plus optional interest."""
        debt_account = await self.require_account(debt_account_id)
        funds_account = await self.require_account(funds_account_id) if funds_account_id else None
        entries = await self.debt_entries(
            debt_account,
            funds_account,
            amount,
            settling=True,
            interest=interest,
            counterparty=counterparty,
            occurred_at=occurred_at,
            note=note,
        )
        return await self.post(entries)
