"""
Core Ledger Models for TimeLedger

These models define the strict schemas for the ledger state the engine
keeps consistent:
1. Accounts in three categories (funds, credit, debt)
2. Posted transactions (the log every balance is derived from)
3. Periodic transaction definitions (what the scheduler fires)
4. Snapshots (what the reconciler compares)

DESIGN DECISION: Balances are NOT stored on the account.
A balance is always initial_balance + the signed sum of the account's
transactions, so replaying the log reproduces it after any failure.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from uuid import UUID, uuid4

from pydantic import (
    AfterValidator,
    AwareDatetime,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


# Naive datetimes are rejected; aware ones are normalized to UTC
UtcDatetime = Annotated[AwareDatetime, AfterValidator(lambda v: v.astimezone(timezone.utc))]


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AccountCategory(str, Enum):
    """
    The three account categories.

    FUNDS  - cash, bank, e-wallet: income, expense and transfers.
    CREDIT - revolving credit: positive balance is the amount owed.
    DEBT   - one-directional payable/receivable, only append and settle.
    """
    FUNDS = "funds"
    CREDIT = "credit"
    DEBT = "debt"


class DebtDirection(str, Enum):
    """Which way a DEBT account points."""
    PAYABLE = "payable"        # we borrowed, we owe
    RECEIVABLE = "receivable"  # we lent, we are owed


class TransactionKind(str, Enum):
    """Operation a transaction performs on its account."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    APPEND = "append"   # incur more debt
    SETTLE = "settle"   # repay / collect debt


class TransactionSource(str, Enum):
    """Where a transaction came from."""
    MANUAL = "manual"
    PERIODIC = "periodic"


class PeriodicType(str, Enum):
    """What a periodic definition posts when it fires."""
    EXPENSE = "expense"
    INCOME = "income"
    TRANSFER = "transfer"
    DEBT_SETTLEMENT = "debt_settlement"


class Frequency(str, Enum):
    """Unit of a recurrence interval."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class FeeMode(str, Enum):
    """
    How a transfer fee is charged.

    SOURCE_FIXED: source pays `amount`, target receives `amount - fee`.
    TARGET_FIXED: source pays `amount + fee`, target receives `amount`.
    """
    SOURCE_FIXED = "source_fixed"
    TARGET_FIXED = "target_fixed"


class EndMode(str, Enum):
    """When a periodic definition stops firing on its own."""
    NEVER = "never"
    UNTIL_DATE = "until_date"
    AFTER_COUNT = "after_count"


class SnapshotOrigin(str, Enum):
    """Which replica a snapshot was exported from."""
    LOCAL = "local"
    CLOUD = "cloud"


# =============================================================================
# ACCOUNT
# =============================================================================

class Account(BaseModel):
    """
    A ledger account.

    Category-specific fields are only accepted on their category:
    credit_limit / allow_overpay / billing_day / repayment_day on CREDIT,
    debt_direction on DEBT.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(default_factory=uuid4)
    name: str = Field(..., min_length=1, max_length=100)
    currency: str = Field(..., pattern="^[A-Z]{3}$")
    category: AccountCategory = AccountCategory.FUNDS
    initial_balance: Decimal = Decimal("0")
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    # CREDIT only
    credit_limit: Optional[Decimal] = Field(default=None, ge=0)
    allow_overpay: bool = False
    billing_day: Optional[int] = Field(default=None, ge=1, le=31)
    repayment_day: Optional[int] = Field(default=None, ge=1, le=31)

    # DEBT only
    debt_direction: Optional[DebtDirection] = None

    @field_validator('currency', mode='before')
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode='after')
    def validate_category_fields(self) -> 'Account':
        """Keep category-specific fields on their own category."""
        if self.category == AccountCategory.CREDIT:
            if self.credit_limit is None:
                raise ValueError("Credit accounts require a credit limit")
        else:
            if self.credit_limit is not None or self.allow_overpay:
                raise ValueError("Only credit accounts carry a credit limit or overpay flag")
            if self.billing_day is not None or self.repayment_day is not None:
                raise ValueError("Only credit accounts carry billing or repayment days")

        if self.category == AccountCategory.DEBT:
            if self.debt_direction is None:
                raise ValueError("Debt accounts require a debt direction")
        elif self.debt_direction is not None:
            raise ValueError("Only debt accounts carry a debt direction")

        return self


# =============================================================================
# TRANSACTIONS
# =============================================================================

class Transaction(BaseModel):
    """
    A posted transaction.

    `amount` is the signed effect on the account balance in the account's
    own currency (for CREDIT accounts a positive amount means more owed,
    for DEBT accounts more outstanding principal).
    """

    id: UUID = Field(default_factory=uuid4)
    account_id: UUID
    kind: TransactionKind
    amount: Decimal
    occurred_at: UtcDatetime
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    note: Optional[str] = Field(default=None, max_length=500)

    # Debt bookkeeping
    counterparty: Optional[str] = Field(default=None, max_length=100)
    interest: Decimal = Field(default=Decimal("0"), ge=0)

    # Provenance
    source: TransactionSource = TransactionSource.MANUAL
    definition_id: Optional[UUID] = None

    # Both legs of a transfer share a transfer_id
    transfer_id: Optional[UUID] = None
    related_account_id: Optional[UUID] = None

    @property
    def identity_key(self) -> tuple:
        """
        Key under which two transactions count as the same posting.

        A periodic occurrence that fired identically on two devices gets
        different ids but the same identity key.
        """
        return (
            self.account_id,
            self.amount,
            self.occurred_at,
            self.source,
        )


class PostingEntry(BaseModel):
    """
    One leg a caller asks the store to post.

    `amount` is a positive magnitude; the account rules turn it into the
    signed balance effect stored on the resulting Transaction.
    """

    account_id: UUID
    kind: TransactionKind
    amount: Decimal = Field(..., gt=0)
    occurred_at: UtcDatetime = Field(default_factory=utcnow)
    note: Optional[str] = None
    counterparty: Optional[str] = None
    interest: Decimal = Field(default=Decimal("0"), ge=0)
    source: TransactionSource = TransactionSource.MANUAL
    definition_id: Optional[UUID] = None
    transfer_id: Optional[UUID] = None
    related_account_id: Optional[UUID] = None


class BalanceUpdate(BaseModel):
    """Outcome of applying one operation to an account."""

    account_id: UUID
    kind: TransactionKind
    previous_balance: Decimal
    delta: Decimal
    new_balance: Decimal


# =============================================================================
# PERIODIC DEFINITIONS
# =============================================================================

class Recurrence(BaseModel):
    """Every `interval` `frequency` units, counted from `anchor`."""

    frequency: Frequency
    interval: int = Field(default=1, ge=1, le=1000)
    anchor: UtcDatetime


class PeriodicTransactionDefinition(BaseModel):
    """
    A user-configured recurring transaction.

    The scheduler advances `next_due` by exactly one recurrence step from
    its previous value every time the definition fires.
    """

    id: UUID = Field(default_factory=uuid4)
    type: PeriodicType
    source_account_id: UUID
    target_account_id: Optional[UUID] = None
    amount: Decimal = Field(..., gt=0)
    currency: str = Field(..., pattern="^[A-Z]{3}$")
    recurrence: Recurrence
    next_due: Optional[UtcDatetime] = None
    active: bool = True
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    note: Optional[str] = Field(default=None, max_length=500)

    # Transfers
    fee: Decimal = Field(default=Decimal("0"), ge=0)
    fee_mode: FeeMode = FeeMode.SOURCE_FIXED

    # Debt settlements
    counterparty: Optional[str] = Field(default=None, max_length=100)

    # End rule
    end_mode: EndMode = EndMode.NEVER
    end_date: Optional[UtcDatetime] = None
    remaining_count: Optional[int] = Field(default=None, ge=0)

    @field_validator('currency', mode='before')
    @classmethod
    def upper_currency(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode='after')
    def validate_definition(self) -> 'PeriodicTransactionDefinition':
        """Check type/target pairing and end-rule fields."""
        if self.next_due is None:
            self.next_due = self.recurrence.anchor

        needs_target = self.type in (PeriodicType.TRANSFER, PeriodicType.DEBT_SETTLEMENT)
        if needs_target and self.target_account_id is None:
            raise ValueError(f"{self.type.value} definitions require a target account")
        if not needs_target and self.target_account_id is not None:
            raise ValueError(f"{self.type.value} definitions do not take a target account")
        if self.target_account_id is not None and self.target_account_id == self.source_account_id:
            raise ValueError("Source and target account must differ")

        if self.fee and self.type != PeriodicType.TRANSFER:
            raise ValueError("Only transfers carry a fee")
        if self.type == PeriodicType.TRANSFER and self.fee_mode == FeeMode.SOURCE_FIXED:
            if self.fee >= self.amount:
                raise ValueError("Fee must be smaller than the transferred amount")

        if self.end_mode == EndMode.UNTIL_DATE and self.end_date is None:
            raise ValueError("An until-date end rule requires an end date")
        if self.end_mode == EndMode.AFTER_COUNT and self.remaining_count is None:
            raise ValueError("An after-count end rule requires a remaining count")

        return self


# =============================================================================
# SNAPSHOTS
# =============================================================================

class LedgerSnapshot(BaseModel):
    """
    Immutable point-in-time export of the whole ledger.

    Only the reconciler uses snapshots; they are never the system of record.
    """
    model_config = ConfigDict(frozen=True)

    origin: SnapshotOrigin
    modified_at: UtcDatetime
    # Store revision a LOCAL snapshot was exported at
    revision: int = Field(default=0, ge=0)
    accounts: tuple[Account, ...] = ()
    transactions: tuple[Transaction, ...] = ()
    periodic_definitions: tuple[PeriodicTransactionDefinition, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.accounts or self.transactions or self.periodic_definitions)


# =============================================================================
# DEBT QUERIES
# =============================================================================

class DebtSummary(BaseModel):
    """Derived debt position against one counterparty."""

    counterparty: str
    direction: DebtDirection
    total_principal: Decimal = Decimal("0")
    settled_amount: Decimal = Decimal("0")
    outstanding: Decimal = Decimal("0")
    accrued_interest: Decimal = Decimal("0")
    last_activity: Optional[date] = None


class DebtTotals(BaseModel):
    """Outstanding receivables and payables across all counterparties."""

    receivable: Decimal = Decimal("0")
    payable: Decimal = Decimal("0")
