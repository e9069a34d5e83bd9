"""
Account Rules

Pure balance computation for the three account categories.

DESIGN DECISION: The allowed operations are one dispatch table keyed by
(category, kind). A pair missing from the table is not allowed, so every
category/operation combination is decided in exactly one place.

Nothing in this module touches storage. The store calls apply_transaction
inside its atomic unit, with the balance it has just derived.
"""

from decimal import Decimal
from typing import Iterable

from timeledger.models.ledger import (
    Account,
    AccountCategory,
    BalanceUpdate,
    DebtDirection,
    FeeMode,
    Transaction,
    TransactionKind,
)


class TransactionRejectedError(Exception):
    """Base exception for operations an account refuses."""

    def __init__(self, account_id, kind: TransactionKind, message: str):
        self.account_id = account_id
        self.kind = kind
        super().__init__(message)


class InvalidOperationError(TransactionRejectedError):
    """The operation is not permitted for the account's category."""
    pass


class LimitExceededError(TransactionRejectedError):
    """The operation would break a balance bound (credit limit, outstanding debt)."""
    pass


# Sign of the balance effect for every permitted (category, kind).
# FUNDS balance is money held; CREDIT balance is money owed;
# DEBT balance is outstanding principal.
OPERATION_RULES: dict[tuple[AccountCategory, TransactionKind], int] = {
    (AccountCategory.FUNDS, TransactionKind.INCOME): 1,
    (AccountCategory.FUNDS, TransactionKind.EXPENSE): -1,
    (AccountCategory.FUNDS, TransactionKind.TRANSFER_IN): 1,
    (AccountCategory.FUNDS, TransactionKind.TRANSFER_OUT): -1,
    (AccountCategory.CREDIT, TransactionKind.INCOME): -1,
    (AccountCategory.CREDIT, TransactionKind.EXPENSE): 1,
    (AccountCategory.CREDIT, TransactionKind.TRANSFER_IN): -1,
    (AccountCategory.CREDIT, TransactionKind.TRANSFER_OUT): 1,
    (AccountCategory.DEBT, TransactionKind.APPEND): 1,
    (AccountCategory.DEBT, TransactionKind.SETTLE): -1,
}


def is_permitted(category: AccountCategory, kind: TransactionKind) -> bool:
    """Whether `kind` may be applied to an account of `category`."""
    return (category, kind) in OPERATION_RULES


def signed_amount(account: Account, amount: Decimal, kind: TransactionKind) -> Decimal:
    """
    Turn a positive magnitude into the signed balance effect.

    Raises InvalidOperationError for a forbidden kind or a non-positive amount.
    """
    sign = OPERATION_RULES.get((account.category, kind))
    if sign is None:
        raise InvalidOperationError(
            account.id,
            kind,
            f"{kind.value} is not allowed on {account.category.value} account '{account.name}'",
        )
    if amount <= 0:
        raise InvalidOperationError(
            account.id,
            kind,
            f"Amount must be positive, got {amount}",
        )
    return amount * sign


def _check_bounds(account: Account, previous: Decimal, new_balance: Decimal, kind: TransactionKind) -> None:
    if account.category == AccountCategory.CREDIT and not account.allow_overpay:
        # Only moves that push the balance further out of bounds are refused,
        # so a payment on an over-limit card still goes through.
        if new_balance > account.credit_limit and new_balance > previous:
            raise LimitExceededError(
                account.id,
                kind,
                f"Balance {new_balance} would exceed credit limit {account.credit_limit} "
                f"on '{account.name}'",
            )
        if new_balance < 0 and new_balance < previous:
            raise LimitExceededError(
                account.id,
                kind,
                f"Overpayment to {new_balance} is not permitted on '{account.name}'",
            )

    if account.category == AccountCategory.DEBT and new_balance < 0:
        raise LimitExceededError(
            account.id,
            kind,
            f"Settling {previous - new_balance} exceeds outstanding {previous} on '{account.name}'",
        )


def apply_transaction(
    account: Account,
    current_balance: Decimal,
    amount: Decimal,
    kind: TransactionKind,
) -> BalanceUpdate:
    """
    Apply one operation to an account balance.

    Args:
        account: The account the operation targets
        current_balance: Balance derived from the log before this operation
        amount: Positive magnitude in the account's currency
        kind: The operation

    Returns:
        The balance update (previous, signed delta, new balance)

    Raises:
        InvalidOperationError: kind not permitted for the category, or amount <= 0
        LimitExceededError: a CREDIT or DEBT bound would be broken
    """
    delta = signed_amount(account, amount, kind)
    new_balance = current_balance + delta
    _check_bounds(account, current_balance, new_balance, kind)
    return BalanceUpdate(
        account_id=account.id,
        kind=kind,
        previous_balance=current_balance,
        delta=delta,
        new_balance=new_balance,
    )


def compute_balance(account: Account, transactions: Iterable[Transaction]) -> Decimal:
    """Replay derivation: initial balance plus every transaction on the account."""
    total = account.initial_balance
    for transaction in transactions:
        if transaction.account_id == account.id:
            total += transaction.amount
    return total


def funds_leg_kind_for_debt(direction: DebtDirection, settling: bool) -> TransactionKind:
    """
    Kind of the funds-account leg that accompanies a debt operation.

    Borrowing (append on PAYABLE) and collecting (settle on RECEIVABLE) bring
    money in; lending and repaying take money out.
    """
    money_in = (direction == DebtDirection.PAYABLE) != settling
    return TransactionKind.INCOME if money_in else TransactionKind.EXPENSE


def split_transfer(amount: Decimal, fee: Decimal, fee_mode: FeeMode) -> tuple[Decimal, Decimal]:
    """
    Split a transfer into (paid by source, received by target).

    SOURCE_FIXED: the source pays `amount` and the fee comes out of it.
    TARGET_FIXED: the target receives `amount` and the source pays the fee on top.
    """
    if fee < 0:
        raise ValueError(f"Fee must not be negative, got {fee}")
    if fee_mode == FeeMode.TARGET_FIXED:
        return amount + fee, amount
    return amount, amount - fee
