"""Account rules and the manual posting path."""

from timeledger.accounts.rules import (
    OPERATION_RULES,
    InvalidOperationError,
    LimitExceededError,
    TransactionRejectedError,
    apply_transaction,
    compute_balance,
    funds_leg_kind_for_debt,
    is_permitted,
    signed_amount,
    split_transfer,
)
from timeledger.accounts.service import LedgerService

__all__ = [
    "OPERATION_RULES",
    "InvalidOperationError",
    "LimitExceededError",
    "LedgerService",
    "TransactionRejectedError",
    "apply_transaction",
    "compute_balance",
    "funds_leg_kind_for_debt",
    "is_permitted",
    "signed_amount",
    "split_transfer",
]
