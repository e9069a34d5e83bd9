"""Read-only queries over the ledger."""

from timeledger.queries.debts import DebtQueryError, DebtSummaryQuery

__all__ = ["DebtQueryError", "DebtSummaryQuery"]
