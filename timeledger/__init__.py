"""
TimeLedger - Ledger Consistency Engine

Keeps a personal ledger consistent: account balances across funds, credit
and debt accounts, recurring transactions posted on schedule, and a local
ledger reconciled with its cloud replica.

DESIGN PRINCIPLES:
1. Balances are derived from the transaction log, never stored
2. A posting and the state it advances are written together or not at all
3. Transient failures are reported as retryable, never silently skipped
4. Every automatic action is auditable
5. Storage and rate sources are swappable
"""

__version__ = "1.0.0"
__author__ = "TimeLedger Team"
