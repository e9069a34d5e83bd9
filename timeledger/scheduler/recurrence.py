"""
Recurrence arithmetic.

Every step is computed from the previous due time, never from "now", so a
late pass catches up on exactly the missed occurrences. Monthly and yearly
steps keep the anchor's day of month and clamp it to the target month's
length (an anchor on the 31st fires on Feb 28/29, then on Mar 31 again).
"""

import calendar
from datetime import datetime, timedelta
from typing import Iterator, Optional

from timeledger.models.ledger import Frequency, PeriodicTransactionDefinition, Recurrence


def add_months(moment: datetime, months: int, day: int) -> datetime:
    """Move `moment` by `months`, placing it on `day` (clamped to month end)."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return moment.replace(year=year, month=month, day=min(day, last_day))


def next_occurrence(recurrence: Recurrence, previous: datetime) -> datetime:
    """The occurrence one interval after `previous`."""
    step = recurrence.interval
    if recurrence.frequency == Frequency.DAILY:
        return previous + timedelta(days=step)
    if recurrence.frequency == Frequency.WEEKLY:
        return previous + timedelta(weeks=step)
    if recurrence.frequency == Frequency.MONTHLY:
        return add_months(previous, step, recurrence.anchor.day)
    if recurrence.frequency == Frequency.YEARLY:
        return add_months(previous, 12 * step, recurrence.anchor.day)
    raise ValueError(f"Unknown frequency: {recurrence.frequency}")


def occurrences(
    recurrence: Recurrence,
    start: datetime,
    until: datetime,
    limit: Optional[int] = None,
) -> Iterator[datetime]:
    """Yield occurrences from `start` (inclusive) up to `until` (inclusive)."""
    current = start
    count = 0
    while current <= until and (limit is None or count < limit):
        yield current
        count += 1
        current = next_occurrence(recurrence, current)


def is_due(definition: PeriodicTransactionDefinition, now: datetime) -> bool:
    return definition.active and definition.next_due <= now
