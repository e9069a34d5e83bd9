"""Periodic transaction scheduler."""

from timeledger.scheduler.periodic import (
    PeriodicScheduler,
    PostedOccurrence,
    RunStatus,
    SchedulerEvent,
    SchedulerEventType,
    SchedulerRunReport,
)
from timeledger.scheduler.recurrence import add_months, is_due, next_occurrence, occurrences

__all__ = [
    "PeriodicScheduler",
    "PostedOccurrence",
    "RunStatus",
    "SchedulerEvent",
    "SchedulerEventType",
    "SchedulerRunReport",
    "add_months",
    "is_due",
    "next_occurrence",
    "occurrences",
]
