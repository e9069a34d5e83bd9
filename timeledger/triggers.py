"""
Scheduler triggers.

The engine does not decide when a pass runs; a host calls one of these.

- run_with_backoff: one logical pass that is re-invoked with exponential
  backoff while it ends RETRYABLE (rate provider or store unreachable).
- run_periodically: a timer loop for hosts without their own job scheduler.
"""

import asyncio
from datetime import datetime
from typing import Optional

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from timeledger.config import SchedulerSettings, get_settings
from timeledger.scheduler.periodic import PeriodicScheduler, RunStatus, SchedulerRunReport


logger = structlog.get_logger(__name__)


def _is_retryable(report: SchedulerRunReport) -> bool:
    return report.status == RunStatus.RETRYABLE


def _log_retry(retry_state) -> None:
    report = retry_state.outcome.result()
    logger.warning(
        "scheduler_pass_retry",
        attempt=retry_state.attempt_number,
        error=report.error,
    )


async def run_with_backoff(
    scheduler: PeriodicScheduler,
    settings: Optional[SchedulerSettings] = None,
    now: Optional[datetime] = None,
) -> SchedulerRunReport:
    """
    Run a pass, re-running it while it is RETRYABLE.

    Returns the last report; after the final attempt that may still be
    RETRYABLE, which the host should treat as "try again later".
    """
    settings = settings or get_settings().scheduler
    retrying = AsyncRetrying(
        stop=stop_after_attempt(settings.retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_seconds,
            max=settings.retry_backoff_max_seconds,
        ),
        retry=retry_if_result(_is_retryable),
        before_sleep=_log_retry,
        retry_error_callback=lambda retry_state: retry_state.outcome.result(),
    )
    return await retrying(scheduler.run, now)


async def run_periodically(
    scheduler: PeriodicScheduler,
    stop: asyncio.Event,
    settings: Optional[SchedulerSettings] = None,
) -> int:
    """
    Run a backed-off pass every `interval_seconds` until `stop` is set.

    Returns the number of passes run.
    """
    settings = settings or get_settings().scheduler
    passes = 0
    while not stop.is_set():
        report = await run_with_backoff(scheduler, settings)
        passes += 1
        logger.info(
            "scheduled_pass_done",
            status=report.status.value,
            posted=len(report.posted),
        )
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.interval_seconds)
        except asyncio.TimeoutError:
            continue
    return passes
