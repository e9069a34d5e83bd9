"""
Periodic Transaction Scheduler

Turns due periodic definitions into posted transactions.

CRITICAL RULES:
1. Each occurrence is posted together with its advanced definition in ONE
   atomic store unit. A crash can never post without advancing, or advance
   without posting, so re-running a pass never double-posts.
2. next_due advances from its previous value by one recurrence step,
   never from the time the pass happens to run.
3. A backlog is posted in full, oldest occurrence first, ordered by
   (next_due, definition id) so the result does not depend on load order.
4. Only one pass runs at a time; overlapping requests are coalesced.

Failure policy per occurrence:
- Category mismatch or missing account: the definition can never apply again,
  so it is deactivated and a DEFINITION_INVALIDATED event is emitted.
- Limit exceeded: this occurrence is rejected, next_due stays put and the
  definition is not tried again in this pass.
- Rate or store unavailable: the pass stops with status RETRYABLE; what was
  committed stays committed.
"""

import asyncio
import heapq
from datetime import datetime
from enum import Enum
from typing import Callable, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from timeledger.accounts.rules import InvalidOperationError, LimitExceededError
from timeledger.accounts.service import LedgerService
from timeledger.audit.logger import AuditLogger, create_correlation_id
from timeledger.config import SchedulerSettings, get_settings
from timeledger.models.audit import AuditEventBuilder
from timeledger.models.ledger import (
    AccountCategory,
    BalanceUpdate,
    EndMode,
    PeriodicTransactionDefinition,
    PeriodicType,
    PostingEntry,
    TransactionKind,
    TransactionSource,
    utcnow,
)
from timeledger.scheduler.recurrence import is_due, next_occurrence
from timeledger.services.rates.cache import ExchangeRateCache
from timeledger.services.rates.source import RateUnavailableError
from timeledger.services.storage.interface import (
    LedgerStoreInterface,
    NotFoundError,
    StoreUnavailableError,
)


logger = structlog.get_logger(__name__)


class RunStatus(str, Enum):
    """How a scheduler pass ended."""
    COMPLETED = "completed"
    RETRYABLE = "retryable"   # transient failure; re-run later
    CANCELLED = "cancelled"
    COALESCED = "coalesced"   # another pass was already running
    FAILED = "failed"         # unexpected error; committed work kept


class SchedulerEventType(str, Enum):
    DEFINITION_INVALIDATED = "definition_invalidated"
    DEFINITION_COMPLETED = "definition_completed"
    OCCURRENCE_REJECTED = "occurrence_rejected"


class SchedulerEvent(BaseModel):
    """Something about a definition the user should hear about."""

    type: SchedulerEventType
    definition_id: UUID
    reason: str
    due_at: Optional[datetime] = None


class PostedOccurrence(BaseModel):
    """One occurrence the pass posted."""

    definition_id: UUID
    due_at: datetime
    next_due: datetime
    balance_updates: list[BalanceUpdate] = Field(default_factory=list)


class SchedulerRunReport(BaseModel):
    """Outcome of one scheduler pass."""

    correlation_id: Optional[UUID] = None
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    posted: list[PostedOccurrence] = Field(default_factory=list)
    events: list[SchedulerEvent] = Field(default_factory=list)
    deferred_definitions: int = 0
    error: Optional[str] = None

    @property
    def invalidated(self) -> list[UUID]:
        return [
            e.definition_id for e in self.events
            if e.type == SchedulerEventType.DEFINITION_INVALIDATED
        ]

    @property
    def completed(self) -> list[UUID]:
        return [
            e.definition_id for e in self.events
            if e.type == SchedulerEventType.DEFINITION_COMPLETED
        ]


class PeriodicScheduler:
    """
    Runs scheduler passes against a ledger store.

    Usage:
        scheduler = PeriodicScheduler(store, ledger, rates, audit_logger)
        report = await scheduler.run()
        if report.status == RunStatus.RETRYABLE:
            ...  # re-run later (see timeledger.triggers)
    """

    def __init__(
        self,
        store: LedgerStoreInterface,
        ledger: LedgerService,
        rates: ExchangeRateCache,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._ledger = ledger
        self._rates = rates
        self._audit_logger = audit_logger
        self._settings = settings or get_settings().scheduler
        self._clock = clock
        self._pass_lock = asyncio.Lock()
        self._cancel_requested = False

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    def request_cancel(self) -> None:
        """Stop the running pass before its next occurrence."""
        if self.is_running:
            self._cancel_requested = True

    async def _audit(self, event) -> None:
        if self._audit_logger:
            await self._audit_logger.log(event)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def run(self, now: Optional[datetime] = None) -> SchedulerRunReport:
        """
        Run one pass: post every occurrence due at `now` (default: the clock).

        Returns immediately with status COALESCED if a pass is already running.
        """
        if self._pass_lock.locked():
            logger.info("scheduler_pass_coalesced")
            return SchedulerRunReport(status=RunStatus.COALESCED, started_at=self._clock())

        async with self._pass_lock:
            self._cancel_requested = False
            try:
                return await self._run_pass(now or self._clock())
            finally:
                self._cancel_requested = False

    async def _run_pass(self, now: datetime) -> SchedulerRunReport:
        correlation_id = create_correlation_id()
        report = SchedulerRunReport(
            correlation_id=correlation_id,
            status=RunStatus.COMPLETED,
            started_at=now,
        )
        log = logger.bind(correlation_id=str(correlation_id))

        try:
            try:
                definitions = await self._store.list_periodic_definitions(active_only=True)
                queue = [
                    (d.next_due, str(d.id), d)
                    for d in definitions
                    if is_due(d, now)
                ]
                heapq.heapify(queue)
                log.info("scheduler_pass_started", due=len(queue))
                await self._audit(AuditEventBuilder.scheduler_pass_started(len(queue), correlation_id))

                cap = self._settings.max_occurrences_per_pass
                while queue:
                    if self._cancel_requested:
                        report.status = RunStatus.CANCELLED
                        break
                    if cap is not None and len(report.posted) >= cap:
                        report.deferred_definitions = len(queue)
                        log.info("scheduler_backlog_deferred", remaining=len(queue))
                        break

                    _, _, definition = heapq.heappop(queue)
                    advanced = await self._shielded_apply(definition, now, report)
                    if advanced is not None:
                        heapq.heappush(queue, (advanced.next_due, str(advanced.id), advanced))

            except (RateUnavailableError, StoreUnavailableError) as e:
                report.status = RunStatus.RETRYABLE
                report.error = str(e)
                log.warning("scheduler_pass_retryable", error=str(e))
            except asyncio.CancelledError:
                report.status = RunStatus.CANCELLED
                await self._finish(report, log)
                raise
            except Exception as e:
                report.status = RunStatus.FAILED
                report.error = f"{type(e).__name__}: {e}"
                log.exception("scheduler_pass_failed")
                if self._audit_logger:
                    await self._audit_logger.log_error(
                        error_type=type(e).__name__,
                        error_message=str(e),
                        correlation_id=correlation_id,
                    )
        finally:
            if report.finished_at is None:
                await self._finish(report, log)

        return report

    async def _finish(self, report: SchedulerRunReport, log) -> None:
        report.finished_at = self._clock()
        log.info(
            "scheduler_pass_finished",
            status=report.status.value,
            posted=len(report.posted),
            events=len(report.events),
        )
        await self._audit(AuditEventBuilder.scheduler_pass_finished(
            status=report.status.value,
            posted=len(report.posted),
            correlation_id=report.correlation_id,
            error_message=report.error,
        ))

    async def _shielded_apply(
        self,
        definition: PeriodicTransactionDefinition,
        now: datetime,
        report: SchedulerRunReport,
    ) -> Optional[PeriodicTransactionDefinition]:
        """Apply one occurrence; task cancellation waits for it to finish."""
        application = asyncio.ensure_future(self._apply_occurrence(definition, now, report))
        try:
            return await asyncio.shield(application)
        except asyncio.CancelledError:
            if not application.done():
                await asyncio.wait([application])
            raise

    # ------------------------------------------------------------------
    # One occurrence
    # ------------------------------------------------------------------

    async def _apply_occurrence(
        self,
        definition: PeriodicTransactionDefinition,
        now: datetime,
        report: SchedulerRunReport,
    ) -> Optional[PeriodicTransactionDefinition]:
        """
        Post the occurrence at definition.next_due.

        Returns the advanced definition if it should be queued again in this
        pass (still active and still due), None otherwise.
        """
        due_at = definition.next_due
        correlation_id = report.correlation_id

        finished = self._end_rule_reached(definition, due_at)
        if finished:
            await self._complete(definition, finished, report)
            return None

        try:
            built = await self._build_entries(definition, due_at)
        except (InvalidOperationError, NotFoundError) as e:
            await self._invalidate(definition, str(e), report)
            return None

        if built is None:
            await self._complete(definition, "debt settled", report)
            return None

        entries, paid_off = built
        advanced, completion = self._advance(definition, paid_off)

        try:
            updates = await self._ledger.post(entries, advanced, correlation_id)
        except (InvalidOperationError, NotFoundError) as e:
            await self._invalidate(definition, str(e), report)
            return None
        except LimitExceededError as e:
            # The rejected occurrence is skipped, not retried on later passes
            skipped, completion = self._advance(definition, paid_off=False)
            await self._store.save_periodic_definition(skipped)
            report.events.append(SchedulerEvent(
                type=SchedulerEventType.OCCURRENCE_REJECTED,
                definition_id=definition.id,
                reason=str(e),
                due_at=due_at,
            ))
            logger.warning(
                "periodic_occurrence_rejected",
                definition_id=str(definition.id),
                due_at=due_at.isoformat(),
                next_due=skipped.next_due.isoformat(),
                reason=str(e),
            )
            if self._audit_logger:
                await self._audit_logger.log_occurrence_rejected(
                    definition.id, due_at, str(e), correlation_id,
                )
            if completion:
                self._record_completion(definition.id, completion, report)
                await self._audit(AuditEventBuilder.definition_completed(
                    definition.id, completion, correlation_id,
                ))
                return None
            return skipped if is_due(skipped, now) else None

        report.posted.append(PostedOccurrence(
            definition_id=definition.id,
            due_at=due_at,
            next_due=advanced.next_due,
            balance_updates=updates,
        ))
        if self._audit_logger:
            await self._audit_logger.log_occurrence_posted(
                definition.id, due_at, advanced.next_due, correlation_id,
            )

        if completion:
            self._record_completion(definition.id, completion, report)
            await self._audit(AuditEventBuilder.definition_completed(
                definition.id, completion, correlation_id,
            ))
            return None

        return advanced if is_due(advanced, now) else None

    def _end_rule_reached(
        self,
        definition: PeriodicTransactionDefinition,
        due_at: datetime,
    ) -> Optional[str]:
        if definition.end_mode == EndMode.UNTIL_DATE and due_at > definition.end_date:
            return "end date reached"
        if definition.end_mode == EndMode.AFTER_COUNT and definition.remaining_count <= 0:
            return "occurrence count exhausted"
        return None

    def _advance(
        self,
        definition: PeriodicTransactionDefinition,
        paid_off: bool,
    ) -> tuple[PeriodicTransactionDefinition, Optional[str]]:
        """The definition as it must be persisted with this occurrence."""
        next_due = next_occurrence(definition.recurrence, definition.next_due)
        update = {"next_due": next_due, "updated_at": self._clock()}
        completion = None

        if definition.end_mode == EndMode.AFTER_COUNT:
            update["remaining_count"] = definition.remaining_count - 1
            if update["remaining_count"] <= 0:
                completion = "occurrence count exhausted"
        elif definition.end_mode == EndMode.UNTIL_DATE and next_due > definition.end_date:
            completion = "end date reached"

        if paid_off:
            completion = "debt settled"
        if completion:
            update["active"] = False

        return definition.model_copy(update=update), completion

    async def _build_entries(
        self,
        definition: PeriodicTransactionDefinition,
        due_at: datetime,
    ) -> Optional[tuple[list[PostingEntry], bool]]:
        """
        Legs for the occurrence, converted to each account's currency.

        Returns None when a debt settlement has nothing left to settle.
        The flag is True when this installment pays the debt off.
        """
        provenance = dict(
            occurred_at=due_at,
            note=definition.note,
            source=TransactionSource.PERIODIC,
            definition_id=definition.id,
        )
        source_account = await self._ledger.require_account(definition.source_account_id)

        if definition.type in (PeriodicType.EXPENSE, PeriodicType.INCOME):
            kind = TransactionKind.EXPENSE if definition.type == PeriodicType.EXPENSE else TransactionKind.INCOME
            entries = await self._ledger.simple_entries(
                source_account,
                kind,
                definition.amount,
                currency=definition.currency,
                **provenance,
            )
            return entries, False

        target_account = await self._ledger.require_account(definition.target_account_id)

        if definition.type == PeriodicType.TRANSFER:
            entries = await self._ledger.transfer_entries(
                source_account,
                target_account,
                definition.amount,
                fee=definition.fee,
                fee_mode=definition.fee_mode,
                currency=definition.currency,
                **provenance,
            )
            return entries, False

        # DEBT_SETTLEMENT: pay from source into the debt account (target)
        if target_account.category != AccountCategory.DEBT:
            raise InvalidOperationError(
                target_account.id,
                TransactionKind.SETTLE,
                f"'{target_account.name}' is not a debt account",
            )
        outstanding = await self._store.get_balance(target_account.id)
        if outstanding <= 0:
            return None

        installment = await self._rates.convert(
            definition.amount,
            definition.currency,
            target_account.currency,
            due_at.date(),
        )
        paid_off = installment >= outstanding
        entries = await self._ledger.debt_entries(
            target_account,
            source_account,
            outstanding if paid_off else installment,
            settling=True,
            counterparty=definition.counterparty,
            currency=target_account.currency,
            **provenance,
        )
        return entries, paid_off

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def _deactivate(self, definition: PeriodicTransactionDefinition) -> None:
        await self._store.save_periodic_definition(
            definition.model_copy(update={"active": False, "updated_at": self._clock()})
        )

    async def _invalidate(
        self,
        definition: PeriodicTransactionDefinition,
        reason: str,
        report: SchedulerRunReport,
    ) -> None:
        await self._deactivate(definition)
        report.events.append(SchedulerEvent(
            type=SchedulerEventType.DEFINITION_INVALIDATED,
            definition_id=definition.id,
            reason=reason,
            due_at=definition.next_due,
        ))
        logger.warning(
            "definition_invalidated",
            definition_id=str(definition.id),
            reason=reason,
        )
        await self._audit(AuditEventBuilder.definition_invalidated(
            definition.id, reason, report.correlation_id,
        ))

    async def _complete(
        self,
        definition: PeriodicTransactionDefinition,
        reason: str,
        report: SchedulerRunReport,
    ) -> None:
        await self._deactivate(definition)
        self._record_completion(definition.id, reason, report)
        await self._audit(AuditEventBuilder.definition_completed(
            definition.id, reason, report.correlation_id,
        ))

    def _record_completion(self, definition_id: UUID, reason: str, report: SchedulerRunReport) -> None:
        report.events.append(SchedulerEvent(
            type=SchedulerEventType.DEFINITION_COMPLETED,
            definition_id=definition_id,
            reason=reason,
        ))
        logger.info("definition_completed", definition_id=str(definition_id), reason=reason)
