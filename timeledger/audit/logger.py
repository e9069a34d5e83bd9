"""
Audit Logger

DESIGN DECISION: Every balance-changing or sync-relevant action is logged.
This provides:
1. Traceability of automatic postings
2. Debugging capability when a scheduler pass aborts
3. A history of sync decisions

The audit logger:
- Is async to not block main flow
- Gracefully handles failures (a failing audit store never fails a posting)
- Supports correlation IDs to trace one scheduler pass or one sync
"""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

import structlog

from timeledger.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from timeledger.models.ledger import BalanceUpdate
from timeledger.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. An AuditStorageInterface backend, when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("timeledger.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_balance_updates(
        self,
        updates: list[BalanceUpdate],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log one TRANSACTION_POSTED event per applied leg."""
        for update in updates:
            await self.log(AuditEventBuilder.transaction_posted(
                account_id=update.account_id,
                kind=update.kind.value,
                amount=str(update.delta),
                new_balance=str(update.new_balance),
                correlation_id=correlation_id,
            ))

    async def log_transaction_rejected(
        self,
        account_id: Optional[UUID],
        kind: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        event = AuditEventBuilder.transaction_rejected(
            account_id=account_id,
            kind=kind,
            reason=reason,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_occurrence_posted(
        self,
        definition_id: UUID,
        due_at: datetime,
        next_due: datetime,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.periodic_occurrence_posted(
            definition_id=definition_id,
            due_at=due_at,
            next_due=next_due,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_occurrence_rejected(
        self,
        definition_id: UUID,
        due_at: datetime,
        reason: str,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.periodic_occurrence_rejected(
            definition_id=definition_id,
            due_at=due_at,
            reason=reason,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_sync_state(
        self,
        state: str,
        message: Optional[str] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a SyncUiState transition."""
        event = AuditEventBuilder.sync_state_changed(
            state=state,
            message=message,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_external_service_error(
        self,
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log external service error (rate provider, cloud replica)."""
        event = AuditEventBuilder.external_service_error(
            service=service,
            error_message=error_message,
            correlation_id=correlation_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a scheduler pass or a sync and pass it
    through all subsequent operations.
    """
    return uuid4()

