"""
Audit Models for TimeLedger

Every significant action of the engine is logged for audit purposes.
This provides:
1. Traceability of every automatic posting
2. Debugging information when a pass aborts
3. A history of sync decisions the user can review

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from timeledger.models.ledger import utcnow


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Each engine component has its own group of event types.
    """
    # Posting
    TRANSACTION_POSTED = "transaction_posted"
    TRANSACTION_REJECTED = "transaction_rejected"

    # Scheduler
    SCHEDULER_PASS_STARTED = "scheduler_pass_started"
    SCHEDULER_PASS_FINISHED = "scheduler_pass_finished"
    PERIODIC_OCCURRENCE_POSTED = "periodic_occurrence_posted"
    PERIODIC_OCCURRENCE_REJECTED = "periodic_occurrence_rejected"
    DEFINITION_INVALIDATED = "definition_invalidated"
    DEFINITION_COMPLETED = "definition_completed"

    # Sync
    SYNC_STATE_CHANGED = "sync_state_changed"
    SYNC_CONFLICT_DETECTED = "sync_conflict_detected"

    # Exchange rates
    RATES_FETCHED = "rates_fetched"
    RATE_UNAVAILABLE = "rate_unavailable"

    # System events
    SYSTEM_ERROR = "system_error"
    EXTERNAL_SERVICE_ERROR = "external_service_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'account', 'periodic_definition', 'sync')"
    )
    entity_id: Optional[UUID] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - one scheduler pass or one sync run
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one pass)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.transaction_posted(account_id, kind, amount, balance)
        event = AuditEventBuilder.definition_invalidated(definition_id, reason, correlation_id)
    """

    @staticmethod
    def transaction_posted(
        account_id: UUID,
        kind: str,
        amount: str,
        new_balance: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_POSTED,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Posted {kind} of {amount}",
            details={
                "kind": kind,
                "amount": amount,
                "new_balance": new_balance,
            },
        )

    @staticmethod
    def transaction_rejected(
        account_id: Optional[UUID],
        kind: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="account",
            entity_id=account_id,
            correlation_id=correlation_id,
            description=f"Rejected {kind}: {reason}"[:500],
            error_message=reason,
            details={"kind": kind},
        )

    @staticmethod
    def scheduler_pass_started(
        due_count: int,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SCHEDULER_PASS_STARTED,
            entity_type="scheduler",
            correlation_id=correlation_id,
            description=f"Scheduler pass started with {due_count} due definitions",
            details={"due_count": due_count},
        )

    @staticmethod
    def scheduler_pass_finished(
        status: str,
        posted: int,
        correlation_id: UUID,
        error_message: Optional[str] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.INFO
        if status in ("retryable", "cancelled"):
            severity = AuditSeverity.WARNING
        elif status == "failed":
            severity = AuditSeverity.ERROR
        return AuditEvent(
            event_type=AuditEventType.SCHEDULER_PASS_FINISHED,
            severity=severity,
            entity_type="scheduler",
            correlation_id=correlation_id,
            description=f"Scheduler pass {status}: {posted} occurrences posted",
            details={"status": status, "posted": posted},
            error_message=error_message,
        )

    @staticmethod
    def periodic_occurrence_posted(
        definition_id: UUID,
        due_at: datetime,
        next_due: datetime,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERIODIC_OCCURRENCE_POSTED,
            entity_type="periodic_definition",
            entity_id=definition_id,
            correlation_id=correlation_id,
            description=f"Periodic occurrence due {due_at.isoformat()} posted",
            details={
                "due_at": due_at.isoformat(),
                "next_due": next_due.isoformat(),
            },
        )

    @staticmethod
    def periodic_occurrence_rejected(
        definition_id: UUID,
        due_at: datetime,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERIODIC_OCCURRENCE_REJECTED,
            severity=AuditSeverity.WARNING,
            entity_type="periodic_definition",
            entity_id=definition_id,
            correlation_id=correlation_id,
            description=f"Periodic occurrence due {due_at.isoformat()} rejected",
            error_message=reason,
            details={"due_at": due_at.isoformat()},
        )

    @staticmethod
    def definition_invalidated(
        definition_id: UUID,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEFINITION_INVALIDATED,
            severity=AuditSeverity.WARNING,
            entity_type="periodic_definition",
            entity_id=definition_id,
            correlation_id=correlation_id,
            description="Periodic definition deactivated: it can no longer be applied",
            error_message=reason,
        )

    @staticmethod
    def definition_completed(
        definition_id: UUID,
        reason: str,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DEFINITION_COMPLETED,
            entity_type="periodic_definition",
            entity_id=definition_id,
            correlation_id=correlation_id,
            description=f"Periodic definition completed: {reason}",
            details={"reason": reason},
        )

    @staticmethod
    def sync_state_changed(
        state: str,
        message: Optional[str],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        severity = AuditSeverity.ERROR if state == "error" else AuditSeverity.INFO
        return AuditEvent(
            event_type=AuditEventType.SYNC_STATE_CHANGED,
            severity=severity,
            entity_type="sync",
            correlation_id=correlation_id,
            description=f"Sync state: {state}",
            details={"state": state, "message": message},
        )

    @staticmethod
    def sync_conflict_detected(
        remote_timestamp: datetime,
        conflict_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYNC_CONFLICT_DETECTED,
            severity=AuditSeverity.WARNING,
            entity_type="sync",
            correlation_id=correlation_id,
            description=f"Sync conflict with cloud snapshot of {remote_timestamp.isoformat()}",
            details={
                "remote_timestamp": remote_timestamp.isoformat(),
                "conflict_count": conflict_count,
            },
        )

    @staticmethod
    def rates_fetched(
        base: str,
        provider_date: str,
        currency_count: int,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATES_FETCHED,
            entity_type="exchange_rates",
            description=f"Fetched {currency_count} rates for {base} dated {provider_date}",
            details={
                "base": base,
                "date": provider_date,
                "currency_count": currency_count,
            },
        )

    @staticmethod
    def rate_unavailable(
        from_currency: str,
        to_currency: str,
        error_message: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RATE_UNAVAILABLE,
            severity=AuditSeverity.WARNING,
            entity_type="exchange_rates",
            description=f"No rate available for {from_currency}->{to_currency}",
            error_message=error_message,
            details={"from": from_currency, "to": to_currency},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

    @staticmethod
    def external_service_error(
        service: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXTERNAL_SERVICE_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"External service error: {service}",
            error_message=error_message,
            details={
                "service": service,
            },
            correlation_id=correlation_id,
        )
