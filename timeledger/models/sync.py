"""
Sync Models for TimeLedger

The reconciler's externally observable status and its results.

DESIGN DECISION: Sync status is a value, not global state.
A reconciliation call returns the state it ended in; the observer in
timeledger.sync.coordinator only republishes those values for a UI.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from timeledger.models.ledger import LedgerSnapshot


class SyncStrategy(str, Enum):
    """How local and cloud ledgers are reconciled."""
    OVERWRITE_CLOUD = "overwrite_cloud"  # local replaces cloud
    OVERWRITE_LOCAL = "overwrite_local"  # cloud replaces local
    MERGE = "merge"                      # entity-level merge


# =============================================================================
# SYNC UI STATE - tagged union
# =============================================================================

class SyncIdle(BaseModel):
    model_config = ConfigDict(frozen=True)
    state: Literal["idle"] = "idle"


class SyncLoading(BaseModel):
    model_config = ConfigDict(frozen=True)
    state: Literal["loading"] = "loading"
    message: str


class SyncSuccess(BaseModel):
    model_config = ConfigDict(frozen=True)
    state: Literal["success"] = "success"
    message: str


class SyncError(BaseModel):
    model_config = ConfigDict(frozen=True)
    state: Literal["error"] = "error"
    message: str


class SyncConflict(BaseModel):
    """Divergent edits that need a user or policy decision."""
    model_config = ConfigDict(frozen=True)
    state: Literal["conflict"] = "conflict"
    remote_timestamp: datetime


SyncUiState = Union[SyncIdle, SyncLoading, SyncSuccess, SyncError, SyncConflict]


# =============================================================================
# RECONCILIATION RESULTS
# =============================================================================

class ResolutionOutcome(str, Enum):
    RESOLVED = "resolved"
    CONFLICT = "conflict"


class FieldConflict(BaseModel):
    """One entity whose two versions cannot be ordered by timestamp."""

    entity_type: str = Field(
        ...,
        pattern="^(account|transaction|periodic_definition)$"
    )
    entity_id: UUID
    fields: list[str] = Field(default_factory=list)
    local_value: dict[str, Any] = Field(default_factory=dict)
    remote_value: dict[str, Any] = Field(default_factory=dict)
    updated_at: datetime


class MergeStats(BaseModel):
    """What a merge did, for the success message and the audit log."""

    added_from_local: int = 0
    added_from_remote: int = 0
    updated: int = 0
    duplicates_dropped: int = 0


class Resolution(BaseModel):
    """
    Result of reconciling two snapshots.

    RESOLVED carries the snapshot to write back to both sides.
    CONFLICT carries the field-level conflicts and no snapshot.
    """

    outcome: ResolutionOutcome
    strategy: SyncStrategy
    snapshot: Optional[LedgerSnapshot] = None
    conflicts: list[FieldConflict] = Field(default_factory=list)
    stats: MergeStats = Field(default_factory=MergeStats)
    state: SyncUiState = Field(discriminator="state")

    @property
    def is_conflict(self) -> bool:
        return self.outcome == ResolutionOutcome.CONFLICT


class SyncCheckResult(BaseModel):
    """What exists on each side before a sync starts."""

    has_cloud_data: bool
    has_local_data: bool
    cloud_timestamp: Optional[datetime] = None
    local_timestamp: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
