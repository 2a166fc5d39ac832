"""
Sync job models.

A SyncJob is one logical "synchronize this integration" request. Its status
is only ever changed through the transition methods below, which enforce the
state machine and raise InvalidSyncJobStateError on illegal transitions.
"""

from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ledgersync.errors import InvalidSyncJobStateError
from ledgersync.models.enums import EntityKind, ImportBatchStatus, SyncJobStatus, SyncJobType
from ledgersync.utils.dates import utc_now

ALL_ENTITIES = "all"


class SyncOptions(BaseModel):
    """
    Caller-supplied options for a sync.

    Attributes:
        entities: Entity scope; ["all"] or an explicit subset of EntityKind values
        modified_since: Watermark override for incremental fetches
        date_from: Lower bound for transaction/statement dates
        date_to: Upper bound for transaction/statement dates
        include_archived: Also import archived accounts and contacts
        invoice_types: Provider invoice types to fetch (ACCPAY, ACCREC)
        invoice_statuses: Provider invoice statuses to fetch
        account_ids: Restrict bank imports to these provider account ids
    """

    entities: list[str] = Field(default_factory=lambda: [ALL_ENTITIES])
    modified_since: Optional[datetime] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    include_archived: bool = False
    invoice_types: list[str] = Field(default_factory=lambda: ["ACCPAY", "ACCREC"])
    invoice_statuses: list[str] = Field(default_factory=list)
    account_ids: list[str] = Field(default_factory=list)

    @field_validator("entities")
    @classmethod
    def validate_entities(cls, v: list[str]) -> list[str]:
        """Reject unknown entity names at trigger time."""
        if not v:
            return [ALL_ENTITIES]
        allowed = {kind.value for kind in EntityKind} | {ALL_ENTITIES}
        unknown = [name for name in v if name not in allowed]
        if unknown:
            raise ValueError(f"Unknown entities: {', '.join(unknown)}")
        return v

    @field_validator("invoice_types")
    @classmethod
    def validate_invoice_types(cls, v: list[str]) -> list[str]:
        invalid = [t for t in v if t not in ("ACCPAY", "ACCREC")]
        if invalid:
            raise ValueError(f"Unknown invoice types: {', '.join(invalid)}")
        return v

    def resolve_entities(self) -> list[EntityKind]:
        """Expand the entity scope into fan-out order."""
        if ALL_ENTITIES in self.entities:
            return list(EntityKind)
        requested = set(self.entities)
        return [kind for kind in EntityKind if kind.value in requested]


class EntityJobState(BaseModel):
    """Progress of one fanned-out entity import job."""

    job_id: str
    status: str = "queued"
    batch_id: Optional[str] = None
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    error: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in {s.value for s in ImportBatchStatus if s.is_terminal}


class SyncJob(BaseModel):
    """
    One "synchronize this integration" request.

    Attributes:
        id: Sync job id
        integration_id: Integration being synchronized
        tenant_id: Owning tenant
        job_type: Why the sync was created
        status: Current state machine status
        priority: Queue priority (higher runs first)
        progress: Percentage of entity jobs finished
        options: Validated sync options
        entity_jobs: Per-entity fan-out state keyed by entity name
        metadata: Audit metadata (triggered_by, cancelled_by, ...)
        error_message: Reason for failure or cancellation
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    integration_id: str
    tenant_id: str
    job_type: SyncJobType = SyncJobType.MANUAL
    status: SyncJobStatus = SyncJobStatus.PENDING
    priority: int = 5
    progress: int = Field(default=0, ge=0, le=100)
    options: SyncOptions = Field(default_factory=SyncOptions)
    entity_jobs: dict[str, EntityJobState] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal

    def _require(self, allowed: set[SyncJobStatus], action: str) -> None:
        if self.status not in allowed:
            raise InvalidSyncJobStateError(
                f"Cannot {action} sync job in status '{self.status.value}'",
                context={"sync_job_id": self.id, "status": self.status.value},
            )

    def start(self) -> None:
        self._require({SyncJobStatus.PENDING}, "start")
        self.status = SyncJobStatus.RUNNING
        self.started_at = utc_now()
        self.updated_at = self.started_at

    def complete(self, with_errors: bool = False) -> None:
        self._require({SyncJobStatus.RUNNING}, "complete")
        self.status = SyncJobStatus.COMPLETED_WITH_ERRORS if with_errors else SyncJobStatus.COMPLETED
        self.progress = 100
        self.completed_at = utc_now()
        self.updated_at = self.completed_at

    def fail(self, message: str) -> None:
        self._require({SyncJobStatus.PENDING, SyncJobStatus.RUNNING}, "fail")
        self.status = SyncJobStatus.FAILED
        self.error_message = message
        self.completed_at = utc_now()
        self.updated_at = self.completed_at

    def cancel(self, reason: Optional[str] = None) -> None:
        self._require({SyncJobStatus.PENDING, SyncJobStatus.RUNNING}, "cancel")
        self.status = SyncJobStatus.CANCELLED
        self.error_message = reason
        self.completed_at = utc_now()
        self.updated_at = self.completed_at

    def restart(self) -> None:
        """Move a failed or cancelled job back to pending for another attempt."""
        self._require({SyncJobStatus.FAILED, SyncJobStatus.CANCELLED}, "restart")
        self.status = SyncJobStatus.PENDING
        self.progress = 0
        self.entity_jobs = {}
        self.error_message = None
        self.started_at = None
        self.completed_at = None
        self.updated_at = utc_now()

    def update_progress(self, progress: int) -> None:
        self._require({SyncJobStatus.RUNNING}, "update progress of")
        if not 0 <= progress <= 100:
            raise ValueError("progress must be between 0 and 100")
        self.progress = progress
        self.updated_at = utc_now()

    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def entity_success_rate(self) -> Optional[float]:
        """Share of finished entity jobs that did not fail, in percent."""
        finished = [state for state in self.entity_jobs.values() if state.is_finished]
        if not finished:
            return None
        ok = sum(1 for state in finished if state.status != ImportBatchStatus.FAILED.value)
        return ok / len(finished) * 100
