"""
Import batch models: one execution of a single entity importer.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ledgersync.models.enums import EntityKind, ImportBatchStatus, ProviderKind
from ledgersync.utils.dates import utc_now


class RecordError(BaseModel):
    """A single remote record that could not be imported."""

    record_ref: Optional[str] = Field(default=None, description="Provider id or position of the record")
    message: str


class ImportSummary(BaseModel):
    """
    Structured outcome of an importer run.

    Attributes:
        total_fetched: Remote records received from the provider
        created: Local records inserted
        updated: Local records changed (upsertable entities only)
        skipped: Records already present locally or duplicated within the run
        errors: Per-record failures
        warnings: Data-quality warnings (unresolved references, ...)
    """

    total_fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[RecordError] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return len(self.errors)

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped


class ImportBatch(BaseModel):
    """
    Persistent record of one entity importer execution within a sync job.

    Created in `processing` state at importer start, updated as chunks are
    written, and finalized exactly once.

    Attributes:
        total_records: Records fetched from the provider so far
        processed_records: Records handled (created, updated or skipped)
        failed_records: Records that failed mapping or validation
        duplicate_records: Records skipped as already imported
        summary: Final structured results, set on finalization
        error_log: Batch-level error messages (hard failures)
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    integration_id: str
    sync_job_id: Optional[str] = None
    batch_type: EntityKind
    import_source: ProviderKind = ProviderKind.XERO
    status: ImportBatchStatus = ImportBatchStatus.PROCESSING
    total_records: int = Field(default=0, ge=0)
    processed_records: int = Field(default=0, ge=0)
    failed_records: int = Field(default=0, ge=0)
    duplicate_records: int = Field(default=0, ge=0)
    summary: Optional[ImportSummary] = None
    error_log: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_finalized(self) -> bool:
        return self.status.is_terminal
