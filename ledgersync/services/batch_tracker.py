"""
Import batch tracking.

Every importer reports through the tracker the same way: create on start,
update progress after each written chunk, finalize exactly once.
"""

from typing import Optional

import structlog

from ledgersync.errors import BatchFinalizedError, StorageError
from ledgersync.models.enums import EntityKind, ImportBatchStatus, ProviderKind
from ledgersync.models.import_batch import ImportBatch, ImportSummary
from ledgersync.storage.base import StorageBackend
from ledgersync.utils.dates import utc_now

logger = structlog.get_logger()


class ImportBatchTracker:
    """Persists import batch progress and outcomes."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def create(
        self,
        tenant_id: str,
        integration_id: str,
        batch_type: EntityKind,
        sync_job_id: Optional[str] = None,
        import_source: ProviderKind = ProviderKind.XERO,
    ) -> ImportBatch:
        """Create a batch in `processing` state."""
        batch = ImportBatch(
            tenant_id=tenant_id,
            integration_id=integration_id,
            sync_job_id=sync_job_id,
            batch_type=batch_type,
            import_source=import_source,
        )
        self.storage.create_import_batch(batch)
        logger.info(
            "import_batch_created",
            batch_id=batch.id,
            entity=batch_type.value,
            sync_job_id=sync_job_id,
        )
        return batch

    def _load_open(self, batch_id: str) -> ImportBatch:
        batch = self.storage.get_import_batch(batch_id)
        if batch is None:
            raise StorageError(f"Import batch {batch_id} not found", context={"batch_id": batch_id})
        if batch.is_finalized:
            raise BatchFinalizedError(
                f"Import batch {batch_id} is already {batch.status.value}",
                context={"batch_id": batch_id, "status": batch.status.value},
            )
        return batch

    def update_progress(
        self,
        batch_id: str,
        processed_count: int,
        failed_count: int,
        duplicate_count: Optional[int] = None,
        total_count: Optional[int] = None,
    ) -> ImportBatch:
        """Record cumulative progress counts."""
        batch = self._load_open(batch_id)
        batch.processed_records = processed_count
        batch.failed_records = failed_count
        if duplicate_count is not None:
            batch.duplicate_records = duplicate_count
        if total_count is not None:
            batch.total_records = total_count
        batch.updated_at = utc_now()
        self.storage.update_import_batch(batch)
        return batch

    def finalize(
        self,
        batch_id: str,
        status: ImportBatchStatus,
        summary: ImportSummary,
        error_message: Optional[str] = None,
    ) -> ImportBatch:
        """
        Close the batch with its final counts.

        Raises:
            BatchFinalizedError: If the batch was already finalized
            ValueError: If status is not terminal
        """
        if not status.is_terminal:
            raise ValueError("Import batches can only be finalized with a terminal status")

        batch = self._load_open(batch_id)
        batch.status = status
        batch.summary = summary
        batch.total_records = summary.total_fetched
        batch.processed_records = summary.succeeded
        batch.failed_records = summary.error_count
        batch.duplicate_records = summary.skipped
        if error_message:
            batch.error_log.append(error_message)
        batch.completed_at = utc_now()
        batch.updated_at = batch.completed_at
        self.storage.update_import_batch(batch)

        logger.info(
            "import_batch_finalized",
            batch_id=batch_id,
            entity=batch.batch_type.value,
            status=status.value,
            fetched=summary.total_fetched,
            created=summary.created,
            updated=summary.updated,
            skipped=summary.skipped,
            errors=summary.error_count,
        )
        return batch

    def abandon_open_batches(self, sync_job_id: str, reason: str) -> int:
        """Fail every batch of a sync job still stuck in `processing`."""
        abandoned = 0
        for batch in self.storage.list_import_batches(sync_job_id=sync_job_id, limit=1000):
            if batch.is_finalized:
                continue
            summary = ImportSummary(
                total_fetched=batch.total_records,
                created=max(batch.processed_records - batch.duplicate_records, 0),
                skipped=batch.duplicate_records,
            )
            self.finalize(batch.id, ImportBatchStatus.FAILED, summary, error_message=reason)
            abandoned += 1
        return abandoned
