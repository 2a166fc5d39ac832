"""
Unit tests for import batch tracking.
"""

import pytest

from ledgersync.errors import BatchFinalizedError, StorageError
from ledgersync.models.enums import EntityKind, ImportBatchStatus
from ledgersync.models.import_batch import ImportSummary, RecordError
from ledgersync.services.batch_tracker import ImportBatchTracker
from tests.conftest import TENANT_ID


@pytest.fixture
def tracker(storage):
    return ImportBatchTracker(storage)


def _create(tracker, sync_job_id="sync-1", entity=EntityKind.SUPPLIERS):
    return tracker.create(TENANT_ID, "int-1", entity, sync_job_id=sync_job_id)


class TestImportBatchTracker:
    """Test the batch lifecycle: create, progress, finalize once."""

    def test_create_starts_processing(self, tracker, storage):
        batch = _create(tracker)
        stored = storage.get_import_batch(batch.id)
        assert stored.status == ImportBatchStatus.PROCESSING
        assert stored.batch_type == EntityKind.SUPPLIERS
        assert stored.sync_job_id == "sync-1"

    def test_update_progress(self, tracker, storage):
        batch = _create(tracker)
        tracker.update_progress(batch.id, processed_count=40, failed_count=2, duplicate_count=5, total_count=50)
        stored = storage.get_import_batch(batch.id)
        assert (stored.processed_records, stored.failed_records) == (40, 2)
        assert (stored.duplicate_records, stored.total_records) == (5, 50)

    def test_finalize_records_summary(self, tracker, storage):
        batch = _create(tracker)
        summary = ImportSummary(
            total_fetched=10,
            created=6,
            updated=1,
            skipped=2,
            errors=[RecordError(record_ref="c-9", message="missing name")],
        )
        tracker.finalize(batch.id, ImportBatchStatus.COMPLETED_WITH_ERRORS, summary)

        stored = storage.get_import_batch(batch.id)
        assert stored.status == ImportBatchStatus.COMPLETED_WITH_ERRORS
        assert stored.total_records == 10
        assert stored.processed_records == 9
        assert stored.failed_records == 1
        assert stored.duplicate_records == 2
        assert stored.summary.errors[0].record_ref == "c-9"
        assert stored.completed_at is not None

    def test_finalize_twice_rejected(self, tracker):
        batch = _create(tracker)
        tracker.finalize(batch.id, ImportBatchStatus.COMPLETED, ImportSummary())
        with pytest.raises(BatchFinalizedError):
            tracker.finalize(batch.id, ImportBatchStatus.FAILED, ImportSummary())

    def test_progress_after_finalize_rejected(self, tracker):
        batch = _create(tracker)
        tracker.finalize(batch.id, ImportBatchStatus.COMPLETED, ImportSummary())
        with pytest.raises(BatchFinalizedError):
            tracker.update_progress(batch.id, processed_count=1, failed_count=0)

    def test_finalize_requires_terminal_status(self, tracker):
        batch = _create(tracker)
        with pytest.raises(ValueError):
            tracker.finalize(batch.id, ImportBatchStatus.PROCESSING, ImportSummary())

    def test_error_message_logged(self, tracker, storage):
        batch = _create(tracker)
        tracker.finalize(batch.id, ImportBatchStatus.FAILED, ImportSummary(), error_message="provider down")
        assert storage.get_import_batch(batch.id).error_log == ["provider down"]

    def test_unknown_batch(self, tracker):
        with pytest.raises(StorageError):
            tracker.update_progress("missing", processed_count=0, failed_count=0)

    def test_abandon_open_batches(self, tracker, storage):
        open_batch = _create(tracker, entity=EntityKind.INVOICES)
        done_batch = _create(tracker, entity=EntityKind.ACCOUNTS)
        other_job = _create(tracker, sync_job_id="sync-2")
        tracker.finalize(done_batch.id, ImportBatchStatus.COMPLETED, ImportSummary())
        tracker.update_progress(open_batch.id, processed_count=8, failed_count=0, duplicate_count=3, total_count=8)

        assert tracker.abandon_open_batches("sync-1", "timed out") == 1

        abandoned = storage.get_import_batch(open_batch.id)
        assert abandoned.status == ImportBatchStatus.FAILED
        assert abandoned.error_log == ["timed out"]
        assert abandoned.summary.created == 5
        assert abandoned.summary.skipped == 3
        assert storage.get_import_batch(done_batch.id).status == ImportBatchStatus.COMPLETED
        assert storage.get_import_batch(other_job.id).status == ImportBatchStatus.PROCESSING
