"""
Entity import job handlers.

Each import task runs ImportJobProcessor.process, which dispatches the
payload to its importer. The task hooks report the final outcome of every
job, after retries, through on_completed / on_failed to the orchestrator for
roll-up.
"""

from typing import Optional

import structlog

from ledgersync.errors import IntegrationInactiveError, IntegrationNotFoundError
from ledgersync.importers.base import BaseImporter
from ledgersync.jobs.orchestrator import SyncOrchestrator
from ledgersync.jobs.payloads import ImportJobPayload
from ledgersync.models.enums import EntityKind, ImportBatchStatus
from ledgersync.models.import_batch import ImportBatch
from ledgersync.storage.base import StorageBackend

logger = structlog.get_logger()


class ImportJobProcessor:
    """Runs entity import jobs and feeds their outcomes to the orchestrator."""

    def __init__(
        self,
        importers: dict[EntityKind, BaseImporter],
        orchestrator: SyncOrchestrator,
        storage: StorageBackend,
    ):
        self.importers = importers
        self.orchestrator = orchestrator
        self.storage = storage

    async def process(self, payload: ImportJobPayload, attempt: int = 1) -> Optional[ImportBatch]:
        """
        Run one entity import.

        Args:
            payload: Validated import job
            attempt: Delivery attempt (1-based), recorded on the sync job

        Returns:
            The finalized batch, or None when the sync job was cancelled
            before the import started

        Raises:
            IntegrationNotFoundError: Integration was deleted meanwhile
            IntegrationInactiveError: Integration was deactivated meanwhile
            SyncError: Whatever the importer raised (retried when transient)
        """
        entity = payload.entity_kind
        sync_job_id = payload.sync_job_id

        if sync_job_id and self.orchestrator.is_cancelled(sync_job_id):
            logger.info("import_skipped_cancelled", entity=entity.value, sync_job_id=sync_job_id)
            return None

        integration = self.storage.get_integration(payload.integration_id)
        if integration is None:
            raise IntegrationNotFoundError(
                f"Integration {payload.integration_id} not found",
                context={"integration_id": payload.integration_id},
            )
        if not integration.is_active:
            raise IntegrationInactiveError(
                f"Integration is not active (status: {integration.status.value})",
                context={"integration_id": integration.id, "status": integration.status.value},
            )

        should_cancel = None
        if sync_job_id:
            self.orchestrator.mark_entity_started(sync_job_id, entity, attempt)

            def should_cancel() -> bool:
                return self.orchestrator.is_cancelled(sync_job_id)

        return await self.importers[entity].run(payload, should_cancel=should_cancel)

    def on_completed(self, payload: ImportJobPayload, batch: Optional[ImportBatch]) -> None:
        if not payload.sync_job_id:
            return
        if batch is None:
            self.orchestrator.record_entity_outcome(
                payload.sync_job_id, payload.entity_kind, ImportBatchStatus.CANCELLED
            )
            return
        self.orchestrator.record_entity_outcome(
            payload.sync_job_id, payload.entity_kind, batch.status, batch=batch
        )

    def on_failed(self, payload: ImportJobPayload, error: BaseException) -> None:
        message = getattr(error, "message", None) or str(error)
        logger.error(
            "import_job_failed",
            entity=payload.entity_kind.value,
            integration_id=payload.integration_id,
            sync_job_id=payload.sync_job_id,
            error=message,
        )
        if not payload.sync_job_id:
            return
        self.orchestrator.record_entity_outcome(
            payload.sync_job_id,
            payload.entity_kind,
            ImportBatchStatus.FAILED,
            error=message,
        )
