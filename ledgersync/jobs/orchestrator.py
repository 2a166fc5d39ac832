"""
Sync job orchestration.

The orchestrator is the only component that changes a SyncJob's status. It
validates trigger requests, fans a running sync out into one prioritized
import job per entity, and rolls the entity outcomes reported by the import
processors back up into the sync job's terminal status.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from ledgersync.config import Settings
from ledgersync.errors import (
    IntegrationInactiveError,
    IntegrationNotFoundError,
    InvalidSyncJobStateError,
    SyncAlreadyRunningError,
    SyncError,
    SyncJobNotFoundError,
)
from ledgersync.jobs.payloads import (
    ENTITY_PRIORITIES,
    SyncIntegrationJob,
    build_import_job,
)
from ledgersync.models.enums import (
    EntityKind,
    ImportBatchStatus,
    SyncJobStatus,
    SyncJobType,
)
from ledgersync.models.import_batch import ImportBatch
from ledgersync.models.integration import Integration
from ledgersync.models.sync_job import EntityJobState, SyncJob, SyncOptions
from ledgersync.services.batch_tracker import ImportBatchTracker
from ledgersync.services.token_manager import TokenLifecycleManager
from ledgersync.storage.base import StorageBackend
from ledgersync.utils.dates import ensure_utc, utc_now
from ledgersync.workers.dispatcher import JobDispatcher

logger = structlog.get_logger()

ACTIVE_STATUSES = (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)

# Sync types that fetch only what changed since the last successful sync
INCREMENTAL_JOB_TYPES = frozenset({SyncJobType.INCREMENTAL, SyncJobType.WEBHOOK})


class TriggerResult(BaseModel):
    sync_job: SyncJob
    job_id: str


class SyncStatistics(BaseModel):
    """Aggregate view over a tenant's sync jobs."""

    total_jobs: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    active_jobs: int = 0
    average_duration_seconds: Optional[float] = None
    success_rate: Optional[float] = None
    last_completed_at: Optional[datetime] = None


class SyncOrchestrator:
    """
    Creates, fans out, and finalizes sync jobs.

    Attributes:
        storage: Persistence for integrations, sync jobs and batches
        token_manager: Auth validation before a sync starts
        tracker: Used to fail batches left open by stalled jobs
        dispatcher: Publishes the sync and entity jobs onto their queues
        timeout: Age after which an active sync job counts as stalled
    """

    def __init__(
        self,
        storage: StorageBackend,
        token_manager: TokenLifecycleManager,
        tracker: ImportBatchTracker,
        dispatcher: JobDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.token_manager = token_manager
        self.tracker = tracker
        self.dispatcher = dispatcher
        self.default_priority = settings.sync_job_default_priority
        self.timeout = timedelta(minutes=settings.sync_job_timeout_minutes)
        self._clock = clock

    # =========================================================================
    # Trigger
    # =========================================================================

    def _load_integration(self, integration_id: str, tenant_id: str) -> Integration:
        integration = self.storage.get_integration(integration_id)
        if integration is None or integration.tenant_id != tenant_id:
            raise IntegrationNotFoundError(
                f"Integration {integration_id} not found",
                context={"integration_id": integration_id},
            )
        return integration

    def _ensure_can_sync(self, integration: Integration) -> None:
        if not integration.is_active:
            raise IntegrationInactiveError(
                f"Integration is not active (status: {integration.status.value})",
                context={"integration_id": integration.id, "status": integration.status.value},
            )
        self.token_manager.validate_auth(integration)

    def _ensure_no_active_job(self, integration_id: str) -> None:
        active = self.storage.list_sync_jobs(
            integration_id=integration_id, statuses=ACTIVE_STATUSES, limit=1
        )
        if active:
            raise SyncAlreadyRunningError(
                "A sync is already in progress for this integration",
                context={"integration_id": integration_id, "sync_job_id": active[0].id},
            )

    def trigger_sync(
        self,
        integration_id: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        job_type: SyncJobType = SyncJobType.MANUAL,
        options: Optional[SyncOptions] = None,
        priority: Optional[int] = None,
    ) -> TriggerResult:
        """
        Create a sync job and queue it.

        Args:
            integration_id: Integration to synchronize
            tenant_id: Caller's tenant; must own the integration
            user_id: Caller, kept in the job's audit metadata
            job_type: Why the sync is requested
            options: Entity scope and fetch filters
            priority: Queue priority (settings default when omitted)

        Returns:
            TriggerResult with the pending sync job and its queue job id

        Raises:
            IntegrationNotFoundError: Unknown integration or other tenant's
            IntegrationInactiveError: Integration is not active
            InvalidAuthError: Stored auth payload is incomplete
            AuthenticationRequiredError: Integration needs re-authorization
            SyncAlreadyRunningError: A sync is pending or running already
        """
        integration = self._load_integration(integration_id, tenant_id)
        self._ensure_can_sync(integration)
        self._ensure_no_active_job(integration_id)

        sync_job = SyncJob(
            integration_id=integration_id,
            tenant_id=tenant_id,
            job_type=job_type,
            priority=self.default_priority if priority is None else priority,
            options=options or SyncOptions(),
            metadata={
                "triggered_by": user_id,
                "provider": integration.provider.value,
            },
        )
        self.storage.create_sync_job(sync_job)
        job_id = self._enqueue_sync(sync_job)
        # Eager task execution may have run the sync already
        sync_job = self.storage.get_sync_job(sync_job.id) or sync_job

        logger.info(
            "sync_triggered",
            sync_job_id=sync_job.id,
            integration_id=integration_id,
            tenant_id=tenant_id,
            job_type=job_type.value,
            entities=sync_job.options.entities,
        )
        return TriggerResult(sync_job=sync_job, job_id=job_id)

    def _enqueue_sync(self, sync_job: SyncJob) -> str:
        return self.dispatcher.enqueue_sync(
            SyncIntegrationJob(
                sync_job_id=sync_job.id,
                integration_id=sync_job.integration_id,
                tenant_id=sync_job.tenant_id,
            ),
            priority=sync_job.priority,
        )

    # =========================================================================
    # Fan-out
    # =========================================================================

    def process_sync_job(self, payload: SyncIntegrationJob) -> dict[str, Any]:
        """
        Handler for sync-integration jobs.

        Starts the sync job and enqueues one import job per entity. The
        handler finishes once everything is enqueued; the sync job itself
        stays running until the entity outcomes have been rolled up.
        """
        sync_job = self.storage.get_sync_job(payload.sync_job_id)
        if sync_job is None:
            raise SyncJobNotFoundError(
                f"Sync job {payload.sync_job_id} not found",
                context={"sync_job_id": payload.sync_job_id},
            )
        if sync_job.status != SyncJobStatus.PENDING:
            logger.info(
                "sync_job_skipped",
                sync_job_id=sync_job.id,
                status=sync_job.status.value,
            )
            return {"sync_job_id": sync_job.id, "skipped": True}

        integration = self.storage.get_integration(sync_job.integration_id)
        try:
            if integration is None:
                raise IntegrationNotFoundError(
                    f"Integration {sync_job.integration_id} not found",
                    context={"integration_id": sync_job.integration_id},
                )
            self._ensure_can_sync(integration)
        except SyncError as e:
            sync_job.fail(e.message)
            self.storage.update_sync_job(sync_job)
            logger.warning(
                "sync_job_rejected",
                sync_job_id=sync_job.id,
                integration_id=sync_job.integration_id,
                error=e.message,
            )
            raise

        modified_since = sync_job.options.modified_since
        if modified_since is None and sync_job.job_type in INCREMENTAL_JOB_TYPES:
            modified_since = integration.last_sync_at

        sync_job.start()
        entities = sync_job.options.resolve_entities()
        payloads = []
        for entity in entities:
            import_job = build_import_job(entity, sync_job, modified_since)
            state = EntityJobState(job_id=f"{sync_job.id}:{entity.value}:{sync_job.metadata.get('retry_count', 0)}")
            sync_job.entity_jobs[entity.value] = state
            payloads.append((entity, state.job_id, import_job))
        if modified_since is not None:
            sync_job.metadata["modified_since"] = ensure_utc(modified_since).isoformat()
        # Persist the fan-out before any entity job can report back
        self.storage.update_sync_job(sync_job)

        logger.info(
            "sync_job_fanned_out",
            sync_job_id=sync_job.id,
            integration_id=sync_job.integration_id,
            entities=[entity.value for entity in entities],
            modified_since=sync_job.metadata.get("modified_since"),
        )
        for entity, job_id, import_job in payloads:
            self.dispatcher.enqueue_import(
                import_job,
                priority=ENTITY_PRIORITIES[entity],
                job_id=job_id,
            )
        return {"sync_job_id": sync_job.id, "entities": [entity.value for entity in entities]}

    def handle_sync_job_failure(self, payload: SyncIntegrationJob, error: BaseException) -> None:
        """Fail the sync job once its sync-integration job gave up."""
        sync_job = self.storage.get_sync_job(payload.sync_job_id)
        if sync_job is None or sync_job.is_finished:
            return
        message = getattr(error, "message", None) or str(error)
        sync_job.fail(message)
        self.storage.update_sync_job(sync_job)
        logger.error(
            "sync_job_failed",
            sync_job_id=sync_job.id,
            integration_id=sync_job.integration_id,
            error=message,
        )

    # =========================================================================
    # Entity outcomes
    # =========================================================================

    def mark_entity_started(self, sync_job_id: str, entity: EntityKind, attempt: int) -> None:
        sync_job = self.storage.get_sync_job(sync_job_id)
        if sync_job is None or sync_job.is_finished:
            return
        state = sync_job.entity_jobs.get(entity.value)
        if state is None:
            return
        state.status = ImportBatchStatus.PROCESSING.value
        sync_job.metadata.setdefault("entity_attempts", {})[entity.value] = attempt
        sync_job.updated_at = utc_now()
        self.storage.update_sync_job(sync_job)

    def record_entity_outcome(
        self,
        sync_job_id: str,
        entity: EntityKind,
        status: ImportBatchStatus,
        batch: Optional[ImportBatch] = None,
        error: Optional[str] = None,
    ) -> Optional[SyncJob]:
        """
        Record how one entity import ended and roll up the sync job.

        When every entity job has finished the sync job becomes `completed`
        (all completed), `failed` (all failed) or `completed_with_errors`.

        Returns:
            The updated sync job, or None if it no longer exists
        """
        sync_job = self.storage.get_sync_job(sync_job_id)
        if sync_job is None:
            logger.warning("sync_job_missing_for_outcome", sync_job_id=sync_job_id, entity=entity.value)
            return None

        state = sync_job.entity_jobs.setdefault(entity.value, EntityJobState(job_id="unknown"))
        state.status = status.value
        state.error = error
        if batch is not None:
            state.batch_id = batch.id
            if batch.summary is not None:
                state.created = batch.summary.created
                state.updated = batch.summary.updated
                state.skipped = batch.summary.skipped
                state.errors = batch.summary.error_count

        if sync_job.status != SyncJobStatus.RUNNING:
            # Cancelled or already finalized: keep the entity detail only
            sync_job.updated_at = utc_now()
            self.storage.update_sync_job(sync_job)
            return sync_job

        states = list(sync_job.entity_jobs.values())
        finished = [s for s in states if s.is_finished]
        if len(finished) < len(states):
            sync_job.update_progress(int(len(finished) / len(states) * 100))
            self.storage.update_sync_job(sync_job)
            return sync_job

        outcomes = {s.status for s in states}
        if outcomes == {ImportBatchStatus.COMPLETED.value}:
            sync_job.complete()
        elif outcomes == {ImportBatchStatus.FAILED.value}:
            sync_job.fail("All entity imports failed")
        else:
            sync_job.complete(with_errors=True)
        self.storage.update_sync_job(sync_job)
        self._record_integration_outcome(sync_job)

        logger.info(
            "sync_job_finished",
            sync_job_id=sync_job.id,
            integration_id=sync_job.integration_id,
            status=sync_job.status.value,
            duration_seconds=sync_job.duration_seconds(),
            entities={name: s.status for name, s in sync_job.entity_jobs.items()},
        )
        return sync_job

    def _record_integration_outcome(self, sync_job: SyncJob) -> None:
        integration = self.storage.get_integration(sync_job.integration_id)
        if integration is None:
            return
        if sync_job.status == SyncJobStatus.FAILED:
            integration.record_sync_error(sync_job.error_message or "Sync failed")
        else:
            integration.record_successful_sync(sync_job.started_at)
        self.storage.save_integration(integration)

    def is_cancelled(self, sync_job_id: str) -> bool:
        sync_job = self.storage.get_sync_job(sync_job_id)
        return sync_job is not None and sync_job.status == SyncJobStatus.CANCELLED

    # =========================================================================
    # Cancel / retry
    # =========================================================================

    def get_sync_job(self, sync_job_id: str, tenant_id: str) -> SyncJob:
        sync_job = self.storage.get_sync_job(sync_job_id)
        if sync_job is None or sync_job.tenant_id != tenant_id:
            raise SyncJobNotFoundError(
                f"Sync job {sync_job_id} not found",
                context={"sync_job_id": sync_job_id},
            )
        return sync_job

    def list_sync_jobs(
        self,
        tenant_id: str,
        integration_id: Optional[str] = None,
        statuses: Optional[Sequence[SyncJobStatus]] = None,
        limit: int = 50,
    ) -> list[SyncJob]:
        return self.storage.list_sync_jobs(
            tenant_id=tenant_id, integration_id=integration_id, statuses=statuses, limit=limit
        )

    def cancel_sync_job(
        self,
        sync_job_id: str,
        tenant_id: str,
        user_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> SyncJob:
        """
        Cancel a pending or running sync job.

        Entity imports already in flight notice the cancellation between
        pages and chunks and finalize their batches as cancelled.

        Raises:
            SyncJobNotFoundError: Unknown job or other tenant's
            InvalidSyncJobStateError: The job already finished
        """
        sync_job = self.get_sync_job(sync_job_id, tenant_id)
        if sync_job.is_finished:
            raise InvalidSyncJobStateError(
                f"Cannot cancel sync job in status '{sync_job.status.value}'",
                context={"sync_job_id": sync_job_id, "status": sync_job.status.value},
            )
        sync_job.cancel(reason or "Cancelled by user")
        sync_job.metadata["cancelled_by"] = user_id
        sync_job.metadata["cancelled_at"] = sync_job.completed_at.isoformat()
        self.storage.update_sync_job(sync_job)

        logger.info("sync_job_cancelled", sync_job_id=sync_job_id, cancelled_by=user_id)
        return sync_job

    def retry_sync_job(
        self,
        sync_job_id: str,
        tenant_id: str,
        user_id: Optional[str] = None,
    ) -> TriggerResult:
        """
        Requeue a failed or cancelled sync job.

        Raises:
            SyncJobNotFoundError: Unknown job or other tenant's
            InvalidSyncJobStateError: The job is not failed or cancelled
            IntegrationInactiveError: Integration is not active
            SyncAlreadyRunningError: Another sync is in progress
        """
        sync_job = self.get_sync_job(sync_job_id, tenant_id)
        if sync_job.status not in (SyncJobStatus.FAILED, SyncJobStatus.CANCELLED):
            raise InvalidSyncJobStateError(
                f"Cannot retry sync job in status '{sync_job.status.value}'",
                context={"sync_job_id": sync_job_id, "status": sync_job.status.value},
            )
        integration = self._load_integration(sync_job.integration_id, tenant_id)
        self._ensure_can_sync(integration)
        self._ensure_no_active_job(sync_job.integration_id)

        sync_job.restart()
        sync_job.metadata["retried_by"] = user_id
        sync_job.metadata["retry_count"] = sync_job.metadata.get("retry_count", 0) + 1
        sync_job.metadata["retried_at"] = ensure_utc(self._clock()).isoformat()
        self.storage.update_sync_job(sync_job)
        job_id = self._enqueue_sync(sync_job)
        sync_job = self.storage.get_sync_job(sync_job_id) or sync_job

        logger.info(
            "sync_job_retried",
            sync_job_id=sync_job_id,
            retry_count=sync_job.metadata["retry_count"],
        )
        return TriggerResult(sync_job=sync_job, job_id=job_id)

    # =========================================================================
    # Reconciliation and statistics
    # =========================================================================

    def _stalled_since(self, sync_job: SyncJob) -> datetime:
        if sync_job.status == SyncJobStatus.RUNNING:
            return ensure_utc(sync_job.started_at or sync_job.created_at)
        retried_at = sync_job.metadata.get("retried_at")
        if retried_at:
            return ensure_utc(datetime.fromisoformat(retried_at))
        return ensure_utc(sync_job.created_at)

    def reconcile_stalled_jobs(self, now: Optional[datetime] = None) -> list[str]:
        """
        Fail sync jobs that exceeded the timeout.

        Running jobs are measured from when they started. Pending jobs are
        measured from when they were queued, so a sync whose queue message was
        lost stops blocking new triggers for its integration. Batches of a
        stalled job still in `processing` are failed too.

        Returns:
            Ids of the sync jobs that were failed
        """
        now = ensure_utc(now or self._clock())
        cutoff = now - self.timeout
        minutes = int(self.timeout.total_seconds() // 60)
        stalled = []

        for sync_job in self.storage.list_sync_jobs(statuses=ACTIVE_STATUSES, limit=1000):
            since = self._stalled_since(sync_job)
            if since > cutoff:
                continue
            if sync_job.status == SyncJobStatus.RUNNING:
                message = f"Sync job exceeded timeout of {minutes} minutes"
            else:
                message = f"Sync job was not started within {minutes} minutes"
            sync_job.fail(message)
            self.storage.update_sync_job(sync_job)
            abandoned = self.tracker.abandon_open_batches(sync_job.id, message)

            integration = self.storage.get_integration(sync_job.integration_id)
            if integration is not None:
                integration.record_sync_error(message)
                self.storage.save_integration(integration)

            logger.warning(
                "stalled_sync_job_failed",
                sync_job_id=sync_job.id,
                integration_id=sync_job.integration_id,
                since=since.isoformat(),
                abandoned_batches=abandoned,
            )
            stalled.append(sync_job.id)

        return stalled

    def get_sync_statistics(
        self,
        tenant_id: str,
        integration_id: Optional[str] = None,
        limit: int = 1000,
    ) -> SyncStatistics:
        jobs = self.storage.list_sync_jobs(
            tenant_id=tenant_id, integration_id=integration_id, limit=limit
        )
        stats = SyncStatistics(total_jobs=len(jobs))
        for status in SyncJobStatus:
            stats.by_status[status.value] = 0
        for job in jobs:
            stats.by_status[job.status.value] += 1
        stats.active_jobs = sum(1 for job in jobs if job.is_active)

        durations = [d for d in (job.duration_seconds() for job in jobs) if d is not None]
        if durations:
            stats.average_duration_seconds = round(sum(durations) / len(durations), 2)

        succeeded = stats.by_status[SyncJobStatus.COMPLETED.value] + stats.by_status[
            SyncJobStatus.COMPLETED_WITH_ERRORS.value
        ]
        finished = succeeded + stats.by_status[SyncJobStatus.FAILED.value]
        if finished:
            stats.success_rate = round(succeeded / finished * 100, 2)

        completed_at = [job.completed_at for job in jobs if job.completed_at and job.status != SyncJobStatus.FAILED]
        if completed_at:
            stats.last_completed_at = max(completed_at)
        return stats
