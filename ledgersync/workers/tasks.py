"""
Celery tasks for sync jobs.

Tasks:
- sync_integration: Start a sync job and fan it out into entity imports
- import_*: Import one entity kind for an integration (one task per queue)
- reconcile_stalled_sync_jobs: Periodic stalled-job sweep (Celery Beat)

Import outcomes reach the orchestrator through the task hooks: on_success
after the importer returned, on_failure once retries are exhausted.
"""

import asyncio
from typing import TYPE_CHECKING, Any, Optional

import structlog
from celery import Task
from pydantic import ValidationError

from ledgersync.errors import SyncError, get_retry_delay, is_retryable_error
from ledgersync.jobs.payloads import (
    ENTITY_QUEUES,
    QUEUE_RETRY_POLICIES,
    SYNC_INTEGRATION_QUEUE,
    ImportJobPayload,
    SyncIntegrationJob,
    import_job_adapter,
)
from ledgersync.models.enums import EntityKind
from ledgersync.models.import_batch import ImportBatch
from ledgersync.workers.celery_app import (
    IMPORT_TASKS,
    MAINTENANCE_QUEUE,
    RECONCILE_TASK,
    SYNC_INTEGRATION_TASK,
    celery_app,
)

if TYPE_CHECKING:
    from ledgersync.engine import SyncEngine

logger = structlog.get_logger()

_engine: Optional["SyncEngine"] = None


def bind_engine(engine: "SyncEngine") -> None:
    """Make `engine` the one tasks in this process run against."""
    global _engine
    _engine = engine


def current_engine() -> "SyncEngine":
    if _engine is None:
        # Worker process: assemble the engine from the environment
        from ledgersync.config import Settings
        from ledgersync.engine import build_engine
        from ledgersync.utils.logging import configure_logging

        configure_logging()
        bind_engine(build_engine(Settings()))
    return _engine


def max_retries_for(queue_name: str) -> int:
    attempts, _ = QUEUE_RETRY_POLICIES[queue_name]
    return attempts - 1


def retry_countdown(queue_name: str, error: BaseException, attempt: int) -> Optional[float]:
    """
    Backoff before the next attempt of a failed task.

    Args:
        queue_name: Queue whose retry policy applies
        error: Exception raised by the attempt
        attempt: Attempt that just failed (1-based)

    Returns:
        Seconds to wait, or None when the failure is final
    """
    attempts, backoff = QUEUE_RETRY_POLICIES[queue_name]
    if attempt >= attempts or not is_retryable_error(error):
        return None
    return get_retry_delay(error, attempt, base_delay=backoff)


class EngineTask(Task):
    """
    Base task class giving access to the process-wide engine.

    Transient SyncErrors are retried with the queue's backoff policy.
    """

    queue_name: str = MAINTENANCE_QUEUE

    @property
    def engine(self) -> "SyncEngine":
        return current_engine()

    @property
    def attempt(self) -> int:
        return self.request.retries + 1

    def retry_if_transient(self, error: SyncError) -> None:
        """Raise celery's Retry for transient errors; return for final ones."""
        countdown = retry_countdown(self.queue_name, error, self.attempt)
        if countdown is None:
            return
        logger.warning(
            "task_retry_scheduled",
            task=self.name,
            task_id=self.request.id,
            attempt=self.attempt,
            countdown=round(countdown, 3),
            error=error.message,
        )
        raise self.retry(exc=error, countdown=countdown)


class SyncIntegrationTask(EngineTask):
    queue_name = SYNC_INTEGRATION_QUEUE

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        try:
            payload = SyncIntegrationJob.model_validate(kwargs.get("payload"))
        except ValidationError:
            logger.error("sync_task_payload_invalid", task_id=task_id, error=str(exc))
            return
        self.engine.orchestrator.handle_sync_job_failure(payload, exc)


class ImportTask(EngineTask):
    """Runs one entity import and reports its outcome for roll-up."""

    def _payload(self, task_id: str, kwargs: dict[str, Any]) -> Optional[ImportJobPayload]:
        try:
            return import_job_adapter.validate_python(kwargs.get("payload"))
        except ValidationError as e:
            logger.error("import_task_payload_invalid", task=self.name, task_id=task_id, error=str(e))
            return None

    def on_success(self, retval, task_id, args, kwargs):
        payload = self._payload(task_id, kwargs)
        if payload is None:
            return
        batch = ImportBatch.model_validate(retval) if retval is not None else None
        self.engine.processor.on_completed(payload, batch)

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        payload = self._payload(task_id, kwargs)
        if payload is None:
            return
        self.engine.processor.on_failed(payload, exc)


@celery_app.task(
    bind=True,
    base=SyncIntegrationTask,
    name=SYNC_INTEGRATION_TASK,
    max_retries=max_retries_for(SYNC_INTEGRATION_QUEUE),
)
def sync_integration(self, payload: dict) -> dict:
    """
    Start a pending sync job and queue one import task per entity.

    Returns:
        dict: Sync job id and the entities queued (or skipped=True)
    """
    job = SyncIntegrationJob.model_validate(payload)
    try:
        return self.engine.orchestrator.process_sync_job(job)
    except SyncError as e:
        self.retry_if_transient(e)
        raise


def run_import_task(task: ImportTask, payload: dict) -> Optional[dict]:
    job = import_job_adapter.validate_python(payload)
    try:
        batch = asyncio.run(task.engine.run_import(job, attempt=task.attempt))
    except SyncError as e:
        task.retry_if_transient(e)
        raise
    return batch.model_dump(mode="json") if batch is not None else None


def _import_options(entity: EntityKind) -> dict[str, Any]:
    queue_name = ENTITY_QUEUES[entity]
    return {
        "bind": True,
        "base": ImportTask,
        "name": IMPORT_TASKS[entity],
        "queue_name": queue_name,
        "max_retries": max_retries_for(queue_name),
    }


@celery_app.task(**_import_options(EntityKind.ACCOUNTS))
def import_accounts(self, payload: dict) -> Optional[dict]:
    """Import the chart of accounts."""
    return run_import_task(self, payload)


@celery_app.task(**_import_options(EntityKind.SUPPLIERS))
def import_suppliers(self, payload: dict) -> Optional[dict]:
    """Import contacts as suppliers."""
    return run_import_task(self, payload)


@celery_app.task(**_import_options(EntityKind.INVOICES))
def import_invoices(self, payload: dict) -> Optional[dict]:
    """Import bills and sales invoices."""
    return run_import_task(self, payload)


@celery_app.task(**_import_options(EntityKind.TRANSACTIONS))
def import_bank_transactions(self, payload: dict) -> Optional[dict]:
    return run_import_task(self, payload)


@celery_app.task(**_import_options(EntityKind.BANK_STATEMENTS))
def import_bank_statements(self, payload: dict) -> Optional[dict]:
    return run_import_task(self, payload)


@celery_app.task(**_import_options(EntityKind.JOURNALS))
def import_manual_journals(self, payload: dict) -> Optional[dict]:
    return run_import_task(self, payload)


IMPORT_TASK_FOR: dict[EntityKind, Task] = {
    EntityKind.ACCOUNTS: import_accounts,
    EntityKind.SUPPLIERS: import_suppliers,
    EntityKind.INVOICES: import_invoices,
    EntityKind.TRANSACTIONS: import_bank_transactions,
    EntityKind.BANK_STATEMENTS: import_bank_statements,
    EntityKind.JOURNALS: import_manual_journals,
}


@celery_app.task(bind=True, base=EngineTask, name=RECONCILE_TASK)
def reconcile_stalled_sync_jobs(self) -> dict:
    """
    Periodic task: fail sync jobs that stalled past the timeout.

    Scheduled by Celery Beat every `stalled_job_check_interval_seconds`.
    """
    stalled = self.engine.orchestrator.reconcile_stalled_jobs()
    if stalled:
        logger.info("stalled_jobs_reconciled", count=len(stalled))
    return {"stalled": stalled}
