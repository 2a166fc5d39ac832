"""
Publishing sync and import jobs onto their Celery queues.
"""

from collections import Counter
from typing import Optional, Protocol

import structlog

from ledgersync.jobs.payloads import (
    ENTITY_QUEUES,
    SYNC_INTEGRATION_QUEUE,
    ImportJobPayload,
    SyncIntegrationJob,
)
from ledgersync.workers.celery_app import broker_priority
from ledgersync.workers.tasks import IMPORT_TASK_FOR, sync_integration

logger = structlog.get_logger()


class JobDispatcher(Protocol):
    def enqueue_sync(self, job: SyncIntegrationJob, priority: int) -> str: ...

    def enqueue_import(
        self, job: ImportJobPayload, priority: int, job_id: Optional[str] = None
    ) -> str: ...

    def stats(self) -> dict[str, dict[str, int]]: ...


class CeleryJobDispatcher:
    """
    Sends jobs as Celery tasks.

    Payloads travel as JSON dicts and are validated again by the task.
    Priorities are engine priorities (higher runs first) and are mapped onto
    the broker's scale on the way out.
    """

    def __init__(self):
        self._dispatched: Counter[str] = Counter()

    def enqueue_sync(self, job: SyncIntegrationJob, priority: int) -> str:
        result = sync_integration.apply_async(
            kwargs={"payload": job.model_dump(mode="json")},
            priority=broker_priority(priority),
        )
        self._record(SYNC_INTEGRATION_QUEUE, result.id, priority)
        return result.id

    def enqueue_import(
        self, job: ImportJobPayload, priority: int, job_id: Optional[str] = None
    ) -> str:
        task = IMPORT_TASK_FOR[job.entity_kind]
        result = task.apply_async(
            kwargs={"payload": job.model_dump(mode="json")},
            priority=broker_priority(priority),
            task_id=job_id,
        )
        self._record(ENTITY_QUEUES[job.entity_kind], result.id, priority)
        return result.id

    def _record(self, queue_name: str, task_id: str, priority: int) -> None:
        self._dispatched[queue_name] += 1
        logger.debug("job_dispatched", queue=queue_name, task_id=task_id, priority=priority)

    def stats(self) -> dict[str, dict[str, int]]:
        """Jobs sent per queue by this process."""
        names = [SYNC_INTEGRATION_QUEUE, *ENTITY_QUEUES.values()]
        return {name: {"dispatched": self._dispatched[name]} for name in names}
