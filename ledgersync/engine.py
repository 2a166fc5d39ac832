"""
Component wiring for the sync engine.

Every component receives its collaborators and the Settings instance through
its constructor; build_engine is the single place the graph is assembled.
The API process and every Celery worker process each build one engine.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from ledgersync.config import Settings
from ledgersync.connectors.provider_client import ProviderClient
from ledgersync.connectors.xero_client import XeroClient
from ledgersync.importers import IMPORTER_CLASSES
from ledgersync.jobs.orchestrator import SyncOrchestrator
from ledgersync.jobs.payloads import ImportJobPayload
from ledgersync.jobs.processors import ImportJobProcessor
from ledgersync.models.import_batch import ImportBatch
from ledgersync.services.batch_tracker import ImportBatchTracker
from ledgersync.services.entity_lookup import EntityLookupService
from ledgersync.services.refresh_lock import RedisRefreshLock
from ledgersync.services.token_manager import TokenLifecycleManager
from ledgersync.storage import StorageBackend, create_storage
from ledgersync.utils.dates import utc_now
from ledgersync.workers.celery_app import celery_app, configure_celery
from ledgersync.workers.dispatcher import CeleryJobDispatcher, JobDispatcher
from ledgersync.workers.tasks import bind_engine

logger = structlog.get_logger()


@dataclass
class SyncEngine:
    settings: Settings
    storage: StorageBackend
    xero: XeroClient
    token_manager: TokenLifecycleManager
    provider_client: ProviderClient
    lookup: EntityLookupService
    tracker: ImportBatchTracker
    dispatcher: JobDispatcher
    orchestrator: SyncOrchestrator
    processor: ImportJobProcessor

    async def run_import(self, payload: ImportJobPayload, attempt: int = 1) -> Optional[ImportBatch]:
        """Run one import job on the current event loop."""
        try:
            return await self.processor.process(payload, attempt=attempt)
        finally:
            # The HTTP pool is bound to this task's loop; the next task reopens it
            await self.xero.aclose()

    async def aclose(self) -> None:
        await self.xero.aclose()


def build_engine(
    settings: Settings,
    storage: Optional[StorageBackend] = None,
    xero: Optional[XeroClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], datetime] = utc_now,
    dispatcher: Optional[JobDispatcher] = None,
) -> SyncEngine:
    """
    Assemble the engine and bind it to the Celery tasks of this process.

    Args:
        settings: Application settings
        storage: Storage backend (built from settings when omitted)
        xero: Xero API client (built from settings when omitted)
        sleep: Awaitable sleep used for every backoff and throttle wait
        clock: Time source for token health and stalled-job checks
        dispatcher: Where sync and import jobs are sent (Celery when omitted)

    Returns:
        SyncEngine ready to trigger syncs and run tasks
    """
    storage = storage or create_storage(settings)
    xero = xero or XeroClient(settings)
    dispatcher = dispatcher or CeleryJobDispatcher()
    configure_celery(celery_app, settings)

    refresh_lock = None
    if settings.token_refresh_distributed_lock:
        refresh_lock = RedisRefreshLock.from_settings(settings)

    token_manager = TokenLifecycleManager(
        storage, xero, settings, clock=clock, refresh_lock=refresh_lock
    )
    provider_client = ProviderClient(token_manager, settings, sleep=sleep)
    lookup = EntityLookupService(storage)
    tracker = ImportBatchTracker(storage)

    orchestrator = SyncOrchestrator(storage, token_manager, tracker, dispatcher, settings, clock=clock)
    importers = {
        entity: importer_cls(provider_client, xero, lookup, tracker, storage, settings)
        for entity, importer_cls in IMPORTER_CLASSES.items()
    }
    processor = ImportJobProcessor(importers, orchestrator, storage)

    engine = SyncEngine(
        settings=settings,
        storage=storage,
        xero=xero,
        token_manager=token_manager,
        provider_client=provider_client,
        lookup=lookup,
        tracker=tracker,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        processor=processor,
    )
    bind_engine(engine)

    logger.info(
        "sync_engine_built",
        queues=list(dispatcher.stats()),
        eager_tasks=settings.celery_task_always_eager,
        distributed_refresh_lock=refresh_lock is not None,
    )
    return engine
