"""
Celery application configuration for LedgerSync.

This module configures Celery for:
- The sync-integration fan-out queue
- One import queue per entity kind, so workers can be scaled per endpoint
- The periodic stalled-job reconciliation (Celery Beat)

Workers are started per queue group, e.g.:
    celery -A ledgersync.workers.celery_app worker -Q sync-integration -c 3
    celery -A ledgersync.workers.celery_app worker -Q import-accounts,import-suppliers -c 2
    celery -A ledgersync.workers.celery_app beat
"""

from celery import Celery
from kombu import Queue

from ledgersync.config import Settings
from ledgersync.jobs.payloads import ENTITY_QUEUES, SYNC_INTEGRATION_QUEUE
from ledgersync.models.enums import EntityKind

MAINTENANCE_QUEUE = "maintenance"

SYNC_INTEGRATION_TASK = "ledgersync.workers.tasks.sync_integration"
RECONCILE_TASK = "ledgersync.workers.tasks.reconcile_stalled_sync_jobs"
IMPORT_TASKS: dict[EntityKind, str] = {
    EntityKind.ACCOUNTS: "ledgersync.workers.tasks.import_accounts",
    EntityKind.SUPPLIERS: "ledgersync.workers.tasks.import_suppliers",
    EntityKind.INVOICES: "ledgersync.workers.tasks.import_invoices",
    EntityKind.TRANSACTIONS: "ledgersync.workers.tasks.import_bank_transactions",
    EntityKind.BANK_STATEMENTS: "ledgersync.workers.tasks.import_bank_statements",
    EntityKind.JOURNALS: "ledgersync.workers.tasks.import_manual_journals",
}

# Redis transport: priority steps 0-9, lower pops first
BROKER_PRIORITY_STEPS = list(range(10))


def broker_priority(priority: int) -> int:
    """Map an engine priority (higher runs first) onto the Redis transport scale."""
    return min(max(10 - priority, 0), 9)


def task_routes() -> dict[str, dict[str, str]]:
    routes = {SYNC_INTEGRATION_TASK: {"queue": SYNC_INTEGRATION_QUEUE}}
    for entity, task_name in IMPORT_TASKS.items():
        routes[task_name] = {"queue": ENTITY_QUEUES[entity]}
    routes[RECONCILE_TASK] = {"queue": MAINTENANCE_QUEUE}
    return routes


def configure_celery(app: Celery, settings: Settings) -> Celery:
    """Apply settings to the Celery app (broker, queues, eager mode, beat)."""
    queue_names = [SYNC_INTEGRATION_QUEUE, *ENTITY_QUEUES.values(), MAINTENANCE_QUEUE]
    app.conf.update(
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,
        # Task routing
        task_routes=task_routes(),
        task_queues=tuple(Queue(name, routing_key=name) for name in queue_names),
        task_default_queue=MAINTENANCE_QUEUE,
        task_default_routing_key=MAINTENANCE_QUEUE,
        broker_transport_options={
            "priority_steps": BROKER_PRIORITY_STEPS,
            "sep": ":",
            "queue_order_strategy": "priority",
        },
        # Task execution settings
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        task_time_limit=settings.sync_job_timeout_minutes * 60,
        worker_prefetch_multiplier=1,
        worker_concurrency=settings.celery_worker_concurrency,
        task_always_eager=settings.celery_task_always_eager,
        task_eager_propagates=False,
        # Result settings
        result_expires=3600,
        # Serialization
        task_serializer=settings.celery_task_serializer,
        result_serializer=settings.celery_result_serializer,
        accept_content=settings.celery_accept_content_list,
        # Timezone
        timezone="UTC",
        enable_utc=True,
        beat_schedule={
            "reconcile-stalled-sync-jobs": {
                "task": RECONCILE_TASK,
                "schedule": float(settings.stalled_job_check_interval_seconds),
                "options": {"queue": MAINTENANCE_QUEUE},
            },
        },
        # Logging
        worker_hijack_root_logger=False,
    )
    return app


celery_app = Celery("ledgersync", include=["ledgersync.workers.tasks"])
configure_celery(celery_app, Settings())
