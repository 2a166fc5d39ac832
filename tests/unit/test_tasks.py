"""
Unit tests for the Celery layer: app configuration, retry policy, the sync
and import tasks with their outcome hooks, the reconciliation task and the
dispatcher.

Tasks run eagerly against an engine built by the celery_engine fixture.
"""

from datetime import datetime, timezone

import pytest

from ledgersync.errors import ProviderAPIError, RateLimitError, TokenRefreshError
from ledgersync.jobs.payloads import (
    ENTITY_QUEUES,
    QUEUE_RETRY_POLICIES,
    SYNC_INTEGRATION_QUEUE,
    build_import_job,
)
from ledgersync.models.enums import EntityKind, ImportBatchStatus, SyncJobStatus
from ledgersync.models.sync_job import EntityJobState, SyncOptions
from ledgersync.workers.celery_app import (
    IMPORT_TASKS,
    MAINTENANCE_QUEUE,
    RECONCILE_TASK,
    SYNC_INTEGRATION_TASK,
    broker_priority,
    celery_app,
)
from ledgersync.workers.tasks import (
    IMPORT_TASK_FOR,
    import_accounts,
    import_invoices,
    import_suppliers,
    reconcile_stalled_sync_jobs,
    retry_countdown,
    sync_integration,
)
from tests.conftest import TENANT_ID, make_sync_job, run_sync, xero_contact

STARTED = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _payload(job) -> dict:
    return {"payload": job.model_dump(mode="json")}


# ============================================================================
# App configuration
# ============================================================================


class TestCeleryConfig:
    """Test queue routing, priorities and the beat schedule."""

    def test_each_import_task_routed_to_its_queue(self, celery_engine):
        routes = celery_app.conf.task_routes
        for entity, task_name in IMPORT_TASKS.items():
            assert routes[task_name] == {"queue": ENTITY_QUEUES[entity]}
        assert routes[SYNC_INTEGRATION_TASK] == {"queue": SYNC_INTEGRATION_QUEUE}
        assert routes[RECONCILE_TASK] == {"queue": MAINTENANCE_QUEUE}

    def test_queues_declared(self, celery_engine):
        names = {queue.name for queue in celery_app.conf.task_queues}
        assert names == {SYNC_INTEGRATION_QUEUE, MAINTENANCE_QUEUE, *ENTITY_QUEUES.values()}

    def test_settings_applied(self, celery_engine, settings):
        conf = celery_app.conf
        assert conf.task_always_eager is True
        assert conf.task_acks_late is True
        assert conf.worker_prefetch_multiplier == 1
        assert conf.task_time_limit == settings.sync_job_timeout_minutes * 60
        assert conf.accept_content == ["json"]

    def test_beat_runs_reconciliation(self, celery_engine, settings):
        entry = celery_app.conf.beat_schedule["reconcile-stalled-sync-jobs"]
        assert entry["task"] == RECONCILE_TASK
        assert entry["schedule"] == float(settings.stalled_job_check_interval_seconds)

    def test_registered_task_per_entity(self):
        assert {task.name for task in IMPORT_TASK_FOR.values()} == set(IMPORT_TASKS.values())
        for entity, task in IMPORT_TASK_FOR.items():
            assert task.queue_name == ENTITY_QUEUES[entity]

    def test_max_retries_follow_queue_policy(self):
        assert import_invoices.max_retries == QUEUE_RETRY_POLICIES["import-invoices"][0] - 1
        assert import_accounts.max_retries == 2
        assert sync_integration.max_retries == 2

    @pytest.mark.parametrize(
        "priority,expected",
        [(10, 0), (9, 1), (5, 5), (1, 9), (0, 9), (100, 0)],
    )
    def test_broker_priority(self, priority, expected):
        assert broker_priority(priority) == expected

    def test_referential_entities_pop_first(self):
        # Accounts (10) before suppliers (5) before journals (1)
        assert broker_priority(10) < broker_priority(5) < broker_priority(1)


# ============================================================================
# Retry policy
# ============================================================================


class TestRetryCountdown:
    def test_transient_error_backs_off_from_queue_base(self):
        delay = retry_countdown("import-suppliers", ProviderAPIError("down", provider_status=503), attempt=1)
        assert 5.0 <= delay <= 6.5

    def test_backoff_doubles(self):
        delay = retry_countdown("import-invoices", TokenRefreshError("lock busy"), attempt=2)
        assert 10.0 <= delay <= 13.0

    def test_last_attempt_is_final(self):
        attempts, _ = QUEUE_RETRY_POLICIES["import-accounts"]
        assert retry_countdown("import-accounts", TokenRefreshError("x"), attempt=attempts) is None

    def test_client_error_is_final(self):
        assert retry_countdown("import-invoices", ProviderAPIError("bad", provider_status=400), attempt=1) is None

    def test_unexpected_error_is_final(self):
        assert retry_countdown(SYNC_INTEGRATION_QUEUE, KeyError("x"), attempt=1) is None

    def test_retry_after_wins(self):
        delay = retry_countdown("import-accounts", RateLimitError(retry_after=30), attempt=1)
        assert delay == 30


# ============================================================================
# Import tasks
# ============================================================================


class TestImportTasks:
    """Test import tasks and the roll-up through their hooks."""

    def test_retries_exhausted_reports_failure(self, celery_engine, storage, integration, fake_xero):
        attempts, _ = QUEUE_RETRY_POLICIES["import-suppliers"]
        fake_xero.failures["Contacts"] = [
            ProviderAPIError("service unavailable", provider_status=503) for _ in range(attempts)
        ]

        sync_job = run_sync(celery_engine, integration.id, options=SyncOptions(entities=["accounts", "suppliers"]))

        assert sync_job.status == SyncJobStatus.COMPLETED_WITH_ERRORS
        assert sync_job.entity_jobs["suppliers"].status == "failed"
        assert sync_job.entity_jobs["suppliers"].error == "service unavailable"
        assert sync_job.metadata["entity_attempts"]["suppliers"] == attempts
        assert len(fake_xero.calls_to("Contacts")) == attempts

    def test_non_retryable_error_fails_first_time(self, celery_engine, storage, integration, fake_xero):
        fake_xero.failures["Contacts"] = [ProviderAPIError("bad request", provider_status=400)]

        sync_job = run_sync(celery_engine, integration.id, options=SyncOptions(entities=["suppliers"]))

        assert sync_job.status == SyncJobStatus.FAILED
        assert len(fake_xero.calls_to("Contacts")) == 1

    def test_standalone_import_returns_batch(self, celery_engine, storage, integration, fake_xero):
        fake_xero.contacts = [xero_contact("Acme Supplies"), xero_contact("Globex")]

        result = import_suppliers.apply(
            kwargs={
                "payload": {
                    "entity": "suppliers",
                    "integration_id": integration.id,
                    "tenant_id": TENANT_ID,
                }
            }
        )

        batch = result.get()
        assert batch["status"] == ImportBatchStatus.COMPLETED.value
        assert batch["summary"]["created"] == 2
        assert storage.count_records(TENANT_ID, EntityKind.SUPPLIERS) == 2

    def test_cancelled_sync_recorded_as_cancelled(self, celery_engine, storage, integration, fake_xero):
        job = make_sync_job(
            integration,
            status=SyncJobStatus.RUNNING,
            started_at=STARTED,
            entity_jobs={"accounts": EntityJobState(job_id="job:accounts:0")},
        )
        storage.create_sync_job(job)
        celery_engine.orchestrator.cancel_sync_job(job.id, TENANT_ID)

        result = import_accounts.apply(kwargs=_payload(build_import_job(EntityKind.ACCOUNTS, job)))

        assert result.get() is None
        assert storage.get_sync_job(job.id).entity_jobs["accounts"].status == "cancelled"
        assert fake_xero.calls == []

    def test_invalid_payload_fails_without_roll_up(self, celery_engine, storage, integration):
        result = import_accounts.apply(kwargs={"payload": {"entity": "accounts"}})

        assert result.failed()
        assert storage.list_sync_jobs(tenant_id=TENANT_ID) == []

    def test_inactive_integration_not_retried(self, celery_engine, storage, integration, fake_xero):
        job = make_sync_job(
            integration,
            status=SyncJobStatus.RUNNING,
            started_at=STARTED,
            entity_jobs={"accounts": EntityJobState(job_id="job:accounts:0")},
        )
        storage.create_sync_job(job)
        integration.disable()
        storage.save_integration(integration)

        result = import_accounts.apply(kwargs=_payload(build_import_job(EntityKind.ACCOUNTS, job)))

        stored = storage.get_sync_job(job.id)
        assert result.failed()
        assert stored.status == SyncJobStatus.FAILED
        assert "not active" in stored.entity_jobs["accounts"].error
        assert fake_xero.calls == []


# ============================================================================
# Sync-integration task
# ============================================================================


class TestSyncIntegrationTask:
    def test_fans_out_through_import_tasks(self, celery_engine, storage, integration, fake_xero):
        fake_xero.contacts = [xero_contact("Acme Supplies")]

        sync_job = run_sync(celery_engine, integration.id, options=SyncOptions(entities=["suppliers"]))

        assert sync_job.status == SyncJobStatus.COMPLETED
        stats = celery_engine.dispatcher.stats()
        assert stats[SYNC_INTEGRATION_QUEUE]["dispatched"] == 1
        assert stats["import-suppliers"]["dispatched"] == 1
        assert stats["import-accounts"]["dispatched"] == 0

    def test_rejected_sync_job_failed(self, celery_engine, storage, integration):
        job = make_sync_job(integration)
        storage.create_sync_job(job)
        integration.disable()
        storage.save_integration(integration)

        result = sync_integration.apply(
            kwargs={
                "payload": {
                    "sync_job_id": job.id,
                    "integration_id": integration.id,
                    "tenant_id": TENANT_ID,
                }
            }
        )

        stored = storage.get_sync_job(job.id)
        assert result.failed()
        assert stored.status == SyncJobStatus.FAILED
        assert "not active" in stored.error_message

    def test_missing_sync_job_fails_task(self, celery_engine, integration):
        result = sync_integration.apply(
            kwargs={
                "payload": {
                    "sync_job_id": "missing",
                    "integration_id": integration.id,
                    "tenant_id": TENANT_ID,
                }
            }
        )
        assert result.failed()


# ============================================================================
# Reconciliation task
# ============================================================================


class TestReconcileTask:
    def test_fails_stalled_jobs(self, celery_engine, storage, integration):
        stalled = make_sync_job(integration, status=SyncJobStatus.RUNNING, started_at=STARTED)
        storage.create_sync_job(stalled)

        outcome = reconcile_stalled_sync_jobs.apply().get()

        assert outcome == {"stalled": [stalled.id]}
        assert storage.get_sync_job(stalled.id).status == SyncJobStatus.FAILED

    def test_nothing_to_do(self, celery_engine):
        assert reconcile_stalled_sync_jobs.apply().get() == {"stalled": []}
