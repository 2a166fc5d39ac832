"""
Integration tests for the sync API.

The app is built around a test engine whose dispatcher records jobs instead
of sending them to Celery, so triggered jobs stay pending and every response
reflects stored state only. One scenario runs the Celery tasks eagerly.

Endpoints tested:
- System: health
- Sync: trigger, list, detail, cancel, retry, import batches
- Integrations: token health
- Stats: sync statistics and queue counters
"""

import pytest
from fastapi.testclient import TestClient

from ledgersync.main import create_app
from ledgersync.models.enums import EntityKind, ImportBatchStatus, IntegrationStatus, SyncJobStatus
from ledgersync.models.import_batch import ImportSummary
from tests.conftest import OTHER_TENANT_ID, TENANT_ID, make_integration, make_sync_job, xero_contact

HEADERS = {"X-Tenant-ID": TENANT_ID, "X-User-ID": "user-1"}
OTHER_HEADERS = {"X-Tenant-ID": OTHER_TENANT_ID}


@pytest.fixture
def client(engine):
    app = create_app(engine=engine)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def eager_client(celery_engine):
    app = create_app(engine=celery_engine)
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# System Endpoints
# ============================================================================


class TestSystemEndpoints:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["version"] == "0.1.0"
        assert body["engine_ready"] is True
        assert body["eager_tasks"] is True

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_missing_tenant_rejected(self, client, integration):
        response = client.post(f"/api/v1/sync/integrations/{integration.id}/sync", json={})
        assert response.status_code == 401


# ============================================================================
# Trigger
# ============================================================================


class TestTriggerSync:
    """Test POST /integrations/{id}/sync."""

    def test_trigger_accepted(self, client, engine, integration):
        response = client.post(
            f"/api/v1/sync/integrations/{integration.id}/sync",
            json={"options": {"entities": ["accounts", "suppliers"]}},
            headers=HEADERS,
        )

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["sync_job"]["status"] == "pending"
        assert data["sync_job"]["options"]["entities"] == ["accounts", "suppliers"]
        assert data["sync_job"]["metadata"]["triggered_by"] == "user-1"
        assert data["job_id"]
        assert engine.dispatcher.stats()["sync-integration"]["dispatched"] == 1

    def test_trigger_runs_tasks_when_eager(self, eager_client, fake_xero, storage, integration):
        fake_xero.contacts = [xero_contact("Acme Supplies"), xero_contact("Globex")]

        response = eager_client.post(
            f"/api/v1/sync/integrations/{integration.id}/sync",
            json={"options": {"entities": ["suppliers"]}},
            headers=HEADERS,
        )

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["sync_job"]["status"] == "completed"
        assert data["sync_job"]["entity_jobs"]["suppliers"]["created"] == 2
        assert storage.count_records(TENANT_ID, EntityKind.SUPPLIERS) == 2

    def test_empty_body_uses_defaults(self, client, integration):
        response = client.post(f"/api/v1/sync/integrations/{integration.id}/sync", json={}, headers=HEADERS)
        assert response.status_code == 202
        assert response.json()["data"]["sync_job"]["job_type"] == "manual"

    def test_conflict_when_sync_in_progress(self, client, integration):
        url = f"/api/v1/sync/integrations/{integration.id}/sync"
        assert client.post(url, json={}, headers=HEADERS).status_code == 202

        response = client.post(url, json={}, headers=HEADERS)

        assert response.status_code == 409
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "SYNC_ALREADY_RUNNING"
        assert body["context"]["integration_id"] == integration.id

    def test_unknown_integration(self, client):
        response = client.post("/api/v1/sync/integrations/missing/sync", json={}, headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["error"] == "INTEGRATION_NOT_FOUND"

    def test_other_tenant_integration_hidden(self, client, integration):
        response = client.post(
            f"/api/v1/sync/integrations/{integration.id}/sync", json={}, headers=OTHER_HEADERS
        )
        assert response.status_code == 404

    def test_inactive_integration(self, client, storage):
        pending = make_integration(status=IntegrationStatus.SETUP_PENDING)
        storage.save_integration(pending)

        response = client.post(f"/api/v1/sync/integrations/{pending.id}/sync", json={}, headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["error"] == "INTEGRATION_NOT_ACTIVE"

    def test_invalid_options_rejected(self, client, integration):
        response = client.post(
            f"/api/v1/sync/integrations/{integration.id}/sync",
            json={"options": {"entities": ["payroll"]}},
            headers=HEADERS,
        )
        assert response.status_code == 422


# ============================================================================
# Sync jobs
# ============================================================================


class TestSyncJobs:
    """Test listing, detail, cancel and retry."""

    def test_list_filters_by_status(self, client, storage, integration):
        storage.create_sync_job(make_sync_job(integration, status=SyncJobStatus.FAILED))
        storage.create_sync_job(make_sync_job(integration, status=SyncJobStatus.COMPLETED))
        storage.create_sync_job(make_sync_job(integration, status=SyncJobStatus.CANCELLED))

        response = client.get(
            "/api/v1/sync/sync-jobs", params={"status": ["failed", "completed"]}, headers=HEADERS
        )

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 2
        assert {job["status"] for job in body["data"]} == {"failed", "completed"}

    def test_list_scoped_to_tenant(self, client, storage, integration):
        storage.create_sync_job(make_sync_job(integration))
        response = client.get("/api/v1/sync/sync-jobs", headers=OTHER_HEADERS)
        assert response.json()["count"] == 0

    def test_detail_includes_derived_fields(self, client, storage, integration):
        job = make_sync_job(integration)
        storage.create_sync_job(job)

        response = client.get(f"/api/v1/sync/sync-jobs/{job.id}", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] == job.id
        assert data["duration_seconds"] is None
        assert data["entity_success_rate"] is None

    def test_detail_not_found(self, client):
        response = client.get("/api/v1/sync/sync-jobs/missing", headers=HEADERS)
        assert response.status_code == 404
        assert response.json()["error"] == "SYNC_JOB_NOT_FOUND"

    def test_cancel(self, client, storage, integration):
        job = make_sync_job(integration)
        storage.create_sync_job(job)

        response = client.post(
            f"/api/v1/sync/sync-jobs/{job.id}/cancel", json={"reason": "Wrong organisation"}, headers=HEADERS
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "cancelled"
        assert data["error_message"] == "Wrong organisation"
        assert data["metadata"]["cancelled_by"] == "user-1"

    def test_cancel_without_body(self, client, storage, integration):
        job = make_sync_job(integration)
        storage.create_sync_job(job)

        response = client.post(f"/api/v1/sync/sync-jobs/{job.id}/cancel", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["data"]["error_message"] == "Cancelled by user"

    def test_cancel_finished_job_conflicts(self, client, storage, integration):
        job = make_sync_job(integration, status=SyncJobStatus.COMPLETED)
        storage.create_sync_job(job)

        response = client.post(f"/api/v1/sync/sync-jobs/{job.id}/cancel", headers=HEADERS)

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_SYNC_JOB_STATE"

    def test_retry_failed_job(self, client, storage, integration):
        job = make_sync_job(integration, status=SyncJobStatus.FAILED, error_message="provider down")
        storage.create_sync_job(job)

        response = client.post(f"/api/v1/sync/sync-jobs/{job.id}/retry", headers=HEADERS)

        assert response.status_code == 202
        sync_job = response.json()["data"]["sync_job"]
        assert sync_job["status"] == "pending"
        assert sync_job["error_message"] is None
        assert sync_job["metadata"]["retry_count"] == 1
        assert sync_job["metadata"]["retried_by"] == "user-1"

    def test_retry_running_job_conflicts(self, client, storage, integration):
        job = make_sync_job(integration, status=SyncJobStatus.RUNNING)
        storage.create_sync_job(job)

        response = client.post(f"/api/v1/sync/sync-jobs/{job.id}/retry", headers=HEADERS)

        assert response.status_code == 409

    def test_import_batches(self, client, engine, storage, integration):
        job = make_sync_job(integration, status=SyncJobStatus.RUNNING)
        storage.create_sync_job(job)
        batch = engine.tracker.create(TENANT_ID, integration.id, EntityKind.ACCOUNTS, sync_job_id=job.id)
        engine.tracker.finalize(batch.id, ImportBatchStatus.COMPLETED, ImportSummary(total_fetched=4, created=4))

        response = client.get(f"/api/v1/sync/sync-jobs/{job.id}/import-batches", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["count"] == 1
        assert body["data"][0]["batch_type"] == "accounts"
        assert body["data"][0]["summary"]["created"] == 4

    def test_import_batches_of_other_tenant(self, client, storage, integration):
        job = make_sync_job(integration)
        storage.create_sync_job(job)
        response = client.get(f"/api/v1/sync/sync-jobs/{job.id}/import-batches", headers=OTHER_HEADERS)
        assert response.status_code == 404


# ============================================================================
# Token health and statistics
# ============================================================================


class TestTokenHealthAndStats:
    def test_token_health(self, client, integration):
        response = client.get(f"/api/v1/sync/integrations/{integration.id}/token-health", headers=HEADERS)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "active"
        assert data["health_score"] is None
        assert data["token"]["is_valid"] is True
        assert data["token"]["needs_refresh"] is False
        assert data["token"]["needs_reauth"] is False

    def test_token_health_other_tenant(self, client, integration):
        response = client.get(
            f"/api/v1/sync/integrations/{integration.id}/token-health", headers=OTHER_HEADERS
        )
        assert response.status_code == 404

    def test_stats(self, client, storage, integration):
        storage.create_sync_job(make_sync_job(integration, status=SyncJobStatus.FAILED))
        storage.create_sync_job(make_sync_job(integration))

        response = client.get("/api/v1/sync/stats", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["data"]["total_jobs"] == 2
        assert body["data"]["active_jobs"] == 1
        assert body["data"]["by_status"]["failed"] == 1
        assert body["data"]["success_rate"] == 0.0
        assert body["queues"]["import-accounts"] == {"dispatched": 0}
