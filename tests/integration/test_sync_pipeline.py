"""
End-to-end sync pipeline tests.

A sync is triggered, fanned out over the Celery import tasks and rolled up,
with the FakeXeroApi standing in for Xero and DuckDB on a temp path. Celery
runs in eager mode, so every task finishes before the trigger returns.
"""

import pytest

from ledgersync.errors import ProviderAPIError
from ledgersync.models.enums import EntityKind, ImportBatchStatus, SyncJobStatus, SyncJobType
from ledgersync.models.sync_job import SyncOptions
from ledgersync.workers.tasks import sync_integration
from tests.conftest import (
    TENANT_ID,
    make_auth,
    make_integration,
    make_sync_job,
    run_sync,
    xero_bank_transaction,
    xero_contact,
    xero_invoice,
    xero_manual_journal,
)

NON_BANK_ENTITIES = ["accounts", "suppliers", "invoices", "transactions", "journals"]


@pytest.fixture
def engine(celery_engine):
    return celery_engine


@pytest.fixture
def xero_org(fake_xero, chart_of_accounts):
    """A small Xero organisation: chart, three contacts, two bills, two payments, one journal."""
    bank = chart_of_accounts[0]
    acme = xero_contact("Acme Supplies", contact_id="c-acme")
    globex = xero_contact("Globex", contact_id="c-globex")
    fake_xero.accounts = chart_of_accounts
    fake_xero.contacts = [acme, globex, xero_contact("Initech", contact_id="c-initech")]
    fake_xero.invoices = [
        xero_invoice("BILL-100", acme, total=110.0),
        xero_invoice("INV-200", globex, invoice_type="ACCREC", total=550.0),
    ]
    fake_xero.bank_transactions = [
        xero_bank_transaction(bank, total=110.0, contact=acme, reference="BILL-100"),
        xero_bank_transaction(bank, total=550.0, transaction_type="RECEIVE", contact=globex, reference="INV-200"),
    ]
    fake_xero.manual_journals = [xero_manual_journal("Depreciation")]
    return fake_xero


def _counts(storage):
    return {kind: storage.count_records(TENANT_ID, kind) for kind in EntityKind}


class TestFullSync:
    """Test a complete sync from trigger to roll-up."""

    def test_sync_completes(self, engine, storage, integration, xero_org):
        sync_job = run_sync(engine, integration.id, user_id="user-1")

        assert sync_job.status == SyncJobStatus.COMPLETED
        assert sync_job.progress == 100
        assert sync_job.completed_at is not None
        assert set(sync_job.entity_jobs) == {kind.value for kind in EntityKind}
        assert all(state.status == "completed" for state in sync_job.entity_jobs.values())

    def test_records_imported(self, engine, storage, integration, xero_org):
        run_sync(engine, integration.id)

        counts = _counts(storage)
        assert counts[EntityKind.ACCOUNTS] == 4
        assert counts[EntityKind.SUPPLIERS] == 3
        assert counts[EntityKind.INVOICES] == 2
        assert counts[EntityKind.TRANSACTIONS] == 2
        assert counts[EntityKind.JOURNALS] == 1

    def test_batches_recorded_per_entity(self, engine, storage, integration, xero_org):
        sync_job = run_sync(engine, integration.id)

        batches = storage.list_import_batches(tenant_id=TENANT_ID, sync_job_id=sync_job.id)
        assert sorted(batch.batch_type.value for batch in batches) == sorted(kind.value for kind in EntityKind)
        assert all(batch.status == ImportBatchStatus.COMPLETED for batch in batches)
        assert sync_job.entity_jobs["suppliers"].created == 3

    def test_integration_records_success(self, engine, storage, integration, xero_org):
        sync_job = run_sync(engine, integration.id)

        stored = storage.get_integration(integration.id)
        assert stored.sync_count == 1
        assert stored.error_count == 0
        assert stored.last_sync_at == sync_job.started_at

    def test_entity_subset(self, engine, storage, integration, xero_org):
        sync_job = run_sync(engine, integration.id, options=SyncOptions(entities=["suppliers"]))

        assert list(sync_job.entity_jobs) == ["suppliers"]
        assert sync_job.status == SyncJobStatus.COMPLETED
        assert storage.count_records(TENANT_ID, EntityKind.ACCOUNTS) == 0

    def test_rerun_is_idempotent(self, engine, storage, integration, xero_org):
        run_sync(engine, integration.id)
        second = run_sync(engine, integration.id)

        assert second.status == SyncJobStatus.COMPLETED
        assert _counts(storage)[EntityKind.SUPPLIERS] == 3
        assert _counts(storage)[EntityKind.INVOICES] == 2
        assert all(second.entity_jobs[name].created == 0 for name in NON_BANK_ENTITIES)
        assert second.entity_jobs["suppliers"].skipped == 3

    def test_incremental_sync_sends_watermark(self, engine, storage, integration, xero_org):
        run_sync(engine, integration.id)
        second = run_sync(engine, integration.id, job_type=SyncJobType.INCREMENTAL)

        watermark = storage.get_integration(integration.id).last_sync_at
        first_contacts_call, last_contacts_call = xero_org.calls_to("Contacts")[0], xero_org.calls_to("Contacts")[-1]
        assert first_contacts_call["modified_since"] is None
        assert last_contacts_call["modified_since"] is not None
        assert second.metadata["modified_since"] is not None
        assert watermark == second.started_at


class TestTokenRefreshDuringSync:
    def test_expiring_token_refreshed_once(self, engine, storage, xero_org):
        expiring = make_integration(auth=make_auth(expires_in_seconds=60))
        storage.save_integration(expiring)

        sync_job = run_sync(engine, expiring.id)

        assert sync_job.status == SyncJobStatus.COMPLETED
        assert xero_org.refresh_calls == 1
        assert {params["access_token"] for _, params in xero_org.calls} == {"access-1"}
        assert storage.get_integration(expiring.id).auth.refresh_token == "refresh-1"


class TestPartialFailures:
    """Test roll-up when entity imports fail."""

    def test_failed_entity_completes_with_errors(self, engine, storage, integration, xero_org):
        xero_org.failures["Contacts"] = [ProviderAPIError("bad request", provider_status=400)]

        sync_job = run_sync(engine, integration.id)

        assert sync_job.status == SyncJobStatus.COMPLETED_WITH_ERRORS
        assert sync_job.entity_jobs["suppliers"].status == "failed"
        assert sync_job.entity_jobs["suppliers"].error == "bad request"
        assert sync_job.entity_jobs["accounts"].status == "completed"
        assert storage.get_integration(integration.id).sync_count == 1

    def test_all_entities_failed(self, engine, storage, integration, xero_org):
        for endpoint in ("Accounts", "Contacts", "Invoices", "BankTransactions", "ManualJournals"):
            xero_org.failures[endpoint] = [ProviderAPIError("bad request", provider_status=400)]

        sync_job = run_sync(engine, integration.id, options=SyncOptions(entities=NON_BANK_ENTITIES))

        assert sync_job.status == SyncJobStatus.FAILED
        assert sync_job.error_message == "All entity imports failed"
        stored = storage.get_integration(integration.id)
        assert stored.error_count == 1
        assert stored.last_error_message == "All entity imports failed"

    def test_transient_failure_retried(self, engine, storage, integration, xero_org):
        xero_org.failures["Contacts"] = [ProviderAPIError("service unavailable", provider_status=503)]

        sync_job = run_sync(engine, integration.id)

        assert sync_job.status == SyncJobStatus.COMPLETED
        assert storage.count_records(TENANT_ID, EntityKind.SUPPLIERS) == 3
        assert sync_job.metadata["entity_attempts"]["suppliers"] == 2

        batches = storage.list_import_batches(tenant_id=TENANT_ID, sync_job_id=sync_job.id)
        supplier_batches = [b.status for b in batches if b.batch_type == EntityKind.SUPPLIERS]
        assert supplier_batches == [ImportBatchStatus.FAILED, ImportBatchStatus.COMPLETED]

    def test_cancelled_before_imports_run(self, engine, storage, integration, xero_org):
        pending = make_sync_job(integration)
        storage.create_sync_job(pending)
        engine.orchestrator.cancel_sync_job(pending.id, TENANT_ID)

        result = sync_integration.apply(
            kwargs={
                "payload": {
                    "sync_job_id": pending.id,
                    "integration_id": integration.id,
                    "tenant_id": TENANT_ID,
                }
            }
        )

        assert result.get() == {"sync_job_id": pending.id, "skipped": True}
        sync_job = storage.get_sync_job(pending.id)
        assert sync_job.status == SyncJobStatus.CANCELLED
        assert sync_job.entity_jobs == {}
        assert xero_org.calls == []
