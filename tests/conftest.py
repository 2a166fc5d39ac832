"""
Pytest configuration and shared fixtures for the ledgersync test suite.

Provides model factories, Xero payload factories, a scripted FakeXeroApi
standing in for the HTTP client, a RecordingDispatcher standing in for
Celery, and DuckDB storage on a per-test temp path.
"""

import asyncio
import re
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

import pytest

from ledgersync.config import Settings
from ledgersync.engine import SyncEngine, build_engine
from ledgersync.jobs.payloads import (
    ENTITY_QUEUES,
    SYNC_INTEGRATION_QUEUE,
    ImportJobPayload,
    SyncIntegrationJob,
)
from ledgersync.models.enums import IntegrationStatus, SyncJobStatus, SyncJobType
from ledgersync.models.integration import AuthPayload, Integration
from ledgersync.models.sync_job import SyncJob, SyncOptions
from ledgersync.storage.duckdb_storage import DuckDBStorage

TENANT_ID = "tenant-001"
OTHER_TENANT_ID = "tenant-002"
XERO_TENANT_ID = "xero-org-001"


# ---------------------------------------------------------------------------
# Settings and model factories
# ---------------------------------------------------------------------------


def make_settings(db_path: str, **overrides) -> Settings:
    """Settings isolated from the environment, with throttling effectively off.

    Celery runs tasks inline and token refreshes skip the Redis lock.
    """
    defaults = dict(
        db_path=db_path,
        celery_task_always_eager=True,
        token_refresh_distributed_lock=False,
        provider_requests_per_second=1000,
        provider_requests_per_minute=100000,
        log_format="console",
        testing=True,
    )
    defaults.update(overrides)
    return Settings(_env_file=None, **defaults)


def make_auth(
    expires_in_seconds: int = 1800,
    now: Optional[datetime] = None,
    **overrides,
) -> AuthPayload:
    """Factory for a token set expiring `expires_in_seconds` from `now`."""
    now = now or datetime.now(timezone.utc)
    defaults = dict(
        access_token="access-initial",
        refresh_token="refresh-initial",
        expires_in=1800,
        issued_at=now - timedelta(seconds=1800 - expires_in_seconds),
        expires_at=now + timedelta(seconds=expires_in_seconds),
        provider_tenant_id=XERO_TENANT_ID,
        provider_tenant_name="Demo Company",
        scopes=["accounting.transactions", "offline_access"],
    )
    defaults.update(overrides)
    return AuthPayload(**defaults)


def make_integration(
    tenant_id: str = TENANT_ID,
    status: IntegrationStatus = IntegrationStatus.ACTIVE,
    auth: Optional[AuthPayload] = None,
    **overrides,
) -> Integration:
    """Factory for an active Xero integration with a fresh token set."""
    defaults = dict(
        id=str(uuid4()),
        tenant_id=tenant_id,
        name="Demo Company (Xero)",
        status=status,
        auth=auth if auth is not None else make_auth(),
    )
    defaults.update(overrides)
    return Integration(**defaults)


def make_sync_job(
    integration: Integration,
    status: SyncJobStatus = SyncJobStatus.PENDING,
    job_type: SyncJobType = SyncJobType.MANUAL,
    options: Optional[SyncOptions] = None,
    **overrides,
) -> SyncJob:
    defaults = dict(
        integration_id=integration.id,
        tenant_id=integration.tenant_id,
        job_type=job_type,
        status=status,
        options=options or SyncOptions(),
    )
    defaults.update(overrides)
    return SyncJob(**defaults)


# ---------------------------------------------------------------------------
# Xero payload factories
# ---------------------------------------------------------------------------


def xero_account(
    code: str,
    name: str,
    account_type: str = "EXPENSE",
    account_id: Optional[str] = None,
    **overrides,
) -> dict[str, Any]:
    raw = {
        "AccountID": account_id or str(uuid4()),
        "Code": code,
        "Name": name,
        "Type": account_type,
        "Status": "ACTIVE",
        "CurrencyCode": "AUD",
        "TaxType": "INPUT",
    }
    if account_type == "BANK":
        raw["BankAccountNumber"] = "062-000 1234 5678"
    raw.update(overrides)
    return raw


def xero_contact(name: str, contact_id: Optional[str] = None, **overrides) -> dict[str, Any]:
    raw = {
        "ContactID": contact_id or str(uuid4()),
        "Name": name,
        "EmailAddress": f"{re.sub(r'[^a-z0-9]', '', name.lower())}@example.com",
        "ContactStatus": "ACTIVE",
        "IsSupplier": True,
        "IsCustomer": False,
        "DefaultCurrency": "AUD",
        "Phones": [{"PhoneType": "DEFAULT", "PhoneNumber": "5550100", "PhoneAreaCode": "02"}],
        "Addresses": [{"AddressType": "POBOX", "AddressLine1": "PO Box 1", "City": "Sydney"}],
    }
    raw.update(overrides)
    return raw


def xero_invoice(
    number: str,
    contact: Optional[dict[str, Any]] = None,
    invoice_type: str = "ACCPAY",
    status: str = "AUTHORISED",
    total: float = 110.0,
    date: str = "2024-03-01T00:00:00",
    invoice_id: Optional[str] = None,
    **overrides,
) -> dict[str, Any]:
    raw = {
        "InvoiceID": invoice_id or str(uuid4()),
        "InvoiceNumber": number,
        "Type": invoice_type,
        "Status": status,
        "Contact": {"ContactID": contact["ContactID"], "Name": contact["Name"]} if contact else {},
        "DateString": date,
        "DueDateString": "2024-03-31T00:00:00",
        "CurrencyCode": "AUD",
        "LineItems": [
            {
                "Description": "Consulting",
                "Quantity": 1,
                "UnitAmount": round(total / 1.1, 2),
                "LineAmount": round(total / 1.1, 2),
                "AccountCode": "400",
                "TaxAmount": round(total - total / 1.1, 2),
            }
        ],
        "SubTotal": round(total / 1.1, 2),
        "TotalTax": round(total - total / 1.1, 2),
        "Total": total,
        "AmountDue": total,
        "AmountPaid": 0,
        "UpdatedDateUTC": "/Date(1709251200000+0000)/",
    }
    raw.update(overrides)
    return raw


def xero_bank_transaction(
    bank_account: dict[str, Any],
    total: float = 110.0,
    transaction_type: str = "SPEND",
    contact: Optional[dict[str, Any]] = None,
    date: str = "2024-03-02T00:00:00",
    reference: Optional[str] = "REF-1",
    transaction_id: Optional[str] = None,
    **overrides,
) -> dict[str, Any]:
    raw = {
        "BankTransactionID": transaction_id if transaction_id is not None else str(uuid4()),
        "Type": transaction_type,
        "BankAccount": {"AccountID": bank_account["AccountID"], "Code": bank_account["Code"]},
        "Contact": {"ContactID": contact["ContactID"], "Name": contact["Name"]} if contact else {},
        "DateString": date,
        "Reference": reference,
        "Total": total,
        "CurrencyCode": "AUD",
        "Status": "AUTHORISED",
        "IsReconciled": False,
        "LineItems": [{"Description": "Payment", "LineAmount": total, "AccountCode": "400"}],
    }
    raw.update(overrides)
    return raw


def xero_manual_journal(
    narration: str = "Accrual",
    lines: Optional[list[tuple[str, float]]] = None,
    status: str = "POSTED",
    journal_id: Optional[str] = None,
    **overrides,
) -> dict[str, Any]:
    lines = lines if lines is not None else [("400", 250.0), ("800", -250.0)]
    raw = {
        "ManualJournalID": journal_id or str(uuid4()),
        "Narration": narration,
        "Status": status,
        "DateString": "2024-03-31T00:00:00",
        "JournalLines": [
            {"AccountCode": code, "LineAmount": amount, "Description": narration, "TaxType": "NONE"}
            for code, amount in lines
        ],
        "UpdatedDateUTC": "/Date(1711843200000+0000)/",
    }
    raw.update(overrides)
    return raw


# ---------------------------------------------------------------------------
# Fake provider
# ---------------------------------------------------------------------------

_GUID_RE = re.compile(r'Guid\("([^"]+)"\)')
_TYPE_RE = re.compile(r'Type=="([A-Z]+)"')


class FakeXeroApi:
    """
    Scripted stand-in for XeroClient.

    Collections are served page by page like the real API. Errors queued in
    `failures[endpoint]` are raised (one per call) before data is returned;
    `refresh_results` is consumed in order by refresh_access_token.
    """

    def __init__(self):
        self.accounts: list[dict[str, Any]] = []
        self.contacts: list[dict[str, Any]] = []
        self.invoices: list[dict[str, Any]] = []
        self.bank_transactions: list[dict[str, Any]] = []
        self.manual_journals: list[dict[str, Any]] = []
        self.failures: dict[str, list[Exception]] = {}
        self.refresh_results: list[Any] = []
        self.refresh_delay = 0.0
        self.refresh_tokens_seen: list[str] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @property
    def refresh_calls(self) -> int:
        return len(self.refresh_tokens_seen)

    def calls_to(self, endpoint: str) -> list[dict[str, Any]]:
        return [params for name, params in self.calls if name == endpoint]

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        self.refresh_tokens_seen.append(refresh_token)
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_results:
            result = self.refresh_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        n = self.refresh_calls
        return {
            "access_token": f"access-{n}",
            "refresh_token": f"refresh-{n}",
            "expires_in": 1800,
            "token_type": "Bearer",
        }

    def _record(self, endpoint: str, **params) -> None:
        self.calls.append((endpoint, params))
        pending = self.failures.get(endpoint)
        if pending:
            raise pending.pop(0)

    @staticmethod
    def _page(records: list[dict[str, Any]], page: int, page_size: int) -> list[dict[str, Any]]:
        return records[(page - 1) * page_size : page * page_size]

    async def get_accounts(self, access_token, tenant_id, modified_since=None, where=None):
        self._record("Accounts", access_token=access_token, modified_since=modified_since)
        return list(self.accounts)

    async def get_contacts(
        self,
        access_token,
        tenant_id,
        page,
        page_size,
        modified_since=None,
        where=None,
        include_archived=False,
    ):
        self._record("Contacts", access_token=access_token, page=page, modified_since=modified_since)
        return self._page(self.contacts, page, page_size)

    async def get_invoices(
        self,
        access_token,
        tenant_id,
        page,
        page_size,
        modified_since=None,
        where=None,
        statuses=None,
    ):
        self._record("Invoices", access_token=access_token, page=page, where=where, modified_since=modified_since)
        records = self.invoices
        match = _TYPE_RE.search(where or "")
        if match:
            records = [r for r in records if not isinstance(r, dict) or r.get("Type") == match.group(1)]
        return self._page(records, page, page_size)

    async def get_bank_transactions(
        self,
        access_token,
        tenant_id,
        page,
        page_size,
        modified_since=None,
        where=None,
    ):
        self._record("BankTransactions", access_token=access_token, page=page, where=where)
        records = self.bank_transactions
        account_ids = _GUID_RE.findall(where or "")
        if account_ids:
            records = [r for r in records if r["BankAccount"]["AccountID"] in account_ids]
        return self._page(records, page, page_size)

    async def get_manual_journals(self, access_token, tenant_id, page, page_size, modified_since=None, where=None):
        self._record("ManualJournals", access_token=access_token, page=page)
        return self._page(self.manual_journals, page, page_size)

    async def aclose(self) -> None:
        return None


class SleepRecorder:
    """Awaitable sleep replacement that records delays instead of waiting."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class RecordingDispatcher:
    """Job dispatcher that keeps jobs instead of sending them to Celery."""

    def __init__(self):
        self.sync_jobs: list[tuple[SyncIntegrationJob, int]] = []
        self.import_jobs: list[tuple[ImportJobPayload, int, Optional[str]]] = []

    def enqueue_sync(self, job: SyncIntegrationJob, priority: int) -> str:
        self.sync_jobs.append((job, priority))
        return f"sync-{len(self.sync_jobs)}"

    def enqueue_import(self, job: ImportJobPayload, priority: int, job_id: Optional[str] = None) -> str:
        self.import_jobs.append((job, priority, job_id))
        return job_id or f"import-{len(self.import_jobs)}"

    def stats(self) -> dict[str, dict[str, int]]:
        counts = Counter(ENTITY_QUEUES[job.entity_kind] for job, _, _ in self.import_jobs)
        counts[SYNC_INTEGRATION_QUEUE] = len(self.sync_jobs)
        names = [SYNC_INTEGRATION_QUEUE, *ENTITY_QUEUES.values()]
        return {name: {"dispatched": counts[name]} for name in names}


def run_sync(engine: SyncEngine, integration_id: str, tenant_id: str = TENANT_ID, **kwargs):
    """Trigger a sync on an eager Celery engine; every task runs before this returns."""
    result = engine.orchestrator.trigger_sync(integration_id, tenant_id, **kwargs)
    return engine.storage.get_sync_job(result.sync_job.id)


# ---------------------------------------------------------------------------
# Pytest fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(str(tmp_path / "ledgersync.duckdb"))


@pytest.fixture
def storage(settings):
    store = DuckDBStorage(db_path=settings.db_path)
    yield store
    store.close()


@pytest.fixture
def fake_xero() -> FakeXeroApi:
    return FakeXeroApi()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def engine(settings, storage, fake_xero, sleeper, dispatcher) -> SyncEngine:
    """Engine whose jobs are recorded, not run."""
    return build_engine(settings, storage=storage, xero=fake_xero, sleep=sleeper, dispatcher=dispatcher)


@pytest.fixture
def celery_engine(settings, storage, fake_xero, sleeper) -> SyncEngine:
    """Engine dispatching to the Celery tasks, which run eagerly."""
    return build_engine(settings, storage=storage, xero=fake_xero, sleep=sleeper)


@pytest.fixture
def integration(storage) -> Integration:
    item = make_integration()
    storage.save_integration(item)
    return item


@pytest.fixture
def chart_of_accounts() -> list[dict[str, Any]]:
    return [
        xero_account("090", "Business Bank Account", "BANK"),
        xero_account("400", "Advertising", "EXPENSE"),
        xero_account("200", "Sales", "REVENUE"),
        xero_account("800", "Accounts Payable", "CURRLIAB", SystemAccount="CREDITORS"),
    ]
