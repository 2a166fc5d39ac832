"""
Queue job payloads.

The sync-integration job carries only identifiers; the entity import jobs form
a discriminated union on `entity` so every queue validates exactly the shape
its importer expects before the job is accepted.
"""

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from ledgersync.models.enums import EntityKind
from ledgersync.models.sync_job import SyncJob

SYNC_INTEGRATION_QUEUE = "sync-integration"

ENTITY_QUEUES: dict[EntityKind, str] = {
    EntityKind.ACCOUNTS: "import-accounts",
    EntityKind.SUPPLIERS: "import-suppliers",
    EntityKind.INVOICES: "import-invoices",
    EntityKind.TRANSACTIONS: "import-transactions",
    EntityKind.BANK_STATEMENTS: "import-bank-statements",
    EntityKind.JOURNALS: "import-manual-journals",
}

# Referential data first: invoices need suppliers, lines need accounts
ENTITY_PRIORITIES: dict[EntityKind, int] = {
    EntityKind.ACCOUNTS: 10,
    EntityKind.SUPPLIERS: 5,
    EntityKind.INVOICES: 3,
    EntityKind.TRANSACTIONS: 2,
    EntityKind.BANK_STATEMENTS: 2,
    EntityKind.JOURNALS: 1,
}


class SyncIntegrationJob(BaseModel):
    sync_job_id: str
    integration_id: str
    tenant_id: str


class _ImportJobBase(BaseModel):
    integration_id: str
    tenant_id: str
    sync_job_id: Optional[str] = None
    modified_since: Optional[datetime] = None

    @property
    def entity_kind(self) -> EntityKind:
        return EntityKind(self.entity)


class ImportAccountsJob(_ImportJobBase):
    entity: Literal["accounts"] = "accounts"
    include_archived: bool = False


class ImportSuppliersJob(_ImportJobBase):
    entity: Literal["suppliers"] = "suppliers"
    include_archived: bool = False


class ImportInvoicesJob(_ImportJobBase):
    entity: Literal["invoices"] = "invoices"
    invoice_types: list[str] = Field(default_factory=lambda: ["ACCPAY", "ACCREC"])
    statuses: list[str] = Field(default_factory=list)


class _BankImportJob(_ImportJobBase):
    account_ids: list[str] = Field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None


class ImportBankTransactionsJob(_BankImportJob):
    entity: Literal["transactions"] = "transactions"


class ImportBankStatementsJob(_BankImportJob):
    entity: Literal["bank_statements"] = "bank_statements"


class ImportManualJournalsJob(_ImportJobBase):
    entity: Literal["journals"] = "journals"


ImportJobPayload = Annotated[
    Union[
        ImportAccountsJob,
        ImportSuppliersJob,
        ImportInvoicesJob,
        ImportBankTransactionsJob,
        ImportBankStatementsJob,
        ImportManualJournalsJob,
    ],
    Field(discriminator="entity"),
]

import_job_adapter: TypeAdapter[ImportJobPayload] = TypeAdapter(ImportJobPayload)


def build_import_job(
    entity: EntityKind,
    sync_job: SyncJob,
    modified_since: Optional[datetime] = None,
) -> ImportJobPayload:
    """Build the validated import payload for one entity of a sync job."""
    options = sync_job.options
    data = {
        "entity": entity.value,
        "integration_id": sync_job.integration_id,
        "tenant_id": sync_job.tenant_id,
        "sync_job_id": sync_job.id,
        "modified_since": modified_since,
    }
    if entity in (EntityKind.ACCOUNTS, EntityKind.SUPPLIERS):
        data["include_archived"] = options.include_archived
    elif entity == EntityKind.INVOICES:
        data["invoice_types"] = options.invoice_types
        data["statuses"] = options.invoice_statuses
    elif entity in (EntityKind.TRANSACTIONS, EntityKind.BANK_STATEMENTS):
        data["account_ids"] = options.account_ids
        data["date_from"] = options.date_from
        data["date_to"] = options.date_to
    return import_job_adapter.validate_python(data)


# (attempts, base backoff in seconds) per queue
QUEUE_RETRY_POLICIES: dict[str, tuple[int, float]] = {
    SYNC_INTEGRATION_QUEUE: (3, 2.0),
    "import-accounts": (3, 3.0),
    "import-suppliers": (3, 5.0),
    "import-invoices": (5, 5.0),
    "import-transactions": (5, 5.0),
    "import-bank-statements": (5, 5.0),
    "import-manual-journals": (3, 3.0),
}
