"""
Pydantic v2 data models for the accounting sync engine.

Model Organization:
    - enums: Enumeration types for statuses and entity kinds
    - integration: Provider integration and stored OAuth token set
    - sync_job: Sync job state machine and sync options
    - import_batch: Import batch tracking and importer summaries
    - records: Local ledger records produced by the importers
"""

from .enums import (
    AccountClass,
    EntityKind,
    ImportBatchStatus,
    IntegrationStatus,
    InvoiceStatus,
    InvoiceType,
    JournalStatus,
    ProviderKind,
    SyncHealth,
    SyncJobStatus,
    SyncJobType,
    TransactionDirection,
)
from .import_batch import ImportBatch, ImportSummary, RecordError
from .integration import AuthPayload, Integration
from .records import (
    RECORD_MODELS,
    Account,
    BankStatementLine,
    BankTransaction,
    Invoice,
    InvoiceLine,
    JournalLine,
    LedgerRecord,
    ManualJournal,
    Supplier,
)
from .sync_job import EntityJobState, SyncJob, SyncOptions

__all__ = [
    # Enumerations
    "AccountClass",
    "EntityKind",
    "ImportBatchStatus",
    "IntegrationStatus",
    "InvoiceStatus",
    "InvoiceType",
    "JournalStatus",
    "ProviderKind",
    "SyncHealth",
    "SyncJobStatus",
    "SyncJobType",
    "TransactionDirection",
    # Integration
    "AuthPayload",
    "Integration",
    # Sync jobs
    "EntityJobState",
    "SyncJob",
    "SyncOptions",
    # Import batches
    "ImportBatch",
    "ImportSummary",
    "RecordError",
    # Ledger records
    "RECORD_MODELS",
    "Account",
    "BankStatementLine",
    "BankTransaction",
    "Invoice",
    "InvoiceLine",
    "JournalLine",
    "LedgerRecord",
    "ManualJournal",
    "Supplier",
]
