"""
Enumeration types for the accounting sync engine.

All enums inherit from str to ensure JSON serialization compatibility and to
let the storage layer persist them as plain strings.
"""

from enum import Enum


class ProviderKind(str, Enum):
    """Remote accounting providers an integration can connect to."""

    XERO = "xero"


class IntegrationStatus(str, Enum):
    """Lifecycle status of a tenant's provider integration."""

    ACTIVE = "active"
    ERROR = "error"
    DISABLED = "disabled"
    SETUP_PENDING = "setup_pending"


class SyncHealth(str, Enum):
    """Health indicator derived from the integration's sync history."""

    HEALTHY = "healthy"
    WARNING = "warning"
    ERROR = "error"
    UNKNOWN = "unknown"


class SyncJobType(str, Enum):
    """Why a sync job was created."""

    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    WEBHOOK = "webhook"
    INITIAL = "initial"


class SyncJobStatus(str, Enum):
    """
    Sync job state machine.

    pending -> running -> completed | completed_with_errors | failed | cancelled
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (SyncJobStatus.PENDING, SyncJobStatus.RUNNING)


class ImportBatchStatus(str, Enum):
    """Status of one entity importer execution."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != ImportBatchStatus.PROCESSING


class EntityKind(str, Enum):
    """
    Entity types imported from the provider.

    Declaration order is the fan-out order: referential data first.
    """

    ACCOUNTS = "accounts"
    SUPPLIERS = "suppliers"
    INVOICES = "invoices"
    TRANSACTIONS = "transactions"
    BANK_STATEMENTS = "bank_statements"
    JOURNALS = "journals"


class AccountClass(str, Enum):
    """Chart-of-accounts class."""

    ASSET = "ASSET"
    LIABILITY = "LIABILITY"
    EQUITY = "EQUITY"
    REVENUE = "REVENUE"
    EXPENSE = "EXPENSE"


class InvoiceType(str, Enum):
    """Payable bills versus receivable invoices."""

    BILL = "bill"
    INVOICE = "invoice"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    PAID = "paid"
    VOID = "void"
    DELETED = "deleted"


class TransactionDirection(str, Enum):
    """Direction of money movement on a bank account."""

    DEBIT = "debit"
    CREDIT = "credit"


class JournalStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    VOIDED = "voided"
    DELETED = "deleted"
