"""
Local ledger records produced by the entity importers.

Every record is tenant-scoped and carries a `dedup_key` that is unique per
(tenant, entity kind). Records with a provider-native id use
"<provider>:<external id>" as dedup key; records without one use a hash of
their stable fields (see ledgersync.importers.mappers.compute_dedup_key).
"""

from datetime import datetime
from typing import ClassVar, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from ledgersync.models.enums import (
    AccountClass,
    EntityKind,
    InvoiceStatus,
    InvoiceType,
    JournalStatus,
    ProviderKind,
    TransactionDirection,
)
from ledgersync.utils.dates import utc_now


class LedgerRecord(BaseModel):
    """
    Common fields of every imported record.

    Attributes:
        id: Local record id
        tenant_id: Owning tenant
        integration_id: Integration the record was imported through
        source: Provider the record came from
        external_id: Provider-native id, when the provider supplies one
        dedup_key: Identity used for duplicate detection within the tenant
    """

    entity_kind: ClassVar[EntityKind]

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str
    integration_id: str
    source: ProviderKind = ProviderKind.XERO
    external_id: Optional[str] = None
    dedup_key: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    last_synced_at: datetime = Field(default_factory=utc_now)

    @property
    def natural_key(self) -> Optional[str]:
        """Business identifier used as a secondary match key (code, number)."""
        return None

    def content_equals(self, other: "LedgerRecord") -> bool:
        """Compare imported content, ignoring identity and bookkeeping fields."""
        ignore = {"id", "created_at", "updated_at", "last_synced_at"}
        return self.model_dump(exclude=ignore) == other.model_dump(exclude=ignore)


class Account(LedgerRecord):
    entity_kind: ClassVar[EntityKind] = EntityKind.ACCOUNTS

    code: str
    name: str
    account_class: AccountClass
    account_type: str
    description: Optional[str] = None
    is_bank_account: bool = False
    is_active: bool = True
    is_system_account: bool = False
    currency: Optional[str] = None
    tax_type: Optional[str] = None
    bank_account_number: Optional[str] = None

    @property
    def natural_key(self) -> Optional[str]:
        return self.code


class Supplier(LedgerRecord):
    entity_kind: ClassVar[EntityKind] = EntityKind.SUPPLIERS

    name: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    status: str = "active"
    is_supplier: bool = True
    is_customer: bool = False
    tax_number: Optional[str] = None
    default_currency: Optional[str] = None
    phones: list[str] = Field(default_factory=list)
    addresses: list[dict] = Field(default_factory=list)


class InvoiceLine(BaseModel):
    description: Optional[str] = None
    quantity: float = 1.0
    unit_amount: float = 0.0
    line_amount: float = 0.0
    tax_amount: float = 0.0
    account_code: Optional[str] = None
    account_id: Optional[str] = None


class Invoice(LedgerRecord):
    entity_kind: ClassVar[EntityKind] = EntityKind.INVOICES

    invoice_number: Optional[str] = None
    invoice_type: InvoiceType
    status: InvoiceStatus
    supplier_id: Optional[str] = None
    contact_external_id: Optional[str] = None
    contact_name: Optional[str] = None
    issue_date: Optional[datetime] = None
    due_date: Optional[datetime] = None
    currency: Optional[str] = None
    subtotal: float = 0.0
    tax_total: float = 0.0
    total: float = 0.0
    amount_due: float = 0.0
    amount_paid: float = 0.0
    reference: Optional[str] = None
    lines: list[InvoiceLine] = Field(default_factory=list)
    provider_updated_at: Optional[datetime] = None

    @property
    def natural_key(self) -> Optional[str]:
        return self.invoice_number


class BankTransaction(LedgerRecord):
    """Bank transaction as recorded in the provider ledger (append-only)."""

    entity_kind: ClassVar[EntityKind] = EntityKind.TRANSACTIONS

    transaction_type: str
    direction: TransactionDirection
    amount: float
    transaction_date: datetime
    reference: Optional[str] = None
    contact_name: Optional[str] = None
    supplier_id: Optional[str] = None
    bank_account_id: Optional[str] = None
    bank_account_external_id: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    is_reconciled: bool = False
    matched_invoice_id: Optional[str] = None
    lines: list[InvoiceLine] = Field(default_factory=list)


class BankStatementLine(LedgerRecord):
    """Statement line of a local bank account (append-only)."""

    entity_kind: ClassVar[EntityKind] = EntityKind.BANK_STATEMENTS

    bank_account_id: str
    bank_account_external_id: Optional[str] = None
    transaction_date: datetime
    amount: float
    direction: TransactionDirection
    description: str = "Bank Transaction"
    reference: Optional[str] = None
    merchant_name: Optional[str] = None
    supplier_id: Optional[str] = None
    currency: Optional[str] = None
    status: Optional[str] = None


class JournalLine(BaseModel):
    account_code: Optional[str] = None
    account_id: Optional[str] = None
    description: Optional[str] = None
    debit: float = 0.0
    credit: float = 0.0
    tax_type: Optional[str] = None
    tax_amount: float = 0.0


class ManualJournal(LedgerRecord):
    entity_kind: ClassVar[EntityKind] = EntityKind.JOURNALS

    narration: str
    journal_date: Optional[datetime] = None
    status: JournalStatus
    lines: list[JournalLine] = Field(default_factory=list)
    total_debit: float = 0.0
    total_credit: float = 0.0
    provider_updated_at: Optional[datetime] = None

    @property
    def is_balanced(self) -> bool:
        return round(self.total_debit - self.total_credit, 2) == 0


RECORD_MODELS: dict[EntityKind, type[LedgerRecord]] = {
    EntityKind.ACCOUNTS: Account,
    EntityKind.SUPPLIERS: Supplier,
    EntityKind.INVOICES: Invoice,
    EntityKind.TRANSACTIONS: BankTransaction,
    EntityKind.BANK_STATEMENTS: BankStatementLine,
    EntityKind.JOURNALS: ManualJournal,
}
