"""
Pure mapping functions from Xero payloads to local ledger records.

Each mapper takes one raw provider record plus a MappingContext and returns a
MappingResult: the mapped record and the data-quality warnings raised while
mapping it. Missing optional fields fall back explicitly; missing required
fields raise DataValidationError, which the importer records against the
single offending record.
"""

import hashlib
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Optional, TypeVar

from ledgersync.errors import DataValidationError
from ledgersync.models.enums import (
    AccountClass,
    InvoiceStatus,
    InvoiceType,
    JournalStatus,
    ProviderKind,
    TransactionDirection,
)
from ledgersync.models.records import (
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
from ledgersync.services.entity_lookup import EntityLookupService, LookupMaps
from ledgersync.utils.dates import parse_xero_date

R = TypeVar("R", bound=LedgerRecord)

ACCOUNT_TYPE_CLASSES: dict[str, AccountClass] = {
    "BANK": AccountClass.ASSET,
    "CURRENT": AccountClass.ASSET,
    "FIXED": AccountClass.ASSET,
    "INVENTORY": AccountClass.ASSET,
    "NONCURRENT": AccountClass.ASSET,
    "PREPAYMENT": AccountClass.ASSET,
    "CURRLIAB": AccountClass.LIABILITY,
    "LIABILITY": AccountClass.LIABILITY,
    "TERMLIAB": AccountClass.LIABILITY,
    "DEPRECIATN": AccountClass.EXPENSE,
    "DIRECTCOSTS": AccountClass.EXPENSE,
    "EXPENSE": AccountClass.EXPENSE,
    "OVERHEADS": AccountClass.EXPENSE,
    "PAYG": AccountClass.EXPENSE,
    "EQUITY": AccountClass.EQUITY,
    "OTHERINCOME": AccountClass.REVENUE,
    "REVENUE": AccountClass.REVENUE,
    "SALES": AccountClass.REVENUE,
}

ACCOUNT_CLASS_ORDER = [
    AccountClass.ASSET,
    AccountClass.LIABILITY,
    AccountClass.EQUITY,
    AccountClass.REVENUE,
    AccountClass.EXPENSE,
]

INVOICE_TYPES = {"ACCPAY": InvoiceType.BILL, "ACCREC": InvoiceType.INVOICE}

INVOICE_STATUSES = {
    "DRAFT": InvoiceStatus.DRAFT,
    "SUBMITTED": InvoiceStatus.SUBMITTED,
    "AUTHORISED": InvoiceStatus.APPROVED,
    "PAID": InvoiceStatus.PAID,
    "VOIDED": InvoiceStatus.VOID,
    "DELETED": InvoiceStatus.DELETED,
}

JOURNAL_STATUSES = {
    "DRAFT": JournalStatus.DRAFT,
    "POSTED": JournalStatus.POSTED,
    "VOIDED": JournalStatus.VOIDED,
    "DELETED": JournalStatus.DELETED,
}


@dataclass
class MappingContext:
    tenant_id: str
    integration_id: str
    maps: LookupMaps
    provider: ProviderKind = ProviderKind.XERO


@dataclass
class MappingResult(Generic[R]):
    record: R
    warnings: list[str] = field(default_factory=list)


# =============================================================================
# Helpers
# =============================================================================


def compute_dedup_key(*parts: Any) -> str:
    """Deterministic sha256 over stable record fields."""
    joined = "|".join("" if part is None else str(part).strip() for part in parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def external_dedup_key(provider: ProviderKind, external_id: str) -> str:
    return f"{provider.value}:{external_id}"


def _required(raw: dict, key: str, entity: str) -> Any:
    value = raw.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DataValidationError(f"{entity} is missing required field {key}", context={"field": key})
    return value


def _amount(value: Any, field_name: str) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise DataValidationError(
            f"Invalid amount for {field_name}: {value!r}", context={"field": field_name}
        ) from e


def _date(raw: dict, key: str):
    """Prefer the ISO `<key>String` variant Xero sends alongside /Date()/ values."""
    value = raw.get(f"{key}String") or raw.get(key)
    try:
        return parse_xero_date(value)
    except ValueError as e:
        raise DataValidationError(f"Invalid date for {key}: {value!r}", context={"field": key}) from e


def _line_items(
    raw_lines: Iterable[dict],
    maps: LookupMaps,
    warnings: list[str],
    owner: str,
) -> list[InvoiceLine]:
    lines = []
    for index, line in enumerate(raw_lines or []):
        code = line.get("AccountCode")
        account_id = EntityLookupService.find_account_id(maps, code=code) if code else None
        if code and account_id is None:
            warnings.append(f"{owner} line {index + 1}: account code {code} not found")
        lines.append(
            InvoiceLine(
                description=line.get("Description"),
                quantity=_amount(line.get("Quantity", 1), "Quantity"),
                unit_amount=_amount(line.get("UnitAmount"), "UnitAmount"),
                line_amount=_amount(line.get("LineAmount"), "LineAmount"),
                tax_amount=_amount(line.get("TaxAmount"), "TaxAmount"),
                account_code=code,
                account_id=account_id,
            )
        )
    return lines


# =============================================================================
# Accounts
# =============================================================================


def generate_account_code(account_type: str, name: str) -> str:
    """Build a code from type and name: alphanumerics and hyphens, max 50 chars."""
    raw = f"{account_type}-{name}".upper().replace(" ", "-")
    cleaned = "".join(ch for ch in raw if ch.isalnum() or ch == "-")
    return cleaned[:50]


def sort_accounts(raw_accounts: list[dict]) -> list[dict]:
    """System accounts first, then by account class order."""

    def key(raw: dict) -> tuple[int, int]:
        if not isinstance(raw, dict):
            return (2, len(ACCOUNT_CLASS_ORDER))
        account_class = ACCOUNT_TYPE_CLASSES.get(str(raw.get("Type", "")).upper())
        class_rank = ACCOUNT_CLASS_ORDER.index(account_class) if account_class else len(ACCOUNT_CLASS_ORDER)
        return (0 if raw.get("SystemAccount") else 1, class_rank)

    return sorted(raw_accounts, key=key)


def map_account(raw: dict, ctx: MappingContext) -> MappingResult[Account]:
    external_id = _required(raw, "AccountID", "Account")
    name = _required(raw, "Name", "Account")
    account_type = str(raw.get("Type") or "").upper()
    warnings: list[str] = []

    account_class = ACCOUNT_TYPE_CLASSES.get(account_type)
    if account_class is None:
        provider_class = str(raw.get("Class") or "").upper()
        if provider_class not in AccountClass.__members__:
            raise DataValidationError(
                f"Account {external_id} has unknown type {account_type!r}",
                context={"field": "Type"},
            )
        account_class = AccountClass(provider_class)
        warnings.append(f"Account {name}: unknown type {account_type!r}, using class {provider_class}")

    code = raw.get("Code")
    if not code:
        code = generate_account_code(account_type or account_class.value, name)
        warnings.append(f"Account {name}: missing code, generated {code}")

    account = Account(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=external_id,
        dedup_key=external_dedup_key(ctx.provider, external_id),
        code=str(code),
        name=name,
        account_class=account_class,
        account_type=account_type,
        description=raw.get("Description"),
        is_bank_account=account_type == "BANK",
        is_active=str(raw.get("Status", "ACTIVE")).upper() == "ACTIVE",
        is_system_account=bool(raw.get("SystemAccount")),
        currency=raw.get("CurrencyCode"),
        tax_type=raw.get("TaxType"),
        bank_account_number=raw.get("BankAccountNumber"),
    )
    return MappingResult(account, warnings)


# =============================================================================
# Suppliers
# =============================================================================


def _phones(raw_phones: Iterable[dict]) -> list[str]:
    phones = []
    for phone in raw_phones or []:
        number = phone.get("PhoneNumber")
        if not number:
            continue
        prefix = "".join(
            part for part in (phone.get("PhoneCountryCode"), phone.get("PhoneAreaCode")) if part
        )
        phones.append(f"{prefix} {number}".strip())
    return phones


def _addresses(raw_addresses: Iterable[dict]) -> list[dict]:
    keys = {
        "AddressLine1": "line1",
        "AddressLine2": "line2",
        "City": "city",
        "Region": "region",
        "PostalCode": "postal_code",
        "Country": "country",
    }
    addresses = []
    for address in raw_addresses or []:
        mapped = {local: address[remote] for remote, local in keys.items() if address.get(remote)}
        if mapped:
            mapped["type"] = str(address.get("AddressType", "")).lower() or None
            addresses.append(mapped)
    return addresses


def map_supplier(raw: dict, ctx: MappingContext) -> MappingResult[Supplier]:
    external_id = _required(raw, "ContactID", "Contact")
    warnings: list[str] = []

    name = raw.get("Name")
    if not name:
        name = " ".join(part for part in (raw.get("FirstName"), raw.get("LastName")) if part)
        if not name:
            raise DataValidationError(
                f"Contact {external_id} has no name", context={"field": "Name"}
            )
        warnings.append(f"Contact {external_id}: missing name, using person name")

    supplier = Supplier(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=external_id,
        dedup_key=external_dedup_key(ctx.provider, external_id),
        name=name,
        first_name=raw.get("FirstName"),
        last_name=raw.get("LastName"),
        email=raw.get("EmailAddress") or None,
        status=str(raw.get("ContactStatus", "ACTIVE")).lower(),
        is_supplier=bool(raw.get("IsSupplier", True)),
        is_customer=bool(raw.get("IsCustomer", False)),
        tax_number=raw.get("TaxNumber"),
        default_currency=raw.get("DefaultCurrency"),
        phones=_phones(raw.get("Phones")),
        addresses=_addresses(raw.get("Addresses")),
    )
    return MappingResult(supplier, warnings)


# =============================================================================
# Invoices
# =============================================================================


def map_invoice(raw: dict, ctx: MappingContext) -> MappingResult[Invoice]:
    external_id = _required(raw, "InvoiceID", "Invoice")
    provider_type = _required(raw, "Type", "Invoice")
    provider_status = str(raw.get("Status") or "DRAFT").upper()
    warnings: list[str] = []

    invoice_type = INVOICE_TYPES.get(provider_type)
    if invoice_type is None:
        raise DataValidationError(
            f"Invoice {external_id} has unsupported type {provider_type!r}", context={"field": "Type"}
        )
    status = INVOICE_STATUSES.get(provider_status)
    if status is None:
        raise DataValidationError(
            f"Invoice {external_id} has unknown status {provider_status!r}", context={"field": "Status"}
        )

    number = raw.get("InvoiceNumber") or None
    label = f"Invoice {number or external_id}"

    contact = raw.get("Contact") or {}
    supplier_id = EntityLookupService.find_supplier_id(
        ctx.maps, external_id=contact.get("ContactID"), display_name=contact.get("Name")
    )
    if contact and supplier_id is None:
        warnings.append(f"{label}: supplier {contact.get('Name') or contact.get('ContactID')} not found")

    invoice = Invoice(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=external_id,
        dedup_key=external_dedup_key(ctx.provider, external_id),
        invoice_number=number,
        invoice_type=invoice_type,
        status=status,
        supplier_id=supplier_id,
        contact_external_id=contact.get("ContactID"),
        contact_name=contact.get("Name"),
        issue_date=_date(raw, "Date"),
        due_date=_date(raw, "DueDate"),
        currency=raw.get("CurrencyCode"),
        subtotal=_amount(raw.get("SubTotal"), "SubTotal"),
        tax_total=_amount(raw.get("TotalTax"), "TotalTax"),
        total=_amount(raw.get("Total"), "Total"),
        amount_due=_amount(raw.get("AmountDue"), "AmountDue"),
        amount_paid=_amount(raw.get("AmountPaid"), "AmountPaid"),
        reference=raw.get("Reference"),
        lines=_line_items(raw.get("LineItems"), ctx.maps, warnings, label),
        provider_updated_at=_date(raw, "UpdatedDateUTC"),
    )
    return MappingResult(invoice, warnings)


# =============================================================================
# Bank transactions and statement lines
# =============================================================================


def _direction(raw: dict, total: float) -> TransactionDirection:
    provider_type = str(raw.get("Type") or "").upper()
    if provider_type.startswith("SPEND") or (not provider_type and total < 0):
        return TransactionDirection.DEBIT
    return TransactionDirection.CREDIT


def merchant_name(contact_name: Optional[str], reference: Optional[str]) -> Optional[str]:
    """Contact name, else the leading part of the reference before '*' or '#'."""
    if contact_name:
        return contact_name
    if reference:
        head = reference.replace("#", "*").split("*")[0].strip()
        return head or None
    return None


def map_bank_transaction(raw: dict, ctx: MappingContext) -> MappingResult[BankTransaction]:
    warnings: list[str] = []
    total = _amount(_required(raw, "Total", "BankTransaction"), "Total")
    transaction_date = _date(raw, "Date")
    if transaction_date is None:
        raise DataValidationError("BankTransaction is missing required field Date", context={"field": "Date"})

    bank_account = raw.get("BankAccount") or {}
    bank_account_id = EntityLookupService.find_account_id(
        ctx.maps, external_id=bank_account.get("AccountID"), code=bank_account.get("Code")
    )
    reference = raw.get("Reference") or None

    external_id = raw.get("BankTransactionID") or None
    if external_id:
        dedup_key = external_dedup_key(ctx.provider, external_id)
    else:
        dedup_key = compute_dedup_key(
            bank_account.get("AccountID"), transaction_date.date().isoformat(), f"{total:.2f}", reference
        )
        warnings.append("Bank transaction without provider id, deduplicated by content hash")

    label = f"Bank transaction {external_id or dedup_key[:12]}"
    if bank_account and bank_account_id is None:
        warnings.append(f"{label}: bank account {bank_account.get('Code') or bank_account.get('AccountID')} not found")

    contact = raw.get("Contact") or {}
    supplier_id = EntityLookupService.find_supplier_id(
        ctx.maps, external_id=contact.get("ContactID"), display_name=contact.get("Name")
    )
    if contact and supplier_id is None:
        warnings.append(f"{label}: contact {contact.get('Name') or contact.get('ContactID')} not found")

    direction = _direction(raw, total)
    matched_invoice_id = None
    if direction == TransactionDirection.DEBIT:
        matched_invoice_id = EntityLookupService.match_transaction_to_invoice(
            ctx.maps, supplier_id, total, transaction_date
        )

    transaction = BankTransaction(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=external_id,
        dedup_key=dedup_key,
        transaction_type=str(raw.get("Type") or "UNKNOWN").upper(),
        direction=direction,
        amount=abs(total),
        transaction_date=transaction_date,
        reference=reference,
        contact_name=contact.get("Name"),
        supplier_id=supplier_id,
        bank_account_id=bank_account_id,
        bank_account_external_id=bank_account.get("AccountID"),
        currency=raw.get("CurrencyCode"),
        status=raw.get("Status"),
        is_reconciled=bool(raw.get("IsReconciled", False)),
        matched_invoice_id=matched_invoice_id,
        lines=_line_items(raw.get("LineItems"), ctx.maps, warnings, label),
    )
    return MappingResult(transaction, warnings)


def map_bank_statement_line(
    raw: dict,
    ctx: MappingContext,
    bank_account: Account,
) -> MappingResult[BankStatementLine]:
    """
    Map a provider bank transaction to a statement line of a local bank account.

    The dedup key hashes account, date, signed amount and reference, so the
    same movement is recognised even if the provider id changes.
    """
    warnings: list[str] = []
    total = _amount(_required(raw, "Total", "BankTransaction"), "Total")
    transaction_date = _date(raw, "Date")
    if transaction_date is None:
        raise DataValidationError("BankTransaction is missing required field Date", context={"field": "Date"})

    direction = _direction(raw, total)
    signed = -abs(total) if direction == TransactionDirection.DEBIT else abs(total)
    reference = raw.get("Reference") or None
    contact = raw.get("Contact") or {}
    contact_name = contact.get("Name") or None
    merchant = merchant_name(contact_name, reference)

    supplier_id = EntityLookupService.find_supplier_id(
        ctx.maps, external_id=contact.get("ContactID"), display_name=merchant
    )
    if merchant and supplier_id is None:
        warnings.append(f"Statement line {reference or raw.get('BankTransactionID')}: no supplier for {merchant}")

    parts = [contact_name, reference]
    parts.extend(line.get("Description") for line in raw.get("LineItems") or [])
    description = " - ".join(part for part in parts if part) or "Bank Transaction"

    line = BankStatementLine(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=raw.get("BankTransactionID") or None,
        dedup_key=compute_dedup_key(
            bank_account.id, transaction_date.date().isoformat(), f"{signed:.2f}", reference
        ),
        bank_account_id=bank_account.id,
        bank_account_external_id=bank_account.external_id,
        transaction_date=transaction_date,
        amount=abs(total),
        direction=direction,
        description=description,
        reference=reference,
        merchant_name=merchant,
        supplier_id=supplier_id,
        currency=raw.get("CurrencyCode") or bank_account.currency,
        status=raw.get("Status"),
    )
    return MappingResult(line, warnings)


# =============================================================================
# Manual journals
# =============================================================================


def map_manual_journal(raw: dict, ctx: MappingContext) -> MappingResult[ManualJournal]:
    external_id = _required(raw, "ManualJournalID", "ManualJournal")
    provider_status = str(raw.get("Status") or "DRAFT").upper()
    warnings: list[str] = []

    status = JOURNAL_STATUSES.get(provider_status)
    if status is None:
        raise DataValidationError(
            f"Manual journal {external_id} has unknown status {provider_status!r}",
            context={"field": "Status"},
        )

    narration = raw.get("Narration")
    if not narration:
        narration = "Manual Journal"
        warnings.append(f"Manual journal {external_id}: missing narration")

    lines = []
    for index, raw_line in enumerate(raw.get("JournalLines") or []):
        amount = _amount(raw_line.get("LineAmount"), "LineAmount")
        code = raw_line.get("AccountCode")
        account_id = EntityLookupService.find_account_id(ctx.maps, code=code) if code else None
        if account_id is None:
            warnings.append(f"Manual journal {external_id} line {index + 1}: account {code} not found")
        lines.append(
            JournalLine(
                account_code=code,
                account_id=account_id,
                description=raw_line.get("Description"),
                debit=amount if amount >= 0 else 0.0,
                credit=-amount if amount < 0 else 0.0,
                tax_type=raw_line.get("TaxType"),
                tax_amount=_amount(raw_line.get("TaxAmount"), "TaxAmount"),
            )
        )

    journal = ManualJournal(
        tenant_id=ctx.tenant_id,
        integration_id=ctx.integration_id,
        source=ctx.provider,
        external_id=external_id,
        dedup_key=external_dedup_key(ctx.provider, external_id),
        narration=narration,
        journal_date=_date(raw, "Date"),
        status=status,
        lines=lines,
        total_debit=round(sum(line.debit for line in lines), 2),
        total_credit=round(sum(line.credit for line in lines), 2),
        provider_updated_at=_date(raw, "UpdatedDateUTC"),
    )
    if not journal.is_balanced:
        warnings.append(
            f"Manual journal {external_id} is unbalanced: "
            f"debits {journal.total_debit} vs credits {journal.total_credit}"
        )
    return MappingResult(journal, warnings)
