"""
Cross-entity lookup and reconciliation for importers.

Importers resolve foreign references (supplier of an invoice, account of a
line item, bank account of a statement line) against maps built once per
importer run from the tenant's current data. Resolution is best-effort: a
miss returns None and the caller imports the record with the reference left
empty, logging a data-quality warning.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import structlog

from ledgersync.models.enums import EntityKind, InvoiceStatus, ProviderKind
from ledgersync.models.records import Account
from ledgersync.storage.base import StorageBackend
from ledgersync.utils.dates import ensure_utc

logger = structlog.get_logger()

_NON_ALNUM = re.compile(r"[^a-z0-9]")

# Invoice states a bank payment can settle
MATCHABLE_INVOICE_STATUSES = frozenset({InvoiceStatus.APPROVED, InvoiceStatus.PAID})
MATCH_DATE_TOLERANCE = timedelta(days=3)


def normalize_name(name: Optional[str]) -> str:
    """Lowercase and strip every non-alphanumeric character."""
    if not name:
        return ""
    return _NON_ALNUM.sub("", name.lower())


@dataclass
class InvoiceCandidate:
    invoice_id: str
    supplier_id: Optional[str]
    total: float
    issue_date: Optional[datetime]
    status: InvoiceStatus


@dataclass
class LookupMaps:
    """
    Read-only indices over one tenant's data for one importer run.

    Never persisted; discarded when the importer finishes.
    """

    tenant_id: str
    provider: ProviderKind
    accounts_by_external_id: dict[str, str] = field(default_factory=dict)
    accounts_by_code: dict[str, str] = field(default_factory=dict)
    accounts_by_name: dict[str, str] = field(default_factory=dict)
    bank_accounts: dict[str, Account] = field(default_factory=dict)
    suppliers_by_external_id: dict[str, str] = field(default_factory=dict)
    suppliers_by_name: dict[str, str] = field(default_factory=dict)
    suppliers_by_normalized_name: dict[str, str] = field(default_factory=dict)
    invoice_candidates: list[InvoiceCandidate] = field(default_factory=list)


class EntityLookupService:
    """Builds LookupMaps and resolves references against them."""

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def build_lookup_maps(
        self,
        tenant_id: str,
        provider: ProviderKind = ProviderKind.XERO,
        include_invoices: bool = False,
    ) -> LookupMaps:
        """
        Build all lookup maps for a tenant in one pass per entity kind.

        Args:
            tenant_id: Tenant scope
            provider: Only external ids from this provider are indexed
            include_invoices: Also index invoices (needed for payment matching)

        Returns:
            LookupMaps for this importer run
        """
        maps = LookupMaps(tenant_id=tenant_id, provider=provider)

        for account in self.storage.list_records(tenant_id, EntityKind.ACCOUNTS):
            if account.external_id and account.source == provider:
                maps.accounts_by_external_id[account.external_id] = account.id
            maps.accounts_by_code[account.code] = account.id
            maps.accounts_by_name.setdefault(account.name.lower(), account.id)
            if account.is_bank_account:
                maps.bank_accounts[account.id] = account

        for supplier in self.storage.list_records(tenant_id, EntityKind.SUPPLIERS):
            if supplier.external_id and supplier.source == provider:
                maps.suppliers_by_external_id[supplier.external_id] = supplier.id
            maps.suppliers_by_name.setdefault(supplier.name.lower(), supplier.id)
            normalized = normalize_name(supplier.name)
            if normalized:
                maps.suppliers_by_normalized_name.setdefault(normalized, supplier.id)

        if include_invoices:
            for invoice in self.storage.list_records(tenant_id, EntityKind.INVOICES):
                maps.invoice_candidates.append(
                    InvoiceCandidate(
                        invoice_id=invoice.id,
                        supplier_id=invoice.supplier_id,
                        total=invoice.total,
                        issue_date=invoice.issue_date,
                        status=invoice.status,
                    )
                )

        logger.debug(
            "lookup_maps_built",
            tenant_id=tenant_id,
            accounts=len(maps.accounts_by_code),
            suppliers=len(maps.suppliers_by_external_id),
            invoices=len(maps.invoice_candidates),
        )
        return maps

    @staticmethod
    def find_account_id(
        maps: LookupMaps,
        external_id: Optional[str] = None,
        code: Optional[str] = None,
        name: Optional[str] = None,
    ) -> Optional[str]:
        """Resolve an account by external id, then code, then name."""
        if external_id and external_id in maps.accounts_by_external_id:
            return maps.accounts_by_external_id[external_id]
        if code and code in maps.accounts_by_code:
            return maps.accounts_by_code[code]
        if name:
            return maps.accounts_by_name.get(name.lower())
        return None

    @staticmethod
    def find_supplier_id(
        maps: LookupMaps,
        external_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Optional[str]:
        """
        Resolve a supplier by exact external id, then by name.

        Name matching tries the lowercased name first and the normalized
        (alphanumerics only) name second.

        Returns:
            Local supplier id, or None when nothing matches
        """
        if external_id and external_id in maps.suppliers_by_external_id:
            return maps.suppliers_by_external_id[external_id]
        if display_name:
            by_name = maps.suppliers_by_name.get(display_name.lower())
            if by_name:
                return by_name
            normalized = normalize_name(display_name)
            if normalized:
                return maps.suppliers_by_normalized_name.get(normalized)
        return None

    @staticmethod
    def match_transaction_to_invoice(
        maps: LookupMaps,
        supplier_id: Optional[str],
        amount: float,
        transaction_date: datetime,
    ) -> Optional[str]:
        """
        Find the single invoice a bank payment settles.

        A candidate has the same supplier, a total equal to the absolute
        amount, an issue date within three days, and is approved or paid.
        Ambiguous matches resolve to None.
        """
        if not supplier_id:
            return None
        target = round(abs(amount), 2)
        when = ensure_utc(transaction_date)
        matches = [
            candidate.invoice_id
            for candidate in maps.invoice_candidates
            if candidate.supplier_id == supplier_id
            and candidate.status in MATCHABLE_INVOICE_STATUSES
            and round(candidate.total, 2) == target
            and candidate.issue_date is not None
            and abs(ensure_utc(candidate.issue_date) - when) <= MATCH_DATE_TOLERANCE
        ]
        return matches[0] if len(matches) == 1 else None
