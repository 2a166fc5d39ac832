"""
Entity importers.

One importer per entity kind, all running the shared pipeline in
ledgersync.importers.base.
"""

from ledgersync.importers.accounts import AccountsImporter
from ledgersync.importers.bank_statements import BankStatementsImporter
from ledgersync.importers.bank_transactions import BankTransactionsImporter
from ledgersync.importers.base import BaseImporter
from ledgersync.importers.invoices import InvoicesImporter
from ledgersync.importers.manual_journals import ManualJournalsImporter
from ledgersync.importers.suppliers import SuppliersImporter
from ledgersync.models.enums import EntityKind

IMPORTER_CLASSES: dict[EntityKind, type[BaseImporter]] = {
    EntityKind.ACCOUNTS: AccountsImporter,
    EntityKind.SUPPLIERS: SuppliersImporter,
    EntityKind.INVOICES: InvoicesImporter,
    EntityKind.TRANSACTIONS: BankTransactionsImporter,
    EntityKind.BANK_STATEMENTS: BankStatementsImporter,
    EntityKind.JOURNALS: ManualJournalsImporter,
}

__all__ = [
    "IMPORTER_CLASSES",
    "AccountsImporter",
    "BankStatementsImporter",
    "BankTransactionsImporter",
    "BaseImporter",
    "InvoicesImporter",
    "ManualJournalsImporter",
    "SuppliersImporter",
]
