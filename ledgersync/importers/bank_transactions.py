"""Bank transactions importer."""

from datetime import date
from typing import Any, AsyncIterator, Optional, Sequence

from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_bank_transaction
from ledgersync.jobs.payloads import ImportBankTransactionsJob
from ledgersync.models.enums import EntityKind
from ledgersync.services.entity_lookup import LookupMaps


def build_bank_where(
    account_ids: Optional[Sequence[str]] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> Optional[str]:
    """Build a Xero `where` filter for bank transaction queries."""
    conditions = []
    if account_ids:
        accounts = " OR ".join(f'BankAccount.AccountID==Guid("{account_id}")' for account_id in account_ids)
        conditions.append(f"({accounts})")
    if date_from:
        conditions.append(f"Date >= DateTime({date_from.year}, {date_from.month}, {date_from.day})")
    if date_to:
        conditions.append(f"Date <= DateTime({date_to.year}, {date_to.month}, {date_to.day})")
    return " AND ".join(conditions) or None


class BankTransactionsImporter(BaseImporter):
    """
    Imports bank transactions as append-only ledger facts.

    A transaction already stored is skipped, never updated. Spend
    transactions are matched to the single approved or paid bill they settle.
    """

    entity = EntityKind.TRANSACTIONS
    upsert = False
    needs_invoice_candidates = True
    external_id_field = "BankTransactionID"

    async def fetch_pages(
        self, job: ImportBankTransactionsJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        where = build_bank_where(job.account_ids, job.date_from, job.date_to)

        async def fetch_page(token: str, tenant: str, page: int, page_size: int):
            return await self.xero.get_bank_transactions(
                token,
                tenant,
                page,
                page_size,
                modified_since=job.modified_since,
                where=where,
            )

        async for page in self.provider_client.iter_pages(fetch_page, job.integration_id, self.entity.value):
            yield page

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        return map_bank_transaction(raw, ctx)
