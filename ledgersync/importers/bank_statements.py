"""Bank statement lines importer."""

from typing import Any, AsyncIterator

import structlog

from ledgersync.importers.bank_transactions import build_bank_where
from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_bank_statement_line
from ledgersync.jobs.payloads import ImportBankStatementsJob
from ledgersync.models.enums import EntityKind
from ledgersync.models.records import Account
from ledgersync.services.entity_lookup import LookupMaps

logger = structlog.get_logger()

# Key carrying the local bank account alongside each raw record
_BANK_ACCOUNT_KEY = "__bank_account"


class BankStatementsImporter(BaseImporter):
    """
    Imports statement lines for every local bank account.

    Lines are create-only and always deduplicated by a content hash of
    account, date, signed amount and reference.
    """

    entity = EntityKind.BANK_STATEMENTS
    upsert = False
    external_id_field = "BankTransactionID"

    def _bank_accounts(self, job: ImportBankStatementsJob, maps: LookupMaps) -> list[Account]:
        accounts = [a for a in maps.bank_accounts.values() if a.external_id]
        if job.account_ids:
            wanted = set(job.account_ids)
            accounts = [a for a in accounts if a.external_id in wanted]
        return accounts

    async def fetch_pages(
        self, job: ImportBankStatementsJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        bank_accounts = self._bank_accounts(job, maps)
        if not bank_accounts:
            logger.warning(
                "no_bank_accounts_to_import",
                integration_id=job.integration_id,
                tenant_id=job.tenant_id,
            )
            return

        for account in bank_accounts:
            where = build_bank_where([account.external_id], job.date_from, job.date_to)

            async def fetch_page(token: str, tenant: str, page: int, page_size: int, where=where):
                return await self.xero.get_bank_transactions(
                    token,
                    tenant,
                    page,
                    page_size,
                    modified_since=job.modified_since,
                    where=where,
                )

            async for page in self.provider_client.iter_pages(
                fetch_page, job.integration_id, f"{self.entity.value}:{account.code}"
            ):
                yield [
                    {**raw, _BANK_ACCOUNT_KEY: account} if isinstance(raw, dict) else raw for raw in page
                ]

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        account = raw[_BANK_ACCOUNT_KEY]
        return map_bank_statement_line(raw, ctx, account)
