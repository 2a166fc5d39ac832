"""Chart of accounts importer."""

from typing import Any, AsyncIterator

from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_account, sort_accounts
from ledgersync.jobs.payloads import ImportAccountsJob
from ledgersync.models.enums import EntityKind
from ledgersync.services.entity_lookup import LookupMaps


class AccountsImporter(BaseImporter):
    """
    Imports the chart of accounts with upsert semantics.

    Xero returns the whole chart in one response, so there is a single page.
    Existing accounts are matched by provider id, then by account code.
    """

    entity = EntityKind.ACCOUNTS
    match_by_natural_key = True
    external_id_field = "AccountID"

    async def fetch_pages(
        self, job: ImportAccountsJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        accounts = await self.provider_client.execute_api_call(
            lambda token, tenant: self.xero.get_accounts(
                token, tenant, modified_since=job.modified_since
            ),
            job.integration_id,
        )
        if not job.include_archived:
            accounts = [
                a
                for a in accounts
                if not isinstance(a, dict) or str(a.get("Status", "ACTIVE")).upper() != "ARCHIVED"
            ]
        yield sort_accounts(accounts)

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        return map_account(raw, ctx)
