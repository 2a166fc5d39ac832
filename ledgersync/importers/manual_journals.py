"""Manual journals importer."""

from typing import Any, AsyncIterator

from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_manual_journal
from ledgersync.jobs.payloads import ImportManualJournalsJob
from ledgersync.models.enums import EntityKind
from ledgersync.services.entity_lookup import LookupMaps


class ManualJournalsImporter(BaseImporter):
    entity = EntityKind.JOURNALS
    external_id_field = "ManualJournalID"

    async def fetch_pages(
        self, job: ImportManualJournalsJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        async def fetch_page(token: str, tenant: str, page: int, page_size: int):
            return await self.xero.get_manual_journals(
                token, tenant, page, page_size, modified_since=job.modified_since
            )

        async for page in self.provider_client.iter_pages(fetch_page, job.integration_id, self.entity.value):
            yield page

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        return map_manual_journal(raw, ctx)
