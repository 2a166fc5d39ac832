"""Contacts importer (suppliers and customers)."""

from typing import Any, AsyncIterator

from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_supplier
from ledgersync.jobs.payloads import ImportSuppliersJob
from ledgersync.models.enums import EntityKind
from ledgersync.services.entity_lookup import LookupMaps


class SuppliersImporter(BaseImporter):
    entity = EntityKind.SUPPLIERS
    external_id_field = "ContactID"

    async def fetch_pages(
        self, job: ImportSuppliersJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        async def fetch_page(token: str, tenant: str, page: int, page_size: int):
            return await self.xero.get_contacts(
                token,
                tenant,
                page,
                page_size,
                modified_since=job.modified_since,
                include_archived=job.include_archived,
            )

        async for page in self.provider_client.iter_pages(fetch_page, job.integration_id, self.entity.value):
            yield page

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        return map_supplier(raw, ctx)
