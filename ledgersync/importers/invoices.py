"""Invoices and bills importer."""

from typing import Any, AsyncIterator

from ledgersync.importers.base import BaseImporter
from ledgersync.importers.mappers import MappingContext, MappingResult, map_invoice
from ledgersync.jobs.payloads import ImportInvoicesJob
from ledgersync.models.enums import EntityKind
from ledgersync.services.entity_lookup import LookupMaps


class InvoicesImporter(BaseImporter):
    """
    Imports invoices with upsert semantics.

    Documents change status over time (draft, approved, paid), so a stored
    invoice matched by provider id or invoice number is updated in place.
    Each requested invoice type is paged separately.
    """

    entity = EntityKind.INVOICES
    match_by_natural_key = True
    external_id_field = "InvoiceID"

    async def fetch_pages(
        self, job: ImportInvoicesJob, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        for invoice_type in job.invoice_types:
            where = f'Type=="{invoice_type}"'

            async def fetch_page(token: str, tenant: str, page: int, page_size: int, where=where):
                return await self.xero.get_invoices(
                    token,
                    tenant,
                    page,
                    page_size,
                    modified_since=job.modified_since,
                    where=where,
                    statuses=job.statuses or None,
                )

            async for page in self.provider_client.iter_pages(
                fetch_page, job.integration_id, f"{self.entity.value}:{invoice_type}"
            ):
                yield page

    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        return map_invoice(raw, ctx)
