"""
Shared fetch / dedup / upsert pipeline for entity importers.

An importer run:
1. creates an ImportBatch in `processing` state
2. builds lookup maps once for the run
3. streams pages from the provider through the rate-limited client
4. maps each record; a mapping failure is recorded against that record only
5. loads the existing local records for the chunk in one query and decides
   per record: create, update (upsertable kinds only) or skip
6. writes creates and updates in bulk, reports progress, checks cancellation
7. finalizes the batch exactly once
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, ClassVar, Optional, Sequence

import structlog
from pydantic import ValidationError

from ledgersync.config import Settings
from ledgersync.connectors.provider_client import ProviderClient
from ledgersync.connectors.xero_client import XeroClient
from ledgersync.errors import DataValidationError
from ledgersync.importers.mappers import MappingContext, MappingResult
from ledgersync.jobs.payloads import ImportJobPayload
from ledgersync.models.enums import EntityKind, ImportBatchStatus
from ledgersync.models.import_batch import ImportBatch, ImportSummary, RecordError
from ledgersync.models.records import LedgerRecord
from ledgersync.services.batch_tracker import ImportBatchTracker
from ledgersync.services.entity_lookup import EntityLookupService, LookupMaps
from ledgersync.storage.base import StorageBackend
from ledgersync.utils.dates import utc_now

logger = structlog.get_logger()

CancelCheck = Callable[[], bool]

# Bookkeeping fields kept from the stored row when an incoming record updates it
_PRESERVED_ON_UPDATE = ("id", "dedup_key", "created_at")


def chunked(items: Sequence[Any], size: int) -> list[Sequence[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


@dataclass
class _RunState:
    batch: ImportBatch
    summary: ImportSummary = field(default_factory=ImportSummary)
    seen: set[str] = field(default_factory=set)
    position: int = 0


class BaseImporter(ABC):
    """
    Base class for entity importers.

    Subclasses declare their entity kind and provide page fetching and
    record mapping; the pipeline itself lives here.

    Class attributes:
        entity: Entity kind imported
        upsert: Update matched records (False = create-only, matches are skipped)
        match_by_natural_key: Also match existing records by business key
        needs_invoice_candidates: Build invoice candidates into the lookup maps
    """

    entity: ClassVar[EntityKind]
    upsert: ClassVar[bool] = True
    match_by_natural_key: ClassVar[bool] = False
    needs_invoice_candidates: ClassVar[bool] = False
    external_id_field: ClassVar[str] = ""

    def __init__(
        self,
        provider_client: ProviderClient,
        xero: XeroClient,
        lookup: EntityLookupService,
        tracker: ImportBatchTracker,
        storage: StorageBackend,
        settings: Settings,
    ):
        self.provider_client = provider_client
        self.xero = xero
        self.lookup = lookup
        self.tracker = tracker
        self.storage = storage
        self.chunk_size = settings.import_chunk_size

    @abstractmethod
    def fetch_pages(
        self, job: ImportJobPayload, maps: LookupMaps
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield pages of raw provider records."""

    @abstractmethod
    def map_record(self, raw: dict[str, Any], ctx: MappingContext) -> MappingResult:
        """Map one raw record; raise DataValidationError for malformed input."""

    def record_ref(self, raw: Any, position: int) -> str:
        if isinstance(raw, dict) and self.external_id_field and raw.get(self.external_id_field):
            return str(raw[self.external_id_field])
        return f"record #{position}"

    async def run(
        self,
        job: ImportJobPayload,
        should_cancel: Optional[CancelCheck] = None,
    ) -> ImportBatch:
        """
        Import one entity kind for an integration.

        Args:
            job: Validated import job payload
            should_cancel: Polled between pages and chunks; True stops the run

        Returns:
            The finalized ImportBatch

        Raises:
            SyncError: When the run cannot proceed (auth, provider, storage);
                the batch is finalized as failed before the error propagates
        """
        batch = self.tracker.create(
            tenant_id=job.tenant_id,
            integration_id=job.integration_id,
            batch_type=self.entity,
            sync_job_id=job.sync_job_id,
        )
        state = _RunState(batch=batch)
        log = logger.bind(
            entity=self.entity.value,
            integration_id=job.integration_id,
            sync_job_id=job.sync_job_id,
            batch_id=batch.id,
        )
        log.info("import_started")

        try:
            maps = self.lookup.build_lookup_maps(
                job.tenant_id, include_invoices=self.needs_invoice_candidates
            )
            ctx = MappingContext(
                tenant_id=job.tenant_id,
                integration_id=job.integration_id,
                maps=maps,
            )
            async for page in self.fetch_pages(job, maps):
                state.summary.total_fetched += len(page)
                for chunk in chunked(page, self.chunk_size):
                    if should_cancel is not None and should_cancel():
                        return self._finish_cancelled(state, log)
                    self._process_chunk(chunk, ctx, state)
                    self.tracker.update_progress(
                        batch.id,
                        processed_count=state.summary.succeeded,
                        failed_count=state.summary.error_count,
                        duplicate_count=state.summary.skipped,
                        total_count=state.summary.total_fetched,
                    )
                if should_cancel is not None and should_cancel():
                    return self._finish_cancelled(state, log)
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            log.error("import_failed", error=message, error_type=type(e).__name__)
            self.tracker.finalize(
                batch.id, ImportBatchStatus.FAILED, state.summary, error_message=message
            )
            raise

        status = (
            ImportBatchStatus.COMPLETED_WITH_ERRORS
            if state.summary.errors
            else ImportBatchStatus.COMPLETED
        )
        finalized = self.tracker.finalize(batch.id, status, state.summary)
        log.info(
            "import_completed",
            status=status.value,
            fetched=state.summary.total_fetched,
            created=state.summary.created,
            updated=state.summary.updated,
            skipped=state.summary.skipped,
            errors=state.summary.error_count,
            warnings=len(state.summary.warnings),
        )
        return finalized

    def _finish_cancelled(self, state: _RunState, log) -> ImportBatch:
        log.info(
            "import_cancelled",
            fetched=state.summary.total_fetched,
            processed=state.summary.succeeded,
        )
        return self.tracker.finalize(
            state.batch.id,
            ImportBatchStatus.CANCELLED,
            state.summary,
            error_message="Sync job cancelled",
        )

    # =========================================================================
    # Chunk processing
    # =========================================================================

    def _process_chunk(
        self,
        chunk: Sequence[dict[str, Any]],
        ctx: MappingContext,
        state: _RunState,
    ) -> None:
        summary = state.summary
        mapped: list[LedgerRecord] = []

        for raw in chunk:
            state.position += 1
            ref = f"record #{state.position}"
            try:
                ref = self.record_ref(raw, state.position)
                if not isinstance(raw, dict):
                    raise DataValidationError(f"Expected an object, got {type(raw).__name__}")
                result = self.map_record(raw, ctx)
            except DataValidationError as e:
                summary.errors.append(RecordError(record_ref=ref, message=e.message))
                logger.warning("import_record_invalid", entity=self.entity.value, record=ref, error=e.message)
                continue
            except ValidationError as e:
                summary.errors.append(RecordError(record_ref=ref, message=str(e)))
                logger.warning("import_record_invalid", entity=self.entity.value, record=ref, error=str(e))
                continue
            except Exception as e:
                # Malformed nested structure; the rest of the chunk still imports
                message = f"{type(e).__name__}: {e}"
                summary.errors.append(RecordError(record_ref=ref, message=message))
                logger.error(
                    "import_record_failed",
                    entity=self.entity.value,
                    record=ref,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            summary.warnings.extend(result.warnings)
            mapped.append(result.record)

        if not mapped:
            return

        existing = self.storage.find_records(
            ctx.tenant_id,
            self.entity,
            external_ids=[r.external_id for r in mapped if r.external_id],
            dedup_keys=[r.dedup_key for r in mapped],
            natural_keys=(
                [r.natural_key for r in mapped if r.natural_key]
                if self.match_by_natural_key
                else None
            ),
        )
        by_external = {r.external_id: r for r in existing if r.external_id}
        by_dedup = {r.dedup_key: r for r in existing}
        by_natural = (
            {r.natural_key: r for r in existing if r.natural_key}
            if self.match_by_natural_key
            else {}
        )

        to_insert: list[LedgerRecord] = []
        to_update: list[LedgerRecord] = []
        for record in mapped:
            if record.dedup_key in state.seen:
                summary.skipped += 1
                continue
            state.seen.add(record.dedup_key)

            match = self._find_match(record, by_external, by_dedup, by_natural)
            if match is None:
                to_insert.append(record)
            elif not self.upsert or record.content_equals(match):
                summary.skipped += 1
            else:
                to_update.append(self._merge(record, match))

        if to_insert:
            inserted = self.storage.insert_records(to_insert)
            summary.created += inserted
            # Rows lost to a concurrent insert of the same dedup key
            summary.skipped += len(to_insert) - inserted
        if to_update:
            summary.updated += self.storage.update_records(to_update)

    def _find_match(
        self,
        record: LedgerRecord,
        by_external: dict[str, LedgerRecord],
        by_dedup: dict[str, LedgerRecord],
        by_natural: dict[str, LedgerRecord],
    ) -> Optional[LedgerRecord]:
        if record.external_id and record.external_id in by_external:
            return by_external[record.external_id]
        if record.dedup_key in by_dedup:
            return by_dedup[record.dedup_key]
        if record.natural_key and record.natural_key in by_natural:
            return by_natural[record.natural_key]
        return None

    @staticmethod
    def _merge(record: LedgerRecord, existing: LedgerRecord) -> LedgerRecord:
        now = utc_now()
        update = {name: getattr(existing, name) for name in _PRESERVED_ON_UPDATE}
        update.update(updated_at=now, last_synced_at=now)
        return record.model_copy(update=update)
