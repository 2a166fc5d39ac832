"""
Abstract storage interface for the accounting sync engine.

This module defines the persistence contract the sync engine consumes. All
operations are tenant-scoped where the data is tenant-owned, and the ledger
record operations support bulk insert/update of N rows in one call.

Tables behind the contract:
- integrations: provider connections and their token state
- sync_jobs: sync requests and their fan-out state
- import_batches: one row per entity importer execution
- ledger_records: imported records, unique per (tenant, entity kind, dedup key)
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

from ledgersync.models.enums import EntityKind, SyncJobStatus
from ledgersync.models.import_batch import ImportBatch
from ledgersync.models.integration import Integration
from ledgersync.models.records import LedgerRecord
from ledgersync.models.sync_job import SyncJob


class StorageBackend(ABC):
    """
    Abstract base class for all storage implementations.

    Storage implementations should ensure:
    - Thread safety for concurrent access
    - Uniqueness of (tenant_id, entity kind, dedup_key) for ledger records
    - Comprehensive error handling with structured logging
    """

    # =========================================================================
    # Integrations
    # =========================================================================

    @abstractmethod
    def get_integration(self, integration_id: str) -> Optional[Integration]:
        """
        Read an integration by id.

        Args:
            integration_id: Integration identifier

        Returns:
            Integration, or None if it does not exist

        Raises:
            StorageError: If read operation fails
        """
        pass

    @abstractmethod
    def save_integration(self, integration: Integration) -> None:
        """
        Insert or replace an integration.

        Args:
            integration: Integration to persist

        Raises:
            StorageError: If write operation fails
        """
        pass

    # =========================================================================
    # Sync jobs
    # =========================================================================

    @abstractmethod
    def create_sync_job(self, job: SyncJob) -> str:
        """
        Insert a new sync job.

        Args:
            job: Sync job to persist

        Returns:
            Sync job id

        Raises:
            StorageError: If the job already exists or the write fails
        """
        pass

    @abstractmethod
    def update_sync_job(self, job: SyncJob) -> None:
        """
        Replace the stored state of an existing sync job.

        Raises:
            StorageError: If write operation fails
        """
        pass

    @abstractmethod
    def get_sync_job(self, sync_job_id: str) -> Optional[SyncJob]:
        """Read a sync job by id, None if it does not exist."""
        pass

    @abstractmethod
    def list_sync_jobs(
        self,
        tenant_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        statuses: Optional[Sequence[SyncJobStatus]] = None,
        limit: int = 100,
    ) -> list[SyncJob]:
        """
        List sync jobs, newest first.

        Args:
            tenant_id: Restrict to one tenant
            integration_id: Restrict to one integration
            statuses: Restrict to these statuses
            limit: Maximum number of jobs returned

        Returns:
            Matching sync jobs ordered by creation time descending

        Raises:
            StorageError: If read operation fails
        """
        pass

    # =========================================================================
    # Import batches
    # =========================================================================

    @abstractmethod
    def create_import_batch(self, batch: ImportBatch) -> str:
        """Insert a new import batch and return its id."""
        pass

    @abstractmethod
    def update_import_batch(self, batch: ImportBatch) -> None:
        """Replace the stored state of an existing import batch."""
        pass

    @abstractmethod
    def get_import_batch(self, batch_id: str) -> Optional[ImportBatch]:
        """Read an import batch by id, None if it does not exist."""
        pass

    @abstractmethod
    def list_import_batches(
        self,
        tenant_id: Optional[str] = None,
        sync_job_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ImportBatch]:
        """List import batches, oldest first."""
        pass

    # =========================================================================
    # Ledger records
    # =========================================================================

    @abstractmethod
    def find_records(
        self,
        tenant_id: str,
        entity: EntityKind,
        external_ids: Optional[Sequence[str]] = None,
        dedup_keys: Optional[Sequence[str]] = None,
        natural_keys: Optional[Sequence[str]] = None,
    ) -> list[LedgerRecord]:
        """
        Find records of one entity kind matching any of the given identifiers.

        Only the identifiers passed are considered; a record matches when its
        external id, dedup key or natural key is in the corresponding list.
        Used by importers to load the existing set for one fetched chunk.

        Args:
            tenant_id: Tenant scope
            entity: Entity kind
            external_ids: Provider-native ids
            dedup_keys: Dedup keys
            natural_keys: Business keys (account code, invoice number)

        Returns:
            Matching records (possibly empty)

        Raises:
            StorageError: If read operation fails
        """
        pass

    @abstractmethod
    def list_records(
        self,
        tenant_id: str,
        entity: EntityKind,
        limit: Optional[int] = None,
    ) -> list[LedgerRecord]:
        """List all records of one entity kind for a tenant."""
        pass

    @abstractmethod
    def insert_records(self, records: Sequence[LedgerRecord]) -> int:
        """
        Bulk insert new records.

        Records whose (tenant, entity kind, dedup key) already exists are not
        inserted; this makes retried chunks idempotent.

        Args:
            records: Records to insert

        Returns:
            Number of rows actually inserted

        Raises:
            StorageError: If write operation fails
        """
        pass

    @abstractmethod
    def update_records(self, records: Sequence[LedgerRecord]) -> int:
        """
        Bulk update existing records by local id.

        Returns:
            Number of rows updated

        Raises:
            StorageError: If write operation fails
        """
        pass

    @abstractmethod
    def count_records(self, tenant_id: str, entity: EntityKind) -> int:
        """Count records of one entity kind for a tenant."""
        pass
