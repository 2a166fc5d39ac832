"""
DuckDB storage implementation for the accounting sync engine.

Key features:
- Thread-safe access with per-thread connections
- Automatic schema creation on first use
- Pydantic models persisted as JSON documents next to indexed key columns
- Database-enforced uniqueness of (tenant_id, entity_type, dedup_key)
"""

import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence

import duckdb
import structlog

from ledgersync.errors import StorageError
from ledgersync.models.enums import EntityKind, SyncJobStatus
from ledgersync.models.import_batch import ImportBatch
from ledgersync.models.integration import Integration
from ledgersync.models.records import RECORD_MODELS, LedgerRecord
from ledgersync.models.sync_job import SyncJob

from .base import StorageBackend

logger = structlog.get_logger(__name__)


def _ts(value: datetime) -> str:
    """Sortable timestamp string for ordering columns."""
    return value.isoformat(timespec="microseconds")


def _placeholders(values: Sequence) -> str:
    return ", ".join("?" for _ in values)


class DuckDBStorage(StorageBackend):
    """
    DuckDB implementation of the storage backend.

    Each table keeps the columns the engine filters on (tenant, status,
    identifiers) and the full model as a JSON payload. Ledger records use the
    composite primary key (tenant_id, entity_type, dedup_key), so re-importing
    the same remote record can never create a second row.

    Attributes:
        db_path: Path to the DuckDB database file
        _local: Thread-local storage for per-thread connections
        _lock: Thread lock for schema operations
        _initialized: Flag tracking whether schema is initialized
    """

    def __init__(self, db_path: str = "./data/ledgersync.duckdb"):
        """
        Initialize DuckDB storage backend.

        Args:
            db_path: Path to DuckDB database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

        logger.info("duckdb_storage_initialized", db_path=str(self.db_path))

        self._initialize_schema()

    @contextmanager
    def _get_connection(self):
        """
        Get a thread-local DuckDB connection.

        Yields:
            DuckDB connection instance

        Raises:
            StorageError: If connection cannot be established
        """
        if not hasattr(self._local, "connection"):
            try:
                self._local.connection = duckdb.connect(str(self.db_path))
                logger.debug("duckdb_connection_created", thread_id=threading.get_ident())
            except Exception as e:
                logger.error("duckdb_connection_failed", error=str(e))
                raise StorageError(f"Failed to connect to DuckDB: {e}") from e

        yield self._local.connection

    def close(self) -> None:
        """Close the calling thread's connection."""
        connection = getattr(self._local, "connection", None)
        if connection is not None:
            connection.close()
            del self._local.connection

    def _initialize_schema(self):
        """
        Initialize all database tables and indexes.

        Idempotent and safe to call multiple times.

        Raises:
            StorageError: If schema creation fails
        """
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            try:
                with self._get_connection() as conn:
                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS integrations (
                            integration_id VARCHAR PRIMARY KEY,
                            tenant_id VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            payload JSON NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS sync_jobs (
                            sync_job_id VARCHAR PRIMARY KEY,
                            tenant_id VARCHAR NOT NULL,
                            integration_id VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            created_at VARCHAR NOT NULL,
                            payload JSON NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_sync_jobs_integration
                        ON sync_jobs(integration_id)
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS import_batches (
                            batch_id VARCHAR PRIMARY KEY,
                            tenant_id VARCHAR NOT NULL,
                            sync_job_id VARCHAR,
                            batch_type VARCHAR NOT NULL,
                            status VARCHAR NOT NULL,
                            started_at VARCHAR NOT NULL,
                            payload JSON NOT NULL
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_import_batches_sync_job
                        ON import_batches(sync_job_id)
                    """)

                    conn.execute("""
                        CREATE TABLE IF NOT EXISTS ledger_records (
                            tenant_id VARCHAR NOT NULL,
                            entity_type VARCHAR NOT NULL,
                            dedup_key VARCHAR NOT NULL,
                            record_id VARCHAR NOT NULL,
                            external_id VARCHAR,
                            natural_key VARCHAR,
                            payload JSON NOT NULL,
                            PRIMARY KEY (tenant_id, entity_type, dedup_key)
                        )
                    """)

                    conn.execute("""
                        CREATE INDEX IF NOT EXISTS idx_ledger_records_record_id
                        ON ledger_records(record_id)
                    """)

                    # No index on external_id/natural_key: DuckDB rewrites updates of
                    # indexed columns as delete+insert, which trips the primary key
                    conn.commit()
                    logger.info("duckdb_schema_initialized", table_count=4)
                    self._initialized = True

            except Exception as e:
                logger.error("duckdb_schema_initialization_failed", error=str(e))
                raise StorageError(f"Failed to initialize schema: {e}") from e

    # =========================================================================
    # Integrations
    # =========================================================================

    def get_integration(self, integration_id: str) -> Optional[Integration]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM integrations WHERE integration_id = ?",
                    [integration_id],
                ).fetchone()
                return Integration.model_validate_json(row[0]) if row else None
        except Exception as e:
            logger.error("get_integration_failed", integration_id=integration_id, error=str(e))
            raise StorageError(f"Failed to read integration: {e}") from e

    def save_integration(self, integration: Integration) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO integrations (integration_id, tenant_id, status, payload)
                    VALUES (?, ?, ?, ?)
                    """,
                    [
                        integration.id,
                        integration.tenant_id,
                        integration.status.value,
                        integration.model_dump_json(),
                    ],
                )
                conn.commit()
        except Exception as e:
            logger.error("save_integration_failed", integration_id=integration.id, error=str(e))
            raise StorageError(f"Failed to save integration: {e}") from e

    # =========================================================================
    # Sync jobs
    # =========================================================================

    def create_sync_job(self, job: SyncJob) -> str:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_jobs (
                        sync_job_id, tenant_id, integration_id, status, created_at, payload
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    [
                        job.id,
                        job.tenant_id,
                        job.integration_id,
                        job.status.value,
                        _ts(job.created_at),
                        job.model_dump_json(),
                    ],
                )
                conn.commit()
                logger.debug("sync_job_written", sync_job_id=job.id)
                return job.id
        except Exception as e:
            logger.error("create_sync_job_failed", sync_job_id=job.id, error=str(e))
            raise StorageError(f"Failed to create sync job: {e}") from e

    def update_sync_job(self, job: SyncJob) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE sync_jobs SET status = ?, payload = ? WHERE sync_job_id = ?",
                    [job.status.value, job.model_dump_json(), job.id],
                )
                conn.commit()
        except Exception as e:
            logger.error("update_sync_job_failed", sync_job_id=job.id, error=str(e))
            raise StorageError(f"Failed to update sync job: {e}") from e

    def get_sync_job(self, sync_job_id: str) -> Optional[SyncJob]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM sync_jobs WHERE sync_job_id = ?",
                    [sync_job_id],
                ).fetchone()
                return SyncJob.model_validate_json(row[0]) if row else None
        except Exception as e:
            logger.error("get_sync_job_failed", sync_job_id=sync_job_id, error=str(e))
            raise StorageError(f"Failed to read sync job: {e}") from e

    def list_sync_jobs(
        self,
        tenant_id: Optional[str] = None,
        integration_id: Optional[str] = None,
        statuses: Optional[Sequence[SyncJobStatus]] = None,
        limit: int = 100,
    ) -> list[SyncJob]:
        try:
            with self._get_connection() as conn:
                query = "SELECT payload FROM sync_jobs WHERE 1=1"
                params: list = []

                if tenant_id:
                    query += " AND tenant_id = ?"
                    params.append(tenant_id)

                if integration_id:
                    query += " AND integration_id = ?"
                    params.append(integration_id)

                if statuses:
                    query += f" AND status IN ({_placeholders(statuses)})"
                    params.extend(SyncJobStatus(s).value for s in statuses)

                query += " ORDER BY created_at DESC LIMIT ?"
                params.append(limit)

                rows = conn.execute(query, params).fetchall()
                return [SyncJob.model_validate_json(row[0]) for row in rows]
        except Exception as e:
            logger.error("list_sync_jobs_failed", error=str(e))
            raise StorageError(f"Failed to list sync jobs: {e}") from e

    # =========================================================================
    # Import batches
    # =========================================================================

    def create_import_batch(self, batch: ImportBatch) -> str:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    """
                    INSERT INTO import_batches (
                        batch_id, tenant_id, sync_job_id, batch_type, status, started_at, payload
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        batch.id,
                        batch.tenant_id,
                        batch.sync_job_id,
                        batch.batch_type.value,
                        batch.status.value,
                        _ts(batch.started_at),
                        batch.model_dump_json(),
                    ],
                )
                conn.commit()
                return batch.id
        except Exception as e:
            logger.error("create_import_batch_failed", batch_id=batch.id, error=str(e))
            raise StorageError(f"Failed to create import batch: {e}") from e

    def update_import_batch(self, batch: ImportBatch) -> None:
        try:
            with self._get_connection() as conn:
                conn.execute(
                    "UPDATE import_batches SET status = ?, payload = ? WHERE batch_id = ?",
                    [batch.status.value, batch.model_dump_json(), batch.id],
                )
                conn.commit()
        except Exception as e:
            logger.error("update_import_batch_failed", batch_id=batch.id, error=str(e))
            raise StorageError(f"Failed to update import batch: {e}") from e

    def get_import_batch(self, batch_id: str) -> Optional[ImportBatch]:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM import_batches WHERE batch_id = ?",
                    [batch_id],
                ).fetchone()
                return ImportBatch.model_validate_json(row[0]) if row else None
        except Exception as e:
            logger.error("get_import_batch_failed", batch_id=batch_id, error=str(e))
            raise StorageError(f"Failed to read import batch: {e}") from e

    def list_import_batches(
        self,
        tenant_id: Optional[str] = None,
        sync_job_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[ImportBatch]:
        try:
            with self._get_connection() as conn:
                query = "SELECT payload FROM import_batches WHERE 1=1"
                params: list = []

                if tenant_id:
                    query += " AND tenant_id = ?"
                    params.append(tenant_id)

                if sync_job_id:
                    query += " AND sync_job_id = ?"
                    params.append(sync_job_id)

                query += " ORDER BY started_at ASC LIMIT ?"
                params.append(limit)

                rows = conn.execute(query, params).fetchall()
                return [ImportBatch.model_validate_json(row[0]) for row in rows]
        except Exception as e:
            logger.error("list_import_batches_failed", error=str(e))
            raise StorageError(f"Failed to list import batches: {e}") from e

    # =========================================================================
    # Ledger records
    # =========================================================================

    def _decode_records(self, entity: EntityKind, rows: list) -> list[LedgerRecord]:
        model = RECORD_MODELS[EntityKind(entity)]
        return [model.model_validate_json(row[0]) for row in rows]

    def find_records(
        self,
        tenant_id: str,
        entity: EntityKind,
        external_ids: Optional[Sequence[str]] = None,
        dedup_keys: Optional[Sequence[str]] = None,
        natural_keys: Optional[Sequence[str]] = None,
    ) -> list[LedgerRecord]:
        clauses = []
        params: list = [tenant_id, EntityKind(entity).value]

        for column, values in (
            ("external_id", external_ids),
            ("dedup_key", dedup_keys),
            ("natural_key", natural_keys),
        ):
            values = [v for v in (values or []) if v]
            if values:
                clauses.append(f"{column} IN ({_placeholders(values)})")
                params.extend(values)

        if not clauses:
            return []

        try:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"""
                    SELECT payload FROM ledger_records
                    WHERE tenant_id = ? AND entity_type = ? AND ({" OR ".join(clauses)})
                    """,
                    params,
                ).fetchall()
                return self._decode_records(entity, rows)
        except Exception as e:
            logger.error("find_records_failed", entity=EntityKind(entity).value, error=str(e))
            raise StorageError(f"Failed to find records: {e}") from e

    def list_records(
        self,
        tenant_id: str,
        entity: EntityKind,
        limit: Optional[int] = None,
    ) -> list[LedgerRecord]:
        try:
            with self._get_connection() as conn:
                query = """
                    SELECT payload FROM ledger_records
                    WHERE tenant_id = ? AND entity_type = ?
                    ORDER BY dedup_key
                """
                params: list = [tenant_id, EntityKind(entity).value]
                if limit is not None:
                    query += " LIMIT ?"
                    params.append(limit)
                rows = conn.execute(query, params).fetchall()
                return self._decode_records(entity, rows)
        except Exception as e:
            logger.error("list_records_failed", entity=EntityKind(entity).value, error=str(e))
            raise StorageError(f"Failed to list records: {e}") from e

    def insert_records(self, records: Sequence[LedgerRecord]) -> int:
        if not records:
            return 0

        try:
            with self._get_connection() as conn:
                written = 0
                for record in records:
                    try:
                        conn.execute(
                            """
                            INSERT INTO ledger_records (
                                tenant_id, entity_type, dedup_key, record_id,
                                external_id, natural_key, payload
                            ) VALUES (?, ?, ?, ?, ?, ?, ?)
                            """,
                            [
                                record.tenant_id,
                                record.entity_kind.value,
                                record.dedup_key,
                                record.id,
                                record.external_id,
                                record.natural_key,
                                record.model_dump_json(),
                            ],
                        )
                        written += 1
                    except duckdb.ConstraintException:
                        logger.debug(
                            "duplicate_record_skipped",
                            entity=record.entity_kind.value,
                            dedup_key=record.dedup_key,
                        )

                conn.commit()
                logger.debug("ledger_records_written", count=written, requested=len(records))
                return written

        except Exception as e:
            logger.error("insert_records_failed", error=str(e))
            raise StorageError(f"Failed to insert records: {e}") from e

    def update_records(self, records: Sequence[LedgerRecord]) -> int:
        if not records:
            return 0

        try:
            with self._get_connection() as conn:
                for record in records:
                    conn.execute(
                        """
                        UPDATE ledger_records
                        SET external_id = ?, natural_key = ?, payload = ?
                        WHERE record_id = ? AND tenant_id = ? AND entity_type = ?
                        """,
                        [
                            record.external_id,
                            record.natural_key,
                            record.model_dump_json(),
                            record.id,
                            record.tenant_id,
                            record.entity_kind.value,
                        ],
                    )
                conn.commit()
                logger.debug("ledger_records_updated", count=len(records))
                return len(records)
        except Exception as e:
            logger.error("update_records_failed", error=str(e))
            raise StorageError(f"Failed to update records: {e}") from e

    def count_records(self, tenant_id: str, entity: EntityKind) -> int:
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM ledger_records WHERE tenant_id = ? AND entity_type = ?",
                    [tenant_id, EntityKind(entity).value],
                ).fetchone()
                return int(row[0])
        except Exception as e:
            logger.error("count_records_failed", entity=EntityKind(entity).value, error=str(e))
            raise StorageError(f"Failed to count records: {e}") from e
