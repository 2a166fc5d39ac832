"""
Persistence layer for integrations, sync jobs, import batches and ledger records.

The engine only depends on the StorageBackend contract; DuckDB is the bundled
implementation.
"""

from ledgersync.config import Settings

from .base import StorageBackend
from .duckdb_storage import DuckDBStorage


def create_storage(settings: Settings) -> StorageBackend:
    """
    Build the storage backend described by settings.

    Args:
        settings: Application settings

    Returns:
        StorageBackend implementation instance
    """
    return DuckDBStorage(db_path=settings.db_path)


__all__ = [
    "StorageBackend",
    "DuckDBStorage",
    "create_storage",
]
