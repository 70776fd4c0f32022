"""Factory functions for creating and wiring table repositories.

Provides a production factory that persists blobs to SQLite and a test
factory that uses an in-memory store for fast, isolated testing.
"""

from pathlib import Path

import structlog

from blobtables.models.session import StoreConfig
from blobtables.services.blob_client import BlobClient
from blobtables.services.blob_store import BlobStore, InMemoryBlobStore
from blobtables.services.index_manager import IndexManager
from blobtables.services.sqlite_blob_store import SQLiteBlobStore, create_async_engine_from_path
from blobtables.services.table_repository import TableRepository
from blobtables.services.write_policy import write_policy_from_config


def create_table_repository(db_path: Path, config: StoreConfig | None = None) -> TableRepository:
    """Create a production TableRepository backed by a SQLite blob file.

    Use the repository as an async context manager so the blobs table is
    created on entry and the engine disposed on exit.

    Args:
        db_path: Path of the SQLite database file. Parent directories are created.
        config: Timeouts, retries, write policy and read-cache settings.

    Returns:
        Configured TableRepository ready for use.
    """
    config = config or StoreConfig()
    logger = structlog.get_logger(__name__)

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine_from_path(str(db_path))
    store = SQLiteBlobStore(engine=engine, logger=logger)

    return _wire(store, config, logger)


def create_test_table_repository(
    config: StoreConfig | None = None,
    store: BlobStore | None = None,
) -> TableRepository:
    """Create a TableRepository over an in-memory blob store for testing.

    Each call creates independent storage, so tests don't interfere.

    Args:
        config: Overrides for the default StoreConfig.
        store: A prepared store to wrap instead of a fresh InMemoryBlobStore.

    Returns:
        Configured TableRepository with in-memory storage.
    """
    config = config or StoreConfig()
    logger = structlog.get_logger(__name__)
    return _wire(store or InMemoryBlobStore(logger=logger), config, logger)


def _wire(store: BlobStore, config: StoreConfig, logger: structlog.stdlib.BoundLogger) -> TableRepository:
    blob_client = BlobClient.from_config(store, config, logger=logger)
    index_manager = IndexManager(blob_client=blob_client, logger=logger)
    return TableRepository(
        blob_client=blob_client,
        index_manager=index_manager,
        write_policy=write_policy_from_config(config),
        cache_ttl_seconds=config.cache_ttl_seconds,
        logger=logger,
    )
