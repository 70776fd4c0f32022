"""Timeout, error-mapping and read-retry wrapper around a blob store.

Every backend call runs under ``asyncio.wait_for`` with the configured
timeout. Store failures other than "not found" and "write conflict" surface as
``BackendError``. Only pure reads are retried: a retried read-modify-write
could re-apply stale data, so writes are attempted exactly once.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from blobtables.errors import BackendError, BlobNotFoundError, WriteConflictError
from blobtables.models.blob import BlobInfo, VersionedBlob
from blobtables.models.session import StoreConfig
from blobtables.services.blob_store import BlobStore

T = TypeVar("T")

_PASSTHROUGH_ERRORS = (BlobNotFoundError, WriteConflictError)


class BlobClient:
    """The only path from services to a blob store."""

    def __init__(
        self,
        store: BlobStore,
        timeout_seconds: float = 30.0,
        read_retries: int = 2,
        retry_delay_seconds: float = 0.2,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        if read_retries < 0:
            raise ValueError("read_retries cannot be negative")
        self._store = store
        self._timeout = timeout_seconds
        self._read_retries = read_retries
        self._retry_delay = retry_delay_seconds
        self._logger = logger or structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        store: BlobStore,
        config: StoreConfig,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> "BlobClient":
        return cls(
            store=store,
            timeout_seconds=config.timeout_seconds,
            read_retries=config.read_retries,
            retry_delay_seconds=config.retry_delay_seconds,
            logger=logger,
        )

    @property
    def store(self) -> BlobStore:
        return self._store

    async def initialize(self) -> None:
        """Prepare the underlying store if it needs preparing (e.g. create tables)."""
        initialize = getattr(self._store, "initialize_schema", None)
        if initialize is not None:
            await initialize()

    async def close(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            await close()

    async def create(self, parent_id: str, name: str, content: dict[str, Any]) -> str:
        return await self._write("create", None, lambda: self._store.create(parent_id, name, content))

    async def get(self, blob_id: str) -> VersionedBlob:
        return await self._read("get", blob_id, lambda: self._store.get(blob_id))

    async def put(self, blob_id: str, content: dict[str, Any], expected_version: int | None = None) -> int:
        return await self._write("put", blob_id, lambda: self._store.put(blob_id, content, expected_version))

    async def delete(self, blob_id: str) -> None:
        await self._write("delete", blob_id, lambda: self._store.delete(blob_id))

    async def list_by_parent(self, parent_id: str) -> list[BlobInfo]:
        return await self._read("list_by_parent", parent_id, lambda: self._store.list_by_parent(parent_id))

    async def list_by_name(self, name: str) -> list[BlobInfo]:
        return await self._read("list_by_name", name, lambda: self._store.list_by_name(name))

    async def _write(self, operation: str, blob_id: str | None, call: Callable[[], Awaitable[T]]) -> T:
        return await self._attempt(operation, blob_id, call)

    async def _read(self, operation: str, target: str, call: Callable[[], Awaitable[T]]) -> T:
        delay = self._retry_delay
        attempt = 1
        while True:
            try:
                return await self._attempt(operation, target, call)
            except BackendError as e:
                if attempt > self._read_retries:
                    raise
                self._logger.warning(
                    "blob_read_retry",
                    operation=operation,
                    target=target,
                    attempt=attempt,
                    max_attempts=self._read_retries + 1,
                    error=str(e),
                )
            await asyncio.sleep(delay)
            delay *= 2
            attempt += 1

    async def _attempt(self, operation: str, blob_id: str | None, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(call(), timeout=self._timeout)
        except _PASSTHROUGH_ERRORS:
            raise
        except asyncio.TimeoutError as e:
            self._logger.error("blob_operation_timeout", operation=operation, blob_id=blob_id, timeout=self._timeout)
            raise BackendError(operation, blob_id, e) from e
        except Exception as e:
            self._logger.error("blob_operation_failed", operation=operation, blob_id=blob_id, error=str(e))
            raise BackendError(operation, blob_id, e) from e
