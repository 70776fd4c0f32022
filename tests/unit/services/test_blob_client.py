"""Unit tests for the BlobClient wrapper."""

import asyncio
from typing import Any

import pytest

from blobtables.errors import BackendError, BlobNotFoundError, WriteConflictError
from blobtables.models.blob import BlobInfo, VersionedBlob
from blobtables.models.session import StoreConfig
from blobtables.services.blob_client import BlobClient
from blobtables.services.blob_store import InMemoryBlobStore


class FlakyBlobStore:
    """Fake store that fails a set number of times before answering."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or ConnectionError("backend unavailable")
        self.calls: dict[str, int] = {}
        self.initialized = False
        self.closed = False

    async def initialize_schema(self) -> None:
        self.initialized = True

    async def close(self) -> None:
        self.closed = True

    def _tick(self, operation: str) -> None:
        self.calls[operation] = self.calls.get(operation, 0) + 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error

    async def create(self, parent_id: str, name: str, content: Any) -> str:
        self._tick("create")
        return "blob-1"

    async def get(self, blob_id: str) -> VersionedBlob:
        self._tick("get")
        return VersionedBlob(content={"ok": True}, version=3)

    async def put(self, blob_id: str, content: Any, expected_version: int | None = None) -> int:
        self._tick("put")
        return 4

    async def delete(self, blob_id: str) -> None:
        self._tick("delete")

    async def list_by_parent(self, parent_id: str) -> list[BlobInfo]:
        self._tick("list_by_parent")
        return [BlobInfo(id="blob-1", name="users")]

    async def list_by_name(self, name: str) -> list[BlobInfo]:
        self._tick("list_by_name")
        return []


class SlowBlobStore(FlakyBlobStore):
    """Fake store whose reads never finish in time."""

    async def get(self, blob_id: str) -> VersionedBlob:
        self._tick("get")
        await asyncio.sleep(10)
        return VersionedBlob(content={}, version=1)


def _client(store: Any, **kwargs: Any) -> BlobClient:
    options = {"timeout_seconds": 1.0, "read_retries": 2, "retry_delay_seconds": 0.0}
    options.update(kwargs)
    return BlobClient(store=store, **options)


class TestBlobClientReads:
    """Tests for read retries and timeouts."""

    async def test_read_retries_until_success(self) -> None:
        store = FlakyBlobStore(failures=2)

        blob = await _client(store).get("blob-1")

        assert blob.version == 3
        assert store.calls["get"] == 3

    async def test_read_gives_up_after_retries(self) -> None:
        store = FlakyBlobStore(failures=5)

        with pytest.raises(BackendError) as exc_info:
            await _client(store, read_retries=1).list_by_parent("db-1")

        assert exc_info.value.operation == "list_by_parent"
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert store.calls["list_by_parent"] == 2

    async def test_read_without_retries_raises_first_error(self) -> None:
        store = FlakyBlobStore(failures=1)

        with pytest.raises(BackendError) as exc_info:
            await _client(store, read_retries=0).get("blob-1")

        assert isinstance(exc_info.value.cause, ConnectionError)
        assert store.calls["get"] == 1

    async def test_timeout_becomes_backend_error(self) -> None:
        store = SlowBlobStore()

        with pytest.raises(BackendError) as exc_info:
            await _client(store, timeout_seconds=0.01, read_retries=0).get("blob-1")

        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)

    async def test_not_found_is_not_retried(self) -> None:
        store = FlakyBlobStore(failures=1, error=BlobNotFoundError("blob-1"))

        with pytest.raises(BlobNotFoundError):
            await _client(store).get("blob-1")

        assert store.calls["get"] == 1


class TestBlobClientWrites:
    """Tests for single-attempt writes."""

    async def test_writes_are_never_retried(self) -> None:
        store = FlakyBlobStore(failures=1)

        with pytest.raises(BackendError):
            await _client(store).put("blob-1", {})

        assert store.calls["put"] == 1

    async def test_create_failure_is_wrapped(self) -> None:
        store = FlakyBlobStore(failures=1)

        with pytest.raises(BackendError) as exc_info:
            await _client(store).create("db-1", "users", {})

        assert exc_info.value.operation == "create"

    async def test_write_conflict_passes_through(self) -> None:
        store = FlakyBlobStore(failures=1, error=WriteConflictError("blob-1", 1, 2))

        with pytest.raises(WriteConflictError):
            await _client(store).put("blob-1", {}, expected_version=1)

    async def test_writes_reach_real_store(self) -> None:
        client = _client(InMemoryBlobStore())

        blob_id = await client.create("db-1", "users", {"n": 0})
        version = await client.put(blob_id, {"n": 1})
        await client.delete(blob_id)

        assert version == 2
        with pytest.raises(BlobNotFoundError):
            await client.get(blob_id)


class TestBlobClientConfiguration:
    """Tests for construction and lifecycle."""

    def test_from_config(self) -> None:
        config = StoreConfig(timeout_seconds=5, read_retries=4, retry_delay_seconds=0.5)

        client = BlobClient.from_config(InMemoryBlobStore(), config)

        assert client._timeout == 5
        assert client._read_retries == 4
        assert client._retry_delay == 0.5

    def test_rejects_invalid_settings(self) -> None:
        with pytest.raises(ValueError):
            BlobClient(InMemoryBlobStore(), timeout_seconds=0)
        with pytest.raises(ValueError):
            BlobClient(InMemoryBlobStore(), read_retries=-1)

    async def test_initialize_and_close_delegate_to_store(self) -> None:
        store = FlakyBlobStore()
        client = _client(store)

        await client.initialize()
        await client.close()

        assert store.initialized
        assert store.closed

    async def test_initialize_is_optional_on_store(self) -> None:
        client = _client(InMemoryBlobStore())

        await client.initialize()
        await client.close()
