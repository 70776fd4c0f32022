"""Unit tests for the IndexManager service."""

from typing import Any

import pytest

from blobtables.errors import BackendError
from blobtables.models.index_file import IndexFile, index_file_name
from blobtables.models.session import SessionContext
from blobtables.services.blob_client import BlobClient
from blobtables.services.blob_store import InMemoryBlobStore
from blobtables.services.index_manager import IndexManager, build_map

TABLE_ID = "tbl-1"


class FailingWritesStore(InMemoryBlobStore):
    """In-memory store whose writes can be switched off."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    async def create(self, parent_id: str, name: str, content: Any) -> str:
        if self.fail_writes:
            raise ConnectionError("write refused")
        return await super().create(parent_id, name, content)

    async def put(self, blob_id: str, content: Any, expected_version: int | None = None) -> int:
        if self.fail_writes:
            raise ConnectionError("write refused")
        return await super().put(blob_id, content, expected_version)


@pytest.fixture
def ctx() -> SessionContext:
    return SessionContext(database_id="db-1")


@pytest.fixture
def store() -> FailingWritesStore:
    return FailingWritesStore()


@pytest.fixture
def manager(store: FailingWritesStore) -> IndexManager:
    client = BlobClient(store=store, timeout_seconds=1.0, read_retries=0, retry_delay_seconds=0.0)
    return IndexManager(blob_client=client)


def _docs(*pairs: tuple[str, Any]) -> list[dict[str, Any]]:
    return [{"$id": doc_id, "email": value} for doc_id, value in pairs]


class TestBuildMap:
    """Tests for pure index map construction."""

    def test_map_holds_exactly_the_holders_of_each_value(self) -> None:
        documents = _docs(("d1", "a@x.com"), ("d2", "b@x.com"), ("d3", "a@x.com"), ("d4", None), ("d5", ""))

        assert build_map("email", documents) == {"a@x.com": ["d1", "d3"], "b@x.com": ["d2"]}

    def test_map_stringifies_values(self) -> None:
        documents = [{"$id": "d1", "flag": True}, {"$id": "d2", "flag": 3.0}]

        assert build_map("flag", documents) == {"true": ["d1"], "3": ["d2"]}


class TestIndexManagerUpdate:
    """Tests for incremental index maintenance."""

    async def test_first_update_creates_index_blob(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        assert index_id is not None
        entries = await store.list_by_name(index_file_name(TABLE_ID, "email"))
        assert [entry.id for entry in entries] == [index_id]
        index = await manager.get(ctx, TABLE_ID, "email", index_id)
        assert index is not None
        assert index.entries == {"a@x.com": ["d1"]}

    async def test_update_moves_document_between_buckets(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        assert await manager.update(ctx, TABLE_ID, "email", "a@x.com", "b@x.com", "d1", index_id) == index_id

        index = await manager.get(ctx, TABLE_ID, "email", index_id)
        assert index is not None
        assert index.entries == {"b@x.com": ["d1"]}

    async def test_update_with_same_value_is_idempotent(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        await manager.update(ctx, TABLE_ID, "email", "a@x.com", "a@x.com", "d1", index_id)
        await manager.update(ctx, TABLE_ID, "email", "a@x.com", "a@x.com", "d1", index_id)

        index = await manager.get(ctx, TABLE_ID, "email", index_id)
        assert index is not None
        assert index.ids_for("a@x.com") == ["d1"]

    async def test_update_falls_back_to_name_lookup_without_pointer(
        self, manager: IndexManager, ctx: SessionContext
    ) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        again = await manager.update(ctx, TABLE_ID, "email", None, "b@x.com", "d2")

        assert again == index_id
        index = await manager.get(ctx, TABLE_ID, "email")
        assert index is not None
        assert set(index.entries) == {"a@x.com", "b@x.com"}

    async def test_stale_pointer_is_ignored(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1", "deleted-index")

        assert index_id is not None
        assert index_id != "deleted-index"

    async def test_update_failure_is_logged_not_raised(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        store.fail_writes = True

        assert await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1") is None

    async def test_malformed_index_is_replaced_on_update(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        broken_id = await store.create("db-1", index_file_name(TABLE_ID, "email"), {"garbage": True})

        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1", broken_id)

        assert index_id == broken_id
        index = await manager.get(ctx, TABLE_ID, "email", broken_id)
        assert index is not None
        assert index.entries == {"a@x.com": ["d1"]}


class TestIndexManagerCheckUnique:
    """Tests for uniqueness pre-checks."""

    async def test_empty_values_are_always_safe(self, manager: IndexManager, ctx: SessionContext) -> None:
        assert (await manager.check_unique(ctx, TABLE_ID, "email", None)).safe
        assert (await manager.check_unique(ctx, TABLE_ID, "email", "")).safe

    async def test_missing_index_is_safe(self, manager: IndexManager, ctx: SessionContext) -> None:
        assert (await manager.check_unique(ctx, TABLE_ID, "email", "a@x.com")).safe

    async def test_taken_value_is_reported(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        check = await manager.check_unique(ctx, TABLE_ID, "email", "a@x.com", index_file_id=index_id)

        assert not check.safe
        assert check.error == "Value 'a@x.com' already exists."

    async def test_excluded_document_does_not_conflict_with_itself(
        self, manager: IndexManager, ctx: SessionContext
    ) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        check = await manager.check_unique(ctx, TABLE_ID, "email", "a@x.com", exclude_doc_id="d1", index_file_id=index_id)

        assert check.safe

    async def test_array_values_compare_element_by_element(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "tags", None, ["a", "b"], "d1")

        joined = await manager.check_unique(ctx, TABLE_ID, "tags", ["a,b"], index_file_id=index_id)
        same = await manager.check_unique(ctx, TABLE_ID, "tags", ["a", "b"], index_file_id=index_id)

        assert joined.safe
        assert not same.safe

    async def test_unreadable_index_is_safe(self, ctx: SessionContext) -> None:
        class BrokenStore(InMemoryBlobStore):
            async def list_by_parent(self, parent_id: str):
                raise ConnectionError("listing down")

        client = BlobClient(store=BrokenStore(), timeout_seconds=1.0, read_retries=0, retry_delay_seconds=0.0)
        manager = IndexManager(blob_client=client)

        assert (await manager.check_unique(ctx, TABLE_ID, "email", "a@x.com")).safe


class TestIndexManagerRebuildAndDelete:
    """Tests for rebuild, retract and delete."""

    async def test_rebuild_replaces_existing_index(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        old_id = await manager.update(ctx, TABLE_ID, "email", None, "stale@x.com", "gone")
        documents = _docs(("d1", "a@x.com"), ("d2", "b@x.com"))

        new_id = await manager.rebuild(ctx, TABLE_ID, "email", documents, old_id)

        assert new_id != old_id
        assert len(await store.list_by_name(index_file_name(TABLE_ID, "email"))) == 1
        index = await manager.get(ctx, TABLE_ID, "email", new_id)
        assert index is not None
        assert index.entries == build_map("email", documents)

    async def test_rebuild_propagates_backend_errors(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        store.fail_writes = True

        with pytest.raises(BackendError):
            await manager.rebuild(ctx, TABLE_ID, "email", _docs(("d1", "a@x.com")))

    async def test_retract_removes_deleted_documents(self, manager: IndexManager, ctx: SessionContext) -> None:
        index_id = await manager.rebuild(ctx, TABLE_ID, "email", _docs(("d1", "a@x.com"), ("d2", "b@x.com")))

        await manager.retract(ctx, TABLE_ID, "email", _docs(("d1", "a@x.com")), index_id)

        index = await manager.get(ctx, TABLE_ID, "email", index_id)
        assert isinstance(index, IndexFile)
        assert index.entries == {"b@x.com": ["d2"]}

    async def test_retract_without_index_is_noop(self, manager: IndexManager, ctx: SessionContext) -> None:
        assert await manager.retract(ctx, TABLE_ID, "email", _docs(("d1", "a@x.com"))) is None

    async def test_delete_removes_index_blob(
        self, manager: IndexManager, store: FailingWritesStore, ctx: SessionContext
    ) -> None:
        index_id = await manager.update(ctx, TABLE_ID, "email", None, "a@x.com", "d1")

        await manager.delete(ctx, TABLE_ID, "email", index_id)

        assert await store.list_by_name(index_file_name(TABLE_ID, "email")) == []
        assert await manager.get(ctx, TABLE_ID, "email") is None

    async def test_delete_of_missing_index_is_quiet(self, manager: IndexManager, ctx: SessionContext) -> None:
        await manager.delete(ctx, TABLE_ID, "email", "never-existed")
