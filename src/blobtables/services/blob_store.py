"""Blob store protocol and an in-memory implementation.

A blob store only knows whole objects: create, get, overwrite, delete and a
best-effort listing. Every write bumps an integer version; ``put`` accepts an
optional ``expected_version`` so a stricter backend can reject stale writes.
"""

import copy
from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

import structlog

from blobtables.errors import BlobNotFoundError, WriteConflictError
from blobtables.models.blob import BlobInfo, VersionedBlob


@runtime_checkable
class BlobStore(Protocol):
    async def create(self, parent_id: str, name: str, content: Any) -> str: ...

    async def get(self, blob_id: str) -> VersionedBlob: ...

    async def put(self, blob_id: str, content: Any, expected_version: int | None = None) -> int: ...

    async def delete(self, blob_id: str) -> None: ...

    async def list_by_parent(self, parent_id: str) -> list[BlobInfo]: ...

    async def list_by_name(self, name: str) -> list[BlobInfo]: ...


class _StoredBlob:
    __slots__ = ("blob_id", "parent_id", "name", "content", "version")

    def __init__(self, blob_id: str, parent_id: str, name: str, content: Any) -> None:
        self.blob_id = blob_id
        self.parent_id = parent_id
        self.name = name
        self.content = content
        self.version = 1


class InMemoryBlobStore:
    """Keeps blobs in a dict. Content is deep-copied in and out.

    With ``hide_unsettled_from_listing`` set, blobs created since the last
    ``settle()`` call are left out of listings, mimicking a backend whose
    search index lags behind its writes.
    """

    def __init__(
        self,
        hide_unsettled_from_listing: bool = False,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._blobs: dict[str, _StoredBlob] = {}
        self._unsettled: set[str] = set()
        self._hide_unsettled = hide_unsettled_from_listing
        self._logger = logger or structlog.get_logger(__name__)

    async def create(self, parent_id: str, name: str, content: Any) -> str:
        blob_id = uuid4().hex
        self._blobs[blob_id] = _StoredBlob(blob_id, parent_id, name, copy.deepcopy(content))
        self._unsettled.add(blob_id)
        self._logger.debug("blob_created", blob_id=blob_id, parent_id=parent_id, name=name)
        return blob_id

    async def get(self, blob_id: str) -> VersionedBlob:
        blob = self._require(blob_id)
        return VersionedBlob(content=copy.deepcopy(blob.content), version=blob.version)

    async def put(self, blob_id: str, content: Any, expected_version: int | None = None) -> int:
        blob = self._require(blob_id)
        if expected_version is not None and blob.version != expected_version:
            raise WriteConflictError(blob_id, expected_version, blob.version)
        blob.content = copy.deepcopy(content)
        blob.version += 1
        self._logger.debug("blob_written", blob_id=blob_id, version=blob.version)
        return blob.version

    async def delete(self, blob_id: str) -> None:
        self._require(blob_id)
        del self._blobs[blob_id]
        self._unsettled.discard(blob_id)
        self._logger.debug("blob_deleted", blob_id=blob_id)

    async def list_by_parent(self, parent_id: str) -> list[BlobInfo]:
        return [self._info(blob) for blob in self._listable() if blob.parent_id == parent_id]

    async def list_by_name(self, name: str) -> list[BlobInfo]:
        return [self._info(blob) for blob in self._listable() if blob.name == name]

    def settle(self) -> None:
        """Make every blob created so far visible to listings."""
        self._unsettled.clear()

    def __len__(self) -> int:
        return len(self._blobs)

    def _require(self, blob_id: str) -> _StoredBlob:
        blob = self._blobs.get(blob_id)
        if blob is None:
            raise BlobNotFoundError(blob_id)
        return blob

    def _listable(self) -> list[_StoredBlob]:
        blobs = list(self._blobs.values())
        if self._hide_unsettled:
            blobs = [blob for blob in blobs if blob.blob_id not in self._unsettled]
        return blobs

    @staticmethod
    def _info(blob: _StoredBlob) -> BlobInfo:
        return BlobInfo(id=blob.blob_id, name=blob.name, trashed=False)


__all__ = ["BlobStore", "InMemoryBlobStore"]
