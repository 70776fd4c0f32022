"""Unique-index blobs, one per unique column.

An index maps the stringified value of a column to the ids of the documents
holding it. Indexes are an optimization over scanning the table: the table
blob stays authoritative for which documents exist, so a damaged or missing
index weakens uniqueness enforcement but never loses documents.

Uniqueness checking is check-then-act. ``check_unique`` and the later
``update`` are separate read-modify-write cycles on the index blob, so two
writers inserting the same value at the same time can both pass the check.
Without an atomic compare-and-swap spanning the table and index blobs this
race cannot be closed here.
"""

from collections.abc import Sequence
from typing import Any

import structlog
from pydantic import ValidationError

from blobtables.errors import BackendError, BlobNotFoundError
from blobtables.models.base import format_timestamp, utc_now
from blobtables.models.column import ID_FIELD
from blobtables.models.index_file import IndexFile, index_file_name, index_key
from blobtables.models.session import SessionContext
from blobtables.models.table import Document
from blobtables.models.validation import UniqueCheck
from blobtables.services.blob_client import BlobClient


class IndexManager:
    """Owns the lifecycle of index blobs.

    Index blobs are created under the session's database, named
    ``{table_id}_{column}.index``. Callers hold the blob id on the column
    definition (``index_file_id``) purely as a lookup shortcut.
    """

    def __init__(
        self,
        blob_client: BlobClient,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._blobs = blob_client
        self._logger = logger or structlog.get_logger(__name__)

    async def check_unique(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        value: Any,
        exclude_doc_id: str | None = None,
        index_file_id: str | None = None,
    ) -> UniqueCheck:
        """Check whether ``value`` is free in the column's index.

        Empty values are never constrained. A missing or unreadable index is
        treated as "no constraint".
        """
        key = index_key(value)
        if key is None:
            return UniqueCheck(safe=True)

        try:
            _, index = await self._load(ctx, table_id, column, index_file_id)
        except BackendError as e:
            self._logger.warning(
                "index_unavailable_for_check",
                table_id=table_id,
                column=column,
                error=str(e),
                **ctx.log_context(),
            )
            return UniqueCheck(safe=True)

        if index is None:
            return UniqueCheck(safe=True)

        holders = [doc_id for doc_id in index.ids_for(key) if doc_id != exclude_doc_id]
        if holders:
            self._logger.debug("unique_check_conflict", table_id=table_id, column=column, holders=holders)
            return UniqueCheck(safe=False, error=f"Value '{_display(value)}' already exists.")
        return UniqueCheck(safe=True)

    async def update(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        old_value: Any,
        new_value: Any,
        doc_id: str,
        index_file_id: str | None = None,
    ) -> str | None:
        """Move ``doc_id`` from the old value's bucket to the new value's bucket.

        Creates the index blob when none exists yet.

        Returns:
            The id of the index blob written, which the caller should store on
            the column when it differs from ``index_file_id``. None when the
            index could not be written; the failure is logged, not raised.
        """
        try:
            blob_id, index = await self._load(ctx, table_id, column, index_file_id)
            if index is None:
                index = self._empty_index(table_id, column)

            old_key, new_key = index_key(old_value), index_key(new_value)
            if old_key is not None:
                index.remove(old_key, doc_id)
            if new_key is not None:
                index.add(new_key, doc_id)
            index.updated_at = format_timestamp(utc_now())

            if blob_id is None:
                blob_id = await self._blobs.create(ctx.database_id, index_file_name(table_id, column), index.to_record())
                self._logger.info("index_created", table_id=table_id, column=column, index_file_id=blob_id)
            else:
                await self._blobs.put(blob_id, index.to_record())
        except BackendError as e:
            self._logger.error(
                "index_update_failed",
                table_id=table_id,
                column=column,
                doc_id=doc_id,
                error=str(e),
                **ctx.log_context(),
            )
            return None

        self._logger.debug("index_updated", table_id=table_id, column=column, doc_id=doc_id)
        return blob_id

    async def retract(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        documents: Sequence[Document],
        index_file_id: str | None = None,
    ) -> str | None:
        """Drop the entries of deleted ``documents`` in a single index write.

        Best-effort like ``update``: failures are logged and yield None.
        """
        try:
            blob_id, index = await self._load(ctx, table_id, column, index_file_id)
            if blob_id is None or index is None:
                return None
            for document in documents:
                key = index_key(document.get(column))
                if key is not None:
                    index.remove(key, document[ID_FIELD])
            index.updated_at = format_timestamp(utc_now())
            await self._blobs.put(blob_id, index.to_record())
        except BackendError as e:
            self._logger.error(
                "index_update_failed",
                table_id=table_id,
                column=column,
                doc_count=len(documents),
                error=str(e),
                **ctx.log_context(),
            )
            return None

        self._logger.debug("index_entries_retracted", table_id=table_id, column=column, doc_count=len(documents))
        return blob_id

    async def rebuild(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        documents: Sequence[Document],
        index_file_id: str | None = None,
    ) -> str:
        """Replace the column's index with one computed from ``documents``.

        Raises:
            BackendError: If the fresh index blob cannot be written.
        """
        for stale_id in await self._existing_ids(ctx, table_id, column, index_file_id):
            await self._delete_quietly(ctx, table_id, column, stale_id)

        index = self._empty_index(table_id, column)
        index.entries = build_map(column, documents)
        blob_id = await self._blobs.create(ctx.database_id, index_file_name(table_id, column), index.to_record())

        self._logger.info(
            "index_rebuilt",
            table_id=table_id,
            column=column,
            index_file_id=blob_id,
            value_count=len(index.entries),
            **ctx.log_context(),
        )
        return blob_id

    async def delete(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        index_file_id: str | None = None,
    ) -> None:
        """Remove the column's index blob. Failures are logged, never raised."""
        try:
            stale_ids = await self._existing_ids(ctx, table_id, column, index_file_id)
        except BackendError as e:
            self._logger.error(
                "index_delete_failed",
                table_id=table_id,
                column=column,
                error=str(e),
                **ctx.log_context(),
            )
            return

        for stale_id in stale_ids:
            await self._delete_quietly(ctx, table_id, column, stale_id)

    async def get(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        index_file_id: str | None = None,
    ) -> IndexFile | None:
        _, index = await self._load(ctx, table_id, column, index_file_id)
        return index

    async def find_index_id(self, ctx: SessionContext, table_id: str, column: str) -> str | None:
        """Look an index blob up by name: database listing first, then a global name search."""
        name = index_file_name(table_id, column)
        for entry in await self._blobs.list_by_parent(ctx.database_id):
            if entry.name == name and not entry.trashed:
                return entry.id
        for entry in await self._blobs.list_by_name(name):
            if not entry.trashed:
                return entry.id
        return None

    async def _load(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        index_file_id: str | None,
    ) -> tuple[str | None, IndexFile | None]:
        if index_file_id:
            try:
                blob = await self._blobs.get(index_file_id)
                return index_file_id, self._parse(table_id, column, index_file_id, blob.content)
            except BlobNotFoundError:
                self._logger.warning("index_pointer_stale", table_id=table_id, column=column, index_file_id=index_file_id)

        blob_id = await self.find_index_id(ctx, table_id, column)
        if blob_id is None:
            return None, None
        try:
            blob = await self._blobs.get(blob_id)
        except BlobNotFoundError:
            return None, None
        return blob_id, self._parse(table_id, column, blob_id, blob.content)

    def _parse(self, table_id: str, column: str, blob_id: str, content: Any) -> IndexFile | None:
        try:
            return IndexFile.from_record(content)
        except ValidationError as e:
            # Rewritten from scratch on the next update; a rebuild restores it fully.
            self._logger.warning(
                "index_malformed",
                table_id=table_id,
                column=column,
                index_file_id=blob_id,
                error=str(e),
            )
            return None

    async def _existing_ids(
        self,
        ctx: SessionContext,
        table_id: str,
        column: str,
        index_file_id: str | None,
    ) -> list[str]:
        ids = [index_file_id] if index_file_id else []
        found = await self.find_index_id(ctx, table_id, column)
        if found and found not in ids:
            ids.append(found)
        return ids

    async def _delete_quietly(self, ctx: SessionContext, table_id: str, column: str, blob_id: str) -> None:
        try:
            await self._blobs.delete(blob_id)
        except BlobNotFoundError:
            return
        except BackendError as e:
            self._logger.error(
                "index_delete_failed",
                table_id=table_id,
                column=column,
                index_file_id=blob_id,
                error=str(e),
                **ctx.log_context(),
            )
            return
        self._logger.info("index_deleted", table_id=table_id, column=column, index_file_id=blob_id)

    @staticmethod
    def _empty_index(table_id: str, column: str) -> IndexFile:
        return IndexFile(table_id=table_id, column=column, is_unique=True, updated_at=format_timestamp(utc_now()))


def build_map(column: str, documents: Sequence[Document]) -> dict[str, list[str]]:
    """Compute value -> document ids for ``column`` over ``documents``."""
    entries: dict[str, list[str]] = {}
    for document in documents:
        key = index_key(document.get(column))
        if key is None:
            continue
        bucket = entries.setdefault(key, [])
        doc_id = document[ID_FIELD]
        if doc_id not in bucket:
            bucket.append(doc_id)
    return entries


def _display(value: Any) -> str:
    return index_key(value) or ""


__all__ = ["IndexManager", "build_map"]
