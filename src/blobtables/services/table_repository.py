"""Table repository: document and column operations on whole table blobs.

Every mutation is a read-modify-write of the entire table blob: load, change
in memory, overwrite. Under the default write policy two concurrent writers
to the same table race and the last one wins; the earlier change is lost
without an error. ``VersionCheckedWrites`` turns that loss into a
``WriteConflictError`` on stores that honour expected versions.

Mutations flow validator -> uniqueness pre-check -> table save -> index
update. Documents in the table blob are authoritative: once the table save
succeeds the mutation is committed, and a failed index write afterwards is
logged for operators rather than raised.
"""

import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from pydantic import ValidationError

from blobtables.errors import (
    BackendError,
    BlobNotFoundError,
    BlobTablesError,
    ConstraintError,
    DuplicateColumnError,
    FieldValidationError,
    NotFoundError,
    WriteConflictError,
)
from blobtables.models.base import next_timestamp, utc_now
from blobtables.models.blob import BlobInfo
from blobtables.models.column import (
    CREATED_AT_FIELD,
    ID_FIELD,
    UPDATED_AT_FIELD,
    ColumnDefinition,
    is_system_key,
    system_columns,
)
from blobtables.models.index_file import INDEX_FILE_SUFFIX, index_key
from blobtables.models.query import QueryResult, QueryState
from blobtables.models.session import SessionContext
from blobtables.models.table import Document, TableFile, user_fields
from blobtables.models.validation import FieldError
from blobtables.services.blob_client import BlobClient
from blobtables.services.index_manager import IndexManager, build_map
from blobtables.services.query_engine import apply_query
from blobtables.services.validator import compile_schema, validate_field
from blobtables.services.write_policy import LastWriterWins, WritePolicy

ColumnChange = tuple[ColumnDefinition, Any, Any]


class TableRepository:
    """Schema-enforcing CRUD over table blobs, keeping unique indexes in step.

    All dependencies are injected via constructor for testability. Reads may
    be served from a short-lived cache (``cache_ttl_seconds`` > 0); mutations
    always load the table fresh, since acting on a stale copy would overwrite
    newer data.
    """

    def __init__(
        self,
        blob_client: BlobClient,
        index_manager: IndexManager,
        write_policy: WritePolicy | None = None,
        cache_ttl_seconds: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], str] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._blobs = blob_client
        self._indexes = index_manager
        self._policy = write_policy or LastWriterWins()
        self._cache_ttl = cache_ttl_seconds
        self._cache: dict[str, tuple[float, TableFile]] = {}
        self._clock = clock
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._logger = logger or structlog.get_logger(__name__)

    async def __aenter__(self) -> "TableRepository":
        await self._blobs.initialize()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self._blobs.close()

    # Tables

    async def create_table(
        self,
        ctx: SessionContext,
        name: str,
        initial_schema: Iterable[ColumnDefinition | Mapping[str, Any]] | None = None,
    ) -> str:
        """Write a new table blob holding the system columns and no documents.

        Returns:
            The backend id of the table blob.
        """
        columns = system_columns()
        for raw in initial_schema or []:
            column = self._coerce_column(raw)
            self._reject_system_column(column.key)
            if any(existing.key == column.key for existing in columns):
                raise DuplicateColumnError(column.key)
            columns.append(column.with_index(None))

        table = TableFile(name=name, columns=columns)
        table_id = await self._blobs.create(ctx.database_id, name, table.to_record())
        self._logger.info("table_created", table_id=table_id, name=name, column_count=len(columns), **ctx.log_context())
        return table_id

    async def list_tables(self, ctx: SessionContext) -> list[BlobInfo]:
        """Table blobs under the session's database. Listing may lag recent writes."""
        entries = await self._blobs.list_by_parent(ctx.database_id)
        return [entry for entry in entries if not entry.trashed and not entry.name.endswith(INDEX_FILE_SUFFIX)]

    async def get_table(self, ctx: SessionContext, table_id: str) -> TableFile:
        return await self._load_for_read(table_id)

    async def get_schema(self, ctx: SessionContext, table_id: str) -> list[ColumnDefinition]:
        table = await self._load_for_read(table_id)
        return list(table.columns)

    async def delete_table(self, ctx: SessionContext, table_id: str) -> None:
        """Delete the table blob, then its index blobs on a best-effort basis."""
        table, _ = await self._load(table_id)
        try:
            await self._blobs.delete(table_id)
        except BlobNotFoundError as e:
            raise NotFoundError("table", table_id) from e
        self._cache.pop(table_id, None)

        for column in table.unique_columns():
            await self._indexes.delete(ctx, table_id, column.key, column.index_file_id)
        self._logger.info("table_deleted", table_id=table_id, **ctx.log_context())

    # Documents

    async def get_document(self, ctx: SessionContext, table_id: str, doc_id: str) -> Document:
        table = await self._load_for_read(table_id)
        position = table.find_document(doc_id)
        if position is None:
            raise NotFoundError("document", doc_id)
        return dict(table.documents[position])

    async def query_documents(
        self,
        ctx: SessionContext,
        table_id: str,
        query: QueryState | Mapping[str, Any] | None = None,
    ) -> QueryResult:
        state = query if isinstance(query, QueryState) else QueryState.model_validate(query or {})
        table = await self._load_for_read(table_id)
        return apply_query(table.documents, state, table.columns)

    async def add_document(self, ctx: SessionContext, table_id: str, payload: Mapping[str, Any]) -> Document:
        """Validate, uniqueness-check, stamp and append a document.

        Raises:
            FieldValidationError: If the payload does not satisfy the schema.
            ConstraintError: If a unique column already holds one of its values.
            NotFoundError: If the table does not exist.
        """
        table, version = await self._load(table_id)
        data = compile_schema(table.columns).validate(payload)
        await self._ensure_unique(ctx, table_id, table, data, table.unique_columns())

        stamp = next_timestamp(self._clock())
        document: Document = {
            ID_FIELD: self._new_document_id(table),
            CREATED_AT_FIELD: stamp,
            UPDATED_AT_FIELD: stamp,
            **data,
        }
        table.documents.append(document)
        version = await self._save(table_id, table, version)

        changes = [
            (column, None, document.get(column.key))
            for column in table.unique_columns()
            if index_key(document.get(column.key)) is not None
        ]
        await self._sync_indexes(ctx, table_id, table, version, document[ID_FIELD], changes)

        self._logger.info("document_added", table_id=table_id, doc_id=document[ID_FIELD], **ctx.log_context())
        return dict(document)

    async def update_document(
        self,
        ctx: SessionContext,
        table_id: str,
        doc_id: str,
        patch: Mapping[str, Any],
    ) -> Document:
        """Merge ``patch`` into an existing document.

        The patch is merged over the stored user fields and the result is
        validated as a whole. ``$id`` and ``$createdAt`` never change;
        ``$updatedAt`` always moves forward.
        """
        table, version = await self._load(table_id)
        position = table.find_document(doc_id)
        if position is None:
            raise NotFoundError("document", doc_id)
        existing = table.documents[position]

        data = compile_schema(table.columns).validate({**user_fields(existing), **user_fields(patch)})
        changed = [
            column
            for column in table.unique_columns()
            if index_key(existing.get(column.key)) != index_key(data.get(column.key))
        ]
        await self._ensure_unique(ctx, table_id, table, data, changed, exclude_doc_id=doc_id)

        updated: Document = {
            **existing,
            **data,
            ID_FIELD: existing[ID_FIELD],
            CREATED_AT_FIELD: existing.get(CREATED_AT_FIELD),
            UPDATED_AT_FIELD: next_timestamp(self._clock(), existing.get(UPDATED_AT_FIELD)),
        }
        table.documents[position] = updated
        version = await self._save(table_id, table, version)

        changes = [(column, existing.get(column.key), updated.get(column.key)) for column in changed]
        await self._sync_indexes(ctx, table_id, table, version, doc_id, changes)

        self._logger.info("document_updated", table_id=table_id, doc_id=doc_id, **ctx.log_context())
        return dict(updated)

    async def delete_document(self, ctx: SessionContext, table_id: str, doc_id: str) -> None:
        table, version = await self._load(table_id)
        position = table.find_document(doc_id)
        if position is None:
            raise NotFoundError("document", doc_id)

        removed = table.documents.pop(position)
        await self._save(table_id, table, version)
        await self._retract(ctx, table_id, table, [removed])

        self._logger.info("document_deleted", table_id=table_id, doc_id=doc_id, **ctx.log_context())

    async def bulk_delete(self, ctx: SessionContext, table_id: str, doc_ids: Iterable[str]) -> int:
        """Delete every listed document in one save. Unknown ids are ignored.

        Returns:
            The number of documents removed.
        """
        wanted = set(doc_ids)
        table, version = await self._load(table_id)
        removed = [document for document in table.documents if document.get(ID_FIELD) in wanted]
        if not removed:
            return 0

        table.documents = [document for document in table.documents if document.get(ID_FIELD) not in wanted]
        await self._save(table_id, table, version)
        await self._retract(ctx, table_id, table, removed)

        self._logger.info(
            "documents_bulk_deleted",
            table_id=table_id,
            requested=len(wanted),
            deleted=len(removed),
            **ctx.log_context(),
        )
        return len(removed)

    async def check_constraints(
        self,
        ctx: SessionContext,
        table_id: str,
        payload: Mapping[str, Any],
        exclude_doc_id: str | None = None,
    ) -> list[FieldError]:
        """Report validation and uniqueness problems without writing anything.

        Meant for pre-submit checks in a form; passing the check does not
        reserve the values.
        """
        table, _ = await self._load(table_id)
        errors: list[FieldError] = []
        try:
            data = compile_schema(table.columns).validate(payload)
        except FieldValidationError as e:
            errors.extend(e.errors)
            data = user_fields(payload)

        for column in table.unique_columns():
            check = await self._indexes.check_unique(
                ctx, table_id, column.key, data.get(column.key), exclude_doc_id, column.index_file_id
            )
            if not check.safe:
                errors.append(FieldError(field=column.key, message=check.error or "Value already exists.", code="unique"))
        return errors

    # Columns

    async def add_column(
        self,
        ctx: SessionContext,
        table_id: str,
        column: ColumnDefinition | Mapping[str, Any],
    ) -> ColumnDefinition:
        """Append a column, backfilling its default into documents that lack the key.

        A unique column gets its index built from the existing documents before
        the schema is saved.

        Raises:
            DuplicateColumnError: If the key is already in the schema.
            ConstraintError: If the column is unique and existing values collide.
            BackendError: If the index or the table cannot be written; the
                column is not added.
        """
        column = self._coerce_column(column).with_index(None)
        self._reject_system_column(column.key)
        if column.default is not None:
            problem = validate_field(column.default, column)
            if problem is not None:
                raise FieldValidationError([problem.model_copy(update={"field": f"{column.key}.default"})])

        table, version = await self._load(table_id)
        if table.get_column(column.key) is not None:
            raise DuplicateColumnError(column.key)

        backfilled = 0
        if column.default is not None:
            for document in table.documents:
                if column.key not in document:
                    document[column.key] = column.default
                    backfilled += 1
        table.columns.append(column)
        if column.unique:
            self._reject_existing_duplicates(table, column.key)
            column = await self._attach_rebuilt_index(ctx, table_id, table, version, column, fresh=True)
        else:
            await self._save(table_id, table, version)

        self._logger.info(
            "column_added",
            table_id=table_id,
            column=column.key,
            unique=column.unique,
            backfilled=backfilled,
            **ctx.log_context(),
        )
        return column

    async def drop_column(self, ctx: SessionContext, table_id: str, column_key: str) -> None:
        """Remove a column and its values from every document, then its index."""
        self._reject_system_column(column_key)
        table, version = await self._load(table_id)
        column = table.get_column(column_key)
        if column is None:
            raise NotFoundError("column", column_key)

        table.columns = [existing for existing in table.columns if existing.key != column_key]
        for document in table.documents:
            document.pop(column_key, None)
        await self._save(table_id, table, version)

        if column.unique or column.index_file_id:
            await self._indexes.delete(ctx, table_id, column_key, column.index_file_id)

        self._logger.info("column_dropped", table_id=table_id, column=column_key, **ctx.log_context())

    async def update_column(
        self,
        ctx: SessionContext,
        table_id: str,
        column_key: str,
        changes: Mapping[str, Any],
    ) -> ColumnDefinition:
        """Change a column's properties. The key cannot change.

        Turning ``unique`` on builds the index from existing documents;
        turning it off deletes the index. Stored values are not rewritten when
        the type or rules change.
        """
        self._reject_system_column(column_key)
        table, version = await self._load(table_id)
        current = table.get_column(column_key)
        if current is None:
            raise NotFoundError("column", column_key)

        merged = self._merge_column(current, changes)
        became_unique = merged.unique and not current.unique
        lost_unique = current.unique and not merged.unique
        if became_unique:
            self._reject_existing_duplicates(table, column_key)

        merged = merged.with_index(current.index_file_id if merged.unique and not became_unique else None)
        table.replace_column(merged)
        if became_unique:
            merged = await self._attach_rebuilt_index(ctx, table_id, table, version, merged, fresh=True)
        else:
            await self._save(table_id, table, version)

        if lost_unique:
            await self._indexes.delete(ctx, table_id, column_key, current.index_file_id)

        self._logger.info(
            "column_updated",
            table_id=table_id,
            column=column_key,
            changed=sorted(changes),
            **ctx.log_context(),
        )
        return merged

    async def rebuild_index(self, ctx: SessionContext, table_id: str, column_key: str) -> str:
        """Recompute a unique column's index from the table's documents."""
        table, version = await self._load(table_id)
        column = table.get_column(column_key)
        if column is None:
            raise NotFoundError("column", column_key)
        if not column.unique:
            raise FieldValidationError.single(column_key, "Only unique columns have an index", "not_unique")

        column = await self._attach_rebuilt_index(ctx, table_id, table, version, column)
        return column.index_file_id or ""

    # Internals

    async def _load(self, table_id: str) -> tuple[TableFile, int]:
        try:
            blob = await self._blobs.get(table_id)
        except BlobNotFoundError as e:
            raise NotFoundError("table", table_id) from e
        try:
            table = TableFile.from_record(blob.content)
        except ValidationError as e:
            raise BackendError("decode", table_id, e) from e
        self._remember(table_id, table)
        return table, blob.version

    async def _load_for_read(self, table_id: str) -> TableFile:
        cached = self._cache.get(table_id)
        if cached is not None and cached[0] > time.monotonic():
            self._logger.debug("table_cache_hit", table_id=table_id)
            return cached[1].model_copy(deep=True)
        table, _ = await self._load(table_id)
        return table

    async def _save(self, table_id: str, table: TableFile, loaded_version: int) -> int:
        try:
            version = await self._blobs.put(table_id, table.to_record(), self._policy.expected_version(loaded_version))
        except BlobNotFoundError as e:
            raise NotFoundError("table", table_id) from e
        except WriteConflictError:
            self._cache.pop(table_id, None)
            self._logger.warning("table_write_conflict", table_id=table_id, loaded_version=loaded_version)
            raise
        self._remember(table_id, table)
        return version

    def _remember(self, table_id: str, table: TableFile) -> None:
        if self._cache_ttl <= 0:
            return
        self._cache[table_id] = (time.monotonic() + self._cache_ttl, table.model_copy(deep=True))

    async def _ensure_unique(
        self,
        ctx: SessionContext,
        table_id: str,
        table: TableFile,
        data: Document,
        columns: Sequence[ColumnDefinition],
        exclude_doc_id: str | None = None,
    ) -> None:
        for column in columns:
            value = data.get(column.key)
            check = await self._indexes.check_unique(
                ctx, table_id, column.key, value, exclude_doc_id, column.index_file_id
            )
            if not check.safe:
                self._logger.info("unique_constraint_rejected", table_id=table_id, column=column.key)
                raise ConstraintError(column.key, value, check.error)

    async def _sync_indexes(
        self,
        ctx: SessionContext,
        table_id: str,
        table: TableFile,
        version: int,
        doc_id: str,
        changes: Sequence[ColumnChange],
    ) -> None:
        pointers_changed = False
        for column, old_value, new_value in changes:
            index_id = await self._indexes.update(
                ctx, table_id, column.key, old_value, new_value, doc_id, column.index_file_id
            )
            if index_id is None:
                self._logger.error(
                    "index_out_of_sync",
                    table_id=table_id,
                    column=column.key,
                    doc_id=doc_id,
                    hint="run rebuild_index for this column",
                    **ctx.log_context(),
                )
            elif index_id != column.index_file_id:
                table.replace_column(column.with_index(index_id))
                pointers_changed = True

        if pointers_changed:
            await self._save_pointers(table_id, table, version)

    async def _retract(self, ctx: SessionContext, table_id: str, table: TableFile, removed: list[Document]) -> None:
        for column in table.unique_columns():
            await self._indexes.retract(ctx, table_id, column.key, removed, column.index_file_id)

    async def _save_pointers(self, table_id: str, table: TableFile, version: int) -> None:
        # The document write already committed; a lost pointer only costs a
        # name lookup on the next access.
        try:
            await self._save(table_id, table, version)
        except (BackendError, WriteConflictError, NotFoundError) as e:
            self._logger.error("index_pointer_save_failed", table_id=table_id, error=str(e))
            return
        self._logger.debug("index_pointers_saved", table_id=table_id)

    async def _attach_rebuilt_index(
        self,
        ctx: SessionContext,
        table_id: str,
        table: TableFile,
        version: int,
        column: ColumnDefinition,
        fresh: bool = False,
    ) -> ColumnDefinition:
        """Build the index from the in-memory documents, then save the table with its pointer.

        A ``fresh`` index belongs to a column not yet stored as unique; it is
        deleted again when that save fails, so no unique column is ever
        persisted without its index.
        """
        index_id = await self._indexes.rebuild(ctx, table_id, column.key, table.documents, column.index_file_id)
        column = column.with_index(index_id)
        table.replace_column(column)
        try:
            await self._save(table_id, table, version)
        except BlobTablesError:
            if fresh:
                await self._indexes.delete(ctx, table_id, column.key, index_id)
            raise
        return column

    def _new_document_id(self, table: TableFile) -> str:
        taken = {document.get(ID_FIELD) for document in table.documents}
        doc_id = self._id_factory()
        while doc_id in taken:
            doc_id = self._id_factory()
        return doc_id

    @staticmethod
    def _coerce_column(column: ColumnDefinition | Mapping[str, Any]) -> ColumnDefinition:
        if isinstance(column, ColumnDefinition):
            return column
        try:
            return ColumnDefinition.model_validate(column)
        except ValidationError as e:
            key = str(column.get("key", "column"))
            raise FieldValidationError(
                [
                    FieldError(field=".".join([key, *(str(part) for part in error["loc"])]), message=error["msg"], code=error["type"])
                    for error in e.errors()
                ]
            ) from e

    @classmethod
    def _merge_column(cls, current: ColumnDefinition, changes: Mapping[str, Any]) -> ColumnDefinition:
        record = current.model_dump(mode="json", by_alias=True)
        for name, value in changes.items():
            field = ColumnDefinition.model_fields.get(name)
            alias = field.alias if field is not None and field.alias else name
            if alias in ("key", "indexFileId"):
                continue
            record[alias] = value
        return cls._coerce_column(record)

    @staticmethod
    def _reject_system_column(column_key: str) -> None:
        if is_system_key(column_key):
            raise FieldValidationError.single(column_key, "Cannot modify system columns", "reserved_column")

    @staticmethod
    def _reject_existing_duplicates(table: TableFile, column_key: str) -> None:
        for value, holders in build_map(column_key, table.documents).items():
            if len(holders) > 1:
                raise ConstraintError(column_key, value, f"Value '{value}' is held by {len(holders)} documents.")
