"""Blob store persisting whole blobs to SQLite.

Uses SQLAlchemy's native async support with aiosqlite for non-blocking
database operations. Version-checked writes are a single conditional UPDATE,
so the check and the write cannot interleave with another writer.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from blobtables.errors import BlobNotFoundError, WriteConflictError
from blobtables.models.blob import BlobInfo, VersionedBlob
from blobtables.models.tables import BlobRecord


class SQLiteBlobStore:
    """Persists blobs to SQLite via SQLModel.

    Accepts an AsyncEngine via dependency injection to support both
    persistent and in-memory databases for testing.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._engine = engine
        self._logger = logger or structlog.get_logger(__name__)

    async def initialize_schema(self) -> None:
        """Create the blobs table if it doesn't exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._logger.info("blob_store_initialized")

    async def close(self) -> None:
        await self._engine.dispose()

    async def create(self, parent_id: str, name: str, content: Any) -> str:
        now = datetime.now(timezone.utc)
        record = BlobRecord(
            blob_id=uuid4().hex,
            parent_id=parent_id,
            name=name,
            content=content,
            version=1,
            created_at=now,
            updated_at=now,
        )
        blob_id = record.blob_id
        async with AsyncSession(self._engine) as session:
            session.add(record)
            await session.commit()
        self._logger.debug("blob_created", blob_id=blob_id, parent_id=parent_id, name=name)
        return blob_id

    async def get(self, blob_id: str) -> VersionedBlob:
        async with AsyncSession(self._engine) as session:
            record = await session.get(BlobRecord, blob_id)
            if record is None or record.trashed:
                raise BlobNotFoundError(blob_id)
            return VersionedBlob(content=record.content, version=record.version)

    async def put(self, blob_id: str, content: Any, expected_version: int | None = None) -> int:
        """Overwrite a blob, optionally only if it is still at ``expected_version``.

        Returns:
            The blob's new version.

        Raises:
            BlobNotFoundError: If the blob does not exist.
            WriteConflictError: If ``expected_version`` no longer matches.
        """
        statement = (
            update(BlobRecord)
            .where(BlobRecord.blob_id == blob_id, BlobRecord.trashed == False)  # noqa: E712
            .values(
                content=content,
                version=BlobRecord.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
        )
        if expected_version is not None:
            statement = statement.where(BlobRecord.version == expected_version)

        async with AsyncSession(self._engine) as session:
            result = await session.execute(statement)
            if result.rowcount == 0:
                current = await session.get(BlobRecord, blob_id)
                current_version = None if current is None or current.trashed else current.version
                await session.rollback()
                if current_version is None:
                    raise BlobNotFoundError(blob_id)
                raise WriteConflictError(blob_id, expected_version or 0, current_version)
            await session.commit()
            version = await session.scalar(select(BlobRecord.version).where(BlobRecord.blob_id == blob_id))

        self._logger.debug("blob_written", blob_id=blob_id, version=version)
        return int(version)

    async def delete(self, blob_id: str) -> None:
        async with AsyncSession(self._engine) as session:
            record = await session.get(BlobRecord, blob_id)
            if record is None:
                raise BlobNotFoundError(blob_id)
            await session.delete(record)
            await session.commit()
        self._logger.debug("blob_deleted", blob_id=blob_id)

    async def list_by_parent(self, parent_id: str) -> list[BlobInfo]:
        statement = select(BlobRecord).where(BlobRecord.parent_id == parent_id).order_by(BlobRecord.created_at)
        return await self._list(statement)

    async def list_by_name(self, name: str) -> list[BlobInfo]:
        statement = select(BlobRecord).where(BlobRecord.name == name).order_by(BlobRecord.created_at)
        return await self._list(statement)

    async def _list(self, statement) -> list[BlobInfo]:
        async with AsyncSession(self._engine) as session:
            result = await session.execute(statement)
            return [self._record_to_info(record) for record in result.scalars().all()]

    def _record_to_info(self, record: BlobRecord) -> BlobInfo:
        return BlobInfo(id=record.blob_id, name=record.name, trashed=record.trashed)


def create_async_engine_from_path(db_path: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine for the given database path.

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.

    Returns:
        AsyncEngine instance configured for aiosqlite.
    """
    if db_path == ":memory:":
        # A single shared connection keeps the in-memory database alive
        # across sessions.
        return create_async_engine(
            "sqlite+aiosqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(f"sqlite+aiosqlite:///{db_path}")
