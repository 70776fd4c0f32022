"""SQLModel table definition backing the local SQLite blob store.

Blobs are opaque to this layer: the JSON content column holds a whole table or
a whole index file, and nothing below the blob boundary is addressable. The
version column is bumped on every write and lets a version-checked write be
expressed as a single conditional UPDATE.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON
from sqlmodel import Field, SQLModel


class BlobRecord(SQLModel, table=True):
    """SQLModel table for one named blob under a parent."""

    __tablename__ = "blobs"

    blob_id: str = Field(primary_key=True)
    parent_id: str = Field(index=True)
    name: str = Field(index=True)
    content: dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    version: int = Field(default=1)
    trashed: bool = Field(default=False)
    created_at: datetime
    updated_at: datetime
