from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class BlobInfo(BaseModel):
    """Listing entry returned by a blob store."""

    id: str
    name: str
    trashed: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class VersionedBlob(BaseModel):
    """Blob content together with the version it was read at."""

    content: Any
    version: int = Field(ge=1)

    model_config = ConfigDict(frozen=True, extra="forbid")


__all__ = ["BlobInfo", "VersionedBlob"]
