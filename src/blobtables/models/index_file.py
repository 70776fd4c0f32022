import json
from typing import Any

from pydantic import ConfigDict, Field, field_validator

from blobtables.models.base import RecordModel, ensure_non_empty_text

INDEX_FILE_SUFFIX = ".index"


def index_file_name(table_id: str, column: str) -> str:
    """Deterministic blob name that lets a lost index pointer be rediscovered."""
    return f"{table_id}_{column}{INDEX_FILE_SUFFIX}"


def index_key(value: Any) -> str | None:
    """Stringify a column value into an index map key.

    Arrays become a JSON list of their element keys, so element boundaries
    survive. Returns None for values that are never indexed: missing, null,
    an empty string or an empty array.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        if not value:
            return None
        return json.dumps([index_key(item) for item in value])
    return str(value)


class IndexFile(RecordModel):
    """Content of a unique-index blob: column value -> ids of documents holding it."""

    table_id: str = Field(alias="tableId")
    column: str
    is_unique: bool = Field(default=True, alias="isUnique")
    entries: dict[str, list[str]] = Field(default_factory=dict, alias="map")
    updated_at: str = Field(alias="updatedAt")

    model_config = ConfigDict(frozen=False, extra="ignore", populate_by_name=True)

    @field_validator("table_id", "column")
    @classmethod
    def _ensure_non_empty(cls, value: str) -> str:
        return ensure_non_empty_text(value, "index identifier")

    def ids_for(self, key: str) -> list[str]:
        return list(self.entries.get(key, []))

    def remove(self, key: str, doc_id: str) -> None:
        bucket = self.entries.get(key)
        if bucket is None:
            return
        remaining = [existing for existing in bucket if existing != doc_id]
        if remaining:
            self.entries[key] = remaining
        else:
            del self.entries[key]

    def add(self, key: str, doc_id: str) -> None:
        bucket = self.entries.setdefault(key, [])
        if doc_id not in bucket:
            bucket.append(doc_id)


__all__ = ["IndexFile", "index_file_name", "index_key", "INDEX_FILE_SUFFIX"]
