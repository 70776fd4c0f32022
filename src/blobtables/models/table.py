from typing import Any

from pydantic import ConfigDict, Field, field_validator

from blobtables.models.base import RecordModel, ensure_non_empty_text
from blobtables.models.column import ID_FIELD, ColumnDefinition, is_system_key

Document = dict[str, Any]


class TableFile(RecordModel):
    """Everything a table blob holds: its name, schema and every document.

    Unlike the other records this one is mutable; the repository loads it,
    changes it in memory and writes the whole thing back.
    """

    name: str
    columns: list[ColumnDefinition] = Field(default_factory=list, alias="schema")
    documents: list[Document] = Field(default_factory=list)

    model_config = ConfigDict(frozen=False, extra="ignore", populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, value: str) -> str:
        return ensure_non_empty_text(value, "name")

    def to_record(self) -> dict[str, Any]:
        # Documents are free-form; keep their None values instead of dropping them.
        return {
            "name": self.name,
            "schema": [column.to_record() for column in self.columns],
            "documents": [dict(document) for document in self.documents],
        }

    def get_column(self, key: str) -> ColumnDefinition | None:
        return next((column for column in self.columns if column.key == key), None)

    def replace_column(self, column: ColumnDefinition) -> None:
        self.columns = [column if existing.key == column.key else existing for existing in self.columns]

    def unique_columns(self) -> list[ColumnDefinition]:
        return [column for column in self.columns if column.unique and not column.is_system]

    def find_document(self, doc_id: str) -> int | None:
        for position, document in enumerate(self.documents):
            if document.get(ID_FIELD) == doc_id:
                return position
        return None


def user_fields(document: Document) -> Document:
    """Strip the ``$``-prefixed system fields from a document."""
    return {key: value for key, value in document.items() if not is_system_key(key)}


__all__ = ["Document", "TableFile", "user_fields"]
