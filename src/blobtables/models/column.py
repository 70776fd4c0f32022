import re
from typing import Any

from pydantic import Field, field_validator, model_validator

from blobtables.models.base import RecordModel, ensure_non_empty_text
from blobtables.models.enums import ColumnType

SYSTEM_PREFIX = "$"
ID_FIELD = "$id"
CREATED_AT_FIELD = "$createdAt"
UPDATED_AT_FIELD = "$updatedAt"
SYSTEM_FIELDS = (ID_FIELD, CREATED_AT_FIELD, UPDATED_AT_FIELD)


def is_system_key(key: str) -> bool:
    return key.startswith(SYSTEM_PREFIX)


class ValidationRules(RecordModel):
    """Optional per-column rules. String rules and numeric rules share one shape."""

    min_length: int | None = Field(default=None, ge=0, alias="minLength")
    max_length: int | None = Field(default=None, ge=0, alias="maxLength")
    pattern: str | None = None
    email: bool = False
    url: bool = False
    enum: list[str] | None = None
    min: float | None = None
    max: float | None = None
    message: str | None = None

    @field_validator("pattern")
    @classmethod
    def _validate_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return None
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid pattern: {e}") from e
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> "ValidationRules":
        if self.min_length is not None and self.max_length is not None:
            if self.max_length < self.min_length:
                raise ValueError("maxLength must be greater than or equal to minLength")
        if self.min is not None and self.max is not None and self.max < self.min:
            raise ValueError("max must be greater than or equal to min")
        return self

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_defaults=True)


class ColumnDefinition(RecordModel):
    key: str
    type: ColumnType
    required: bool = False
    array: bool = False
    default: Any = None
    unique: bool = False
    index_file_id: str | None = Field(default=None, alias="indexFileId")
    relation_table_id: str | None = Field(default=None, alias="relationTableId")
    validation: ValidationRules | None = None

    @field_validator("key")
    @classmethod
    def _validate_key(cls, value: str) -> str:
        return ensure_non_empty_text(value, "key").strip()

    @property
    def is_system(self) -> bool:
        return is_system_key(self.key)

    def with_index(self, index_file_id: str | None) -> "ColumnDefinition":
        return self.model_copy(update={"index_file_id": index_file_id})


def system_columns() -> list[ColumnDefinition]:
    """The three columns every new table starts with."""
    return [
        ColumnDefinition(key=ID_FIELD, type=ColumnType.STRING, required=True),
        ColumnDefinition(key=CREATED_AT_FIELD, type=ColumnType.DATETIME, required=True),
        ColumnDefinition(key=UPDATED_AT_FIELD, type=ColumnType.DATETIME, required=True),
    ]


__all__ = [
    "ColumnDefinition",
    "ValidationRules",
    "SYSTEM_FIELDS",
    "ID_FIELD",
    "CREATED_AT_FIELD",
    "UPDATED_AT_FIELD",
    "is_system_key",
    "system_columns",
]
