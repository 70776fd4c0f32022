from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from blobtables.models.base import ensure_non_empty_text
from blobtables.models.enums import FilterOperator, SortDirection
from blobtables.models.table import Document

DEFAULT_PAGE_SIZE = 25


class FilterCondition(BaseModel):
    column: str
    operator: FilterOperator
    value: str

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    @field_validator("column")
    @classmethod
    def _validate_column(cls, value: str) -> str:
        return ensure_non_empty_text(value, "column")

    @field_validator("value", mode="before")
    @classmethod
    def _stringify_value(cls, value: Any) -> str:
        # Filter values arrive from form inputs; compare everything as text first.
        if isinstance(value, bool):
            return "true" if value else "false"
        if value is None:
            return ""
        return str(value)


class SortConfig(BaseModel):
    column: str
    direction: SortDirection = SortDirection.ASC

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("column")
    @classmethod
    def _validate_column(cls, value: str) -> str:
        return ensure_non_empty_text(value, "column")


class QueryState(BaseModel):
    filters: list[FilterCondition] = Field(default_factory=list)
    sort: list[SortConfig] = Field(default_factory=list)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1, alias="pageSize")

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    def has_filters(self) -> bool:
        return bool(self.filters)


class QueryResult(BaseModel):
    data: list[Document] = Field(default_factory=list)
    total: int = Field(ge=0)
    total_pages: int = Field(ge=0, alias="totalPages")

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


__all__ = ["FilterCondition", "SortConfig", "QueryState", "QueryResult", "DEFAULT_PAGE_SIZE"]
