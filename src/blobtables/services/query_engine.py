"""In-memory filtering, sorting and pagination of table documents.

Stateless: every read re-runs the query over the loaded documents. The input
list and its documents are never mutated.
"""

import math
from collections.abc import Sequence
from datetime import datetime
from functools import cmp_to_key
from typing import Any

from blobtables.errors import FieldValidationError
from blobtables.models.base import parse_instant, parse_timestamp
from blobtables.models.column import ColumnDefinition
from blobtables.models.enums import ColumnType, FilterOperator, SortDirection
from blobtables.models.query import FilterCondition, QueryResult, QueryState, SortConfig
from blobtables.models.table import Document
from blobtables.models.validation import FieldError

OPERATORS_BY_TYPE: dict[ColumnType, tuple[FilterOperator, ...]] = {
    ColumnType.STRING: (FilterOperator.EQ, FilterOperator.NEQ, FilterOperator.CONTAINS),
    ColumnType.INTEGER: (
        FilterOperator.EQ,
        FilterOperator.NEQ,
        FilterOperator.GT,
        FilterOperator.LT,
        FilterOperator.GTE,
        FilterOperator.LTE,
    ),
    ColumnType.DATETIME: (
        FilterOperator.EQ,
        FilterOperator.GT,
        FilterOperator.LT,
        FilterOperator.GTE,
        FilterOperator.LTE,
    ),
    ColumnType.BOOLEAN: (FilterOperator.EQ, FilterOperator.NEQ),
    ColumnType.RELATION: (FilterOperator.EQ, FilterOperator.NEQ),
    ColumnType.STORAGE: (FilterOperator.EQ, FilterOperator.NEQ),
}

_ORDERING = {
    FilterOperator.GT: lambda c: c > 0,
    FilterOperator.LT: lambda c: c < 0,
    FilterOperator.GTE: lambda c: c >= 0,
    FilterOperator.LTE: lambda c: c <= 0,
}


def apply_query(
    documents: Sequence[Document],
    query: QueryState,
    columns: Sequence[ColumnDefinition] | None = None,
) -> QueryResult:
    """Filter, sort and paginate ``documents``.

    Args:
        documents: Documents of one table.
        query: Filters (ANDed), sort keys (in tie-break order) and a 1-indexed page.
        columns: The table schema. When given, filter operators are checked
            against column types and values compare by type; otherwise types
            are inferred from the values.

    Returns:
        The requested page, with ``total`` and ``total_pages`` counting every
        document that passed the filters.

    Raises:
        FieldValidationError: If a filter uses an operator its column type does not support.
    """
    types = {column.key: column.type for column in columns or []}
    _check_operators(query.filters, types)

    matched = [document for document in documents if _matches_all(document, query.filters, types)]
    ordered = _sort(matched, query.sort, types)

    total = len(ordered)
    total_pages = math.ceil(total / query.page_size)
    start = (query.page - 1) * query.page_size
    page = ordered[start : start + query.page_size]

    return QueryResult(data=[dict(document) for document in page], total=total, total_pages=total_pages)


def operators_for(column_type: ColumnType) -> tuple[FilterOperator, ...]:
    return OPERATORS_BY_TYPE[column_type]


def _check_operators(filters: Sequence[FilterCondition], types: dict[str, ColumnType]) -> None:
    errors = []
    for position, condition in enumerate(filters):
        column_type = types.get(condition.column)
        if column_type is not None and condition.operator not in OPERATORS_BY_TYPE[column_type]:
            errors.append(
                FieldError(
                    field=f"filters.{position}",
                    message=f"Operator '{condition.operator}' is not supported for {column_type} column '{condition.column}'",
                    code="unsupported_operator",
                )
            )
    if errors:
        raise FieldValidationError(errors)


def _matches_all(document: Document, filters: Sequence[FilterCondition], types: dict[str, ColumnType]) -> bool:
    return all(_matches(document.get(condition.column), condition, types.get(condition.column)) for condition in filters)


def _matches(value: Any, condition: FilterCondition, column_type: ColumnType | None) -> bool:
    if value is None:
        return condition.operator == FilterOperator.NEQ

    operator = condition.operator
    if operator == FilterOperator.CONTAINS:
        return condition.value.casefold() in _text(value).casefold()

    comparison = _compare_to_filter(value, condition.value, column_type)
    if operator == FilterOperator.EQ:
        return comparison == 0
    if operator == FilterOperator.NEQ:
        return comparison != 0
    if comparison is None:
        # Ordering operators never match values that do not parse.
        return False
    return _ORDERING[operator](comparison)


def _compare_to_filter(value: Any, raw: str, column_type: ColumnType | None) -> int | None:
    """Compare a stored value with a filter's text value; None when incomparable."""
    if column_type == ColumnType.DATETIME:
        left, right = parse_instant(value), parse_instant(raw)
        if left is None or right is None:
            return None
        return _sign(left, right)
    if column_type is None:
        left, right = _iso_instant(value), _iso_instant(raw)
        if left is not None and right is not None:
            return _sign(left, right)

    if column_type in (None, ColumnType.INTEGER):
        left_number, right_number = _numeric(value), _numeric(raw)
        if left_number is not None and right_number is not None:
            return _sign(left_number, right_number)
        if column_type == ColumnType.INTEGER:
            return None

    left_text, right_text = _text(value).casefold(), raw.casefold()
    return _sign(left_text, right_text)


def _sort(documents: list[Document], sort: Sequence[SortConfig], types: dict[str, ColumnType]) -> list[Document]:
    if not sort:
        return list(documents)

    def compare(a: Document, b: Document) -> int:
        for config in sort:
            left, right = a.get(config.column), b.get(config.column)
            if left is None and right is None:
                continue
            # Nulls sort last whichever direction is requested.
            if left is None:
                return 1
            if right is None:
                return -1
            result = _compare_values(left, right, types.get(config.column))
            if result:
                return result if config.direction == SortDirection.ASC else -result
        return 0

    return sorted(documents, key=cmp_to_key(compare))


def _compare_values(left: Any, right: Any, column_type: ColumnType | None) -> int:
    if isinstance(left, bool) and isinstance(right, bool):
        return _sign(left, right)
    if _is_number(left) and _is_number(right):
        return _sign(left, right)
    if column_type == ColumnType.DATETIME:
        left_instant, right_instant = parse_instant(left), parse_instant(right)
        if left_instant is not None and right_instant is not None:
            return _sign(left_instant, right_instant)
    left_text, right_text = _text(left), _text(right)
    return _sign(left_text.casefold(), right_text.casefold()) or _sign(left_text, right_text)


def _sign(left: Any, right: Any) -> int:
    return (left > right) - (left < right)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _numeric(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if _is_number(value):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _iso_instant(value: Any) -> datetime | None:
    # Untyped columns only treat ISO-looking text as an instant.
    if not isinstance(value, str) or len(value) < 10 or value[4:5] != "-":
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_text(item) for item in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


__all__ = ["apply_query", "operators_for", "OPERATORS_BY_TYPE"]
