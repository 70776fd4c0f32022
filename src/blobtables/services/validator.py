"""Schema validator built from a table's column definitions.

``compile_schema`` turns a column list into a ``DocumentValidator`` made of
one pydantic ``TypeAdapter`` per user column. Compiled validators are pure and
cached by the serialized schema, so repeated writes against the same table do
not rebuild them. Validation collects the errors of every field before
failing; a form needs to show all of them at once.
"""

import json
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any

from pydantic import AfterValidator, AnyUrl, BeforeValidator, Field, PlainValidator, StringConstraints, TypeAdapter, validate_email
from pydantic import ValidationError as PydanticValidationError
from pydantic_core import ErrorDetails, PydanticCustomError

from blobtables.errors import FieldValidationError
from blobtables.models.base import format_timestamp, parse_instant
from blobtables.models.column import ColumnDefinition, ValidationRules, is_system_key
from blobtables.models.enums import ColumnType
from blobtables.models.table import Document
from blobtables.models.validation import FieldError

# Codes for rule violations; a column's custom message replaces theirs.
RULE_CODES = frozenset(
    {
        "string_too_short",
        "string_too_long",
        "pattern_mismatch",
        "invalid_email",
        "invalid_url",
        "not_in_enum",
        "greater_than_equal",
        "less_than_equal",
    }
)

_URL = TypeAdapter(AnyUrl)


def _number(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _one_of(choices: list[str]):
    allowed = list(choices)

    def check(value: str) -> str:
        if value not in allowed:
            raise PydanticCustomError("not_in_enum", "Must be one of: {choices}", {"choices": ", ".join(allowed)})
        return value

    return check


def _matches(pattern: str):
    compiled = re.compile(pattern)

    def check(value: str) -> str:
        if compiled.search(value) is None:
            raise PydanticCustomError("pattern_mismatch", "Must match pattern: {pattern}", {"pattern": pattern})
        return value

    return check


def _email(value: str) -> str:
    try:
        validate_email(value)
    except PydanticCustomError as e:
        raise PydanticCustomError("invalid_email", "Invalid email format") from e
    return value


def _url(value: str) -> str:
    try:
        _URL.validate_python(value)
    except PydanticValidationError as e:
        raise PydanticCustomError("invalid_url", "Invalid URL format") from e
    return value


def _instant(value: Any) -> str:
    """Accept anything that names a valid instant; keep strings as given."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise PydanticCustomError("datetime_type", "Invalid datetime format")
    if isinstance(value, str) and not value.strip():
        return value
    parsed = parse_instant(value)
    if parsed is None:
        raise PydanticCustomError("datetime_parsing", "Invalid datetime format")
    if isinstance(value, str):
        return value
    return format_timestamp(parsed)


def _not_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise PydanticCustomError("int_type", "Input should be a valid integer")
    return value


def _annotated(base: Any, metadata: list[Any]) -> Any:
    if not metadata:
        return base
    return Annotated[(base, *metadata)]


def _string_type(rules: ValidationRules) -> Any:
    if rules.enum:
        return _annotated(str, [AfterValidator(_one_of(rules.enum))])

    metadata: list[Any] = []
    if rules.min_length is not None or rules.max_length is not None:
        metadata.append(StringConstraints(min_length=rules.min_length, max_length=rules.max_length))
    if rules.pattern:
        metadata.append(AfterValidator(_matches(rules.pattern)))
    if rules.email:
        metadata.append(AfterValidator(_email))
    if rules.url:
        metadata.append(AfterValidator(_url))
    return _annotated(str, metadata)


def _element_type(column: ColumnDefinition) -> Any:
    rules = column.validation or ValidationRules()
    if column.type == ColumnType.STRING:
        return _string_type(rules)
    if column.type == ColumnType.INTEGER:
        return _annotated(int, [BeforeValidator(_not_bool), Field(ge=rules.min, le=rules.max)])
    if column.type == ColumnType.BOOLEAN:
        return bool
    if column.type == ColumnType.DATETIME:
        return _annotated(str, [PlainValidator(_instant)])
    # relation and storage values are opaque identifiers
    return str


class _CompiledColumn:
    def __init__(self, column: ColumnDefinition) -> None:
        self.column = column
        element = _element_type(column)
        self.adapter: TypeAdapter[Any] = TypeAdapter(list[element] if column.array else element)

    def validate(self, value: Any) -> Any:
        return self.adapter.validate_python(value)

    def field_errors(self, error: PydanticValidationError) -> list[FieldError]:
        return [self._field_error(detail) for detail in error.errors()]

    def _field_error(self, detail: ErrorDetails) -> FieldError:
        path = ".".join([self.column.key, *(str(part) for part in detail["loc"])])
        code = detail["type"]
        custom = self.column.validation.message if self.column.validation else None
        if custom and code in RULE_CODES:
            message = custom
        else:
            message = _friendly_message(detail)
        return FieldError(field=path, message=message, code=code)


def _friendly_message(detail: ErrorDetails) -> str:
    ctx = detail.get("ctx") or {}
    code = detail["type"]
    if code == "string_too_short":
        return f"Minimum {ctx.get('min_length')} characters required"
    if code == "string_too_long":
        return f"Maximum {ctx.get('max_length')} characters allowed"
    if code == "greater_than_equal":
        return f"Minimum value is {_number(ctx.get('ge'))}"
    if code == "less_than_equal":
        return f"Maximum value is {_number(ctx.get('le'))}"
    if code in ("int_from_float", "int_parsing", "int_type"):
        return "Must be a whole number"
    return detail["msg"]


class DocumentValidator:
    """Validates and coerces the user fields of a document.

    System (``$``) keys are dropped from the input; the repository stamps them.
    Keys without a column definition pass through untouched.
    """

    def __init__(self, columns: Sequence[ColumnDefinition]) -> None:
        self._columns = [_CompiledColumn(column) for column in columns if not column.is_system]

    def validate(self, payload: Mapping[str, Any]) -> Document:
        """Return the normalized user fields of ``payload``.

        Raises:
            FieldValidationError: With every field-level problem found.
        """
        data = {key: value for key, value in payload.items() if not is_system_key(key)}
        normalized = dict(data)
        errors: list[FieldError] = []

        for compiled in self._columns:
            column = compiled.column
            present = column.key in data
            value = data.get(column.key)

            if not column.required:
                if not present or value is None or value == "":
                    continue
            elif not present:
                if column.default is None:
                    errors.append(FieldError(field=column.key, message="Required", code="missing"))
                    continue
                value = column.default

            try:
                normalized[column.key] = compiled.validate(value)
            except PydanticValidationError as e:
                errors.extend(compiled.field_errors(e))

        if errors:
            raise FieldValidationError(errors)
        return normalized


def schema_fingerprint(columns: Sequence[ColumnDefinition]) -> str:
    """Stable serialization of the parts of a schema that affect validation."""
    payload = [
        column.model_dump(mode="json", by_alias=True, exclude={"index_file_id"})
        for column in columns
        if not column.is_system
    ]
    return json.dumps(payload, sort_keys=True, default=str)


@lru_cache(maxsize=256)
def _compile_fingerprint(fingerprint: str) -> DocumentValidator:
    columns = [ColumnDefinition.model_validate(item) for item in json.loads(fingerprint)]
    return DocumentValidator(columns)


def compile_schema(columns: Sequence[ColumnDefinition]) -> DocumentValidator:
    return _compile_fingerprint(schema_fingerprint(columns))


def validate_document(payload: Mapping[str, Any], columns: Sequence[ColumnDefinition]) -> Document:
    return compile_schema(columns).validate(payload)


def validate_field(value: Any, column: ColumnDefinition) -> FieldError | None:
    """Check one value against one column, returning its first problem if any."""
    try:
        compile_schema([column]).validate({column.key: value})
    except FieldValidationError as e:
        return e.errors[0]
    return None


def validation_summary(rules: ValidationRules | None) -> list[str]:
    """Human-readable list of the rules configured on a column."""
    if rules is None:
        return []

    summary: list[str] = []
    if rules.min_length is not None:
        summary.append(f"Min {rules.min_length} chars")
    if rules.max_length is not None:
        summary.append(f"Max {rules.max_length} chars")
    if rules.pattern:
        summary.append(f"Pattern: {rules.pattern}")
    if rules.email:
        summary.append("Email format")
    if rules.url:
        summary.append("URL format")
    if rules.min is not None:
        summary.append(f"Min: {_number(rules.min)}")
    if rules.max is not None:
        summary.append(f"Max: {_number(rules.max)}")
    if rules.enum:
        summary.append(f"Options: {', '.join(rules.enum)}")
    return summary


__all__ = [
    "DocumentValidator",
    "compile_schema",
    "schema_fingerprint",
    "validate_document",
    "validate_field",
    "validation_summary",
]
