"""Exception hierarchy shared by the repository, index manager and blob client."""

from typing import Any

from blobtables.models.validation import FieldError


class BlobTablesError(Exception):
    """Base class for all errors raised by blobtables."""


class FieldValidationError(BlobTablesError):
    """One or more fields failed schema validation.

    Carries every field-level problem so a form can show them all at once.
    """

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        summary = "; ".join(f"{error.field}: {error.message}" for error in self.errors)
        super().__init__(f"Validation failed: {summary}")

    @classmethod
    def single(cls, field: str, message: str, code: str) -> "FieldValidationError":
        return cls([FieldError(field=field, message=message, code=code)])


class ConstraintError(BlobTablesError):
    """A unique constraint rejected a value."""

    def __init__(self, field: str, value: Any, detail: str | None = None) -> None:
        self.field = field
        self.value = value
        self.detail = detail or f"Value '{value}' already exists."
        super().__init__(f"Unique constraint failed for field '{field}': {self.detail}")


class DuplicateColumnError(BlobTablesError):
    """A column key is already in the schema."""

    def __init__(self, column_key: str) -> None:
        self.column_key = column_key
        super().__init__(f"Column already exists: {column_key}")


class NotFoundError(BlobTablesError):
    """A table, document, column or blob does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind.capitalize()} not found: {identifier}")


class BlobNotFoundError(NotFoundError):
    def __init__(self, blob_id: str) -> None:
        super().__init__("blob", blob_id)


class BackendError(BlobTablesError):
    """The blob store failed or timed out."""

    def __init__(self, operation: str, blob_id: str | None, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.blob_id = blob_id
        self.cause = cause
        target = f" on {blob_id}" if blob_id else ""
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Blob store {operation} failed{target}{reason}")


class WriteConflictError(BlobTablesError):
    """A version-checked write found the blob changed since it was loaded."""

    def __init__(self, blob_id: str, expected_version: int, actual_version: int | None) -> None:
        self.blob_id = blob_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Blob {blob_id} changed concurrently (expected version {expected_version}, found {actual_version})"
        )


__all__ = [
    "BlobTablesError",
    "FieldValidationError",
    "ConstraintError",
    "DuplicateColumnError",
    "NotFoundError",
    "BlobNotFoundError",
    "BackendError",
    "WriteConflictError",
]
