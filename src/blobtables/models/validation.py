from pydantic import BaseModel, ConfigDict


class FieldError(BaseModel):
    """A single field-level validation problem."""

    field: str
    message: str
    code: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class UniqueCheck(BaseModel):
    safe: bool
    error: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


__all__ = ["FieldError", "UniqueCheck"]
