from pydantic import BaseModel, ConfigDict, Field, field_validator

from blobtables.models.base import ensure_non_empty_text


class SessionContext(BaseModel):
    """Per-call context handed to every repository and index operation.

    ``database_id`` is the parent under which table and index blobs are
    created and listed.
    """

    database_id: str = Field(alias="databaseId")
    actor: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    @field_validator("database_id")
    @classmethod
    def _validate_database_id(cls, value: str) -> str:
        return ensure_non_empty_text(value, "database_id")

    def log_context(self) -> dict[str, str]:
        context = {"database_id": self.database_id}
        if self.actor:
            context["actor"] = self.actor
        return context


class StoreConfig(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0, alias="timeoutSeconds")
    read_retries: int = Field(default=2, ge=0, alias="readRetries")
    retry_delay_seconds: float = Field(default=0.2, ge=0, alias="retryDelaySeconds")
    conditional_writes: bool = Field(default=False, alias="conditionalWrites")
    cache_ttl_seconds: float = Field(default=0.0, ge=0, alias="cacheTtlSeconds")

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)


__all__ = ["SessionContext", "StoreConfig"]
