from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Type, TypeVar

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError

T_Model = TypeVar("T_Model", bound="RecordModel")

_INSTANT = TypeAdapter(datetime)


class RecordModel(BaseModel):
    """Base for shapes persisted inside blobs.

    Attributes are snake_case in Python and camelCase on the wire, so records
    written by other clients of the same blobs stay readable.
    """

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_record(cls: Type[T_Model], data: Mapping[str, Any] | BaseModel) -> T_Model:
        return cls.model_validate(data)


def ensure_non_empty_text(value: str, field_name: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{field_name} must be a string")
    if not value.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return value


def ensure_timezone_aware(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError("datetime must be timezone-aware")
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render a timestamp the way documents store it: UTC, microseconds, Z suffix."""
    dt = ensure_timezone_aware(dt).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_instant(value: Any) -> datetime | None:
    """Read an instant from an ISO string, a unix timestamp or a datetime.

    Returns None when the value names no instant. Naive results are taken as
    UTC so that any two parsed instants compare.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            return parse_timestamp(value)
        except ValueError:
            pass
    try:
        parsed = _INSTANT.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_timestamp(now: datetime, previous: str | None = None) -> str:
    """Return a timestamp for ``now`` that sorts strictly after ``previous``.

    Clocks can repeat or step backwards between two writes of the same
    document; ``$updatedAt`` must still move forward.
    """
    if previous:
        try:
            floor = parse_timestamp(previous) + timedelta(microseconds=1)
        except ValueError:
            floor = None
        if floor is not None and now < floor:
            now = floor
    return format_timestamp(now)
