from datetime import datetime, timedelta, timezone

import pytest

from blobtables.models.base import format_timestamp, next_timestamp, parse_instant, parse_timestamp


def test_format_timestamp_is_utc_with_z_suffix() -> None:
    moment = datetime(2024, 3, 1, 14, 30, 0, 123456, tzinfo=timezone(timedelta(hours=2)))

    assert format_timestamp(moment) == "2024-03-01T12:30:00.123456Z"


def test_format_timestamp_requires_timezone() -> None:
    with pytest.raises(ValueError):
        format_timestamp(datetime(2024, 3, 1))


def test_parse_timestamp_treats_naive_values_as_utc() -> None:
    assert parse_timestamp("2024-03-01T12:30:00") == datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)
    assert parse_timestamp("2024-03-01T12:30:00Z") == datetime(2024, 3, 1, 12, 30, tzinfo=timezone.utc)


def test_next_timestamp_uses_now_without_previous() -> None:
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert next_timestamp(now) == "2024-03-01T00:00:00.000000Z"


def test_next_timestamp_moves_forward_when_clock_repeats() -> None:
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)
    previous = format_timestamp(now)

    assert next_timestamp(now, previous) == "2024-03-01T00:00:00.000001Z"


def test_next_timestamp_moves_forward_when_clock_steps_back() -> None:
    previous = "2024-03-01T00:00:05.000000Z"
    earlier = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert next_timestamp(earlier, previous) == "2024-03-01T00:00:05.000001Z"


def test_next_timestamp_ignores_unparseable_previous() -> None:
    now = datetime(2024, 3, 1, tzinfo=timezone.utc)

    assert next_timestamp(now, "yesterday") == "2024-03-01T00:00:00.000000Z"


def test_parse_instant_reads_iso_text_and_unix_timestamps() -> None:
    expected = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)

    assert parse_instant("2023-11-14T22:13:20Z") == expected
    assert parse_instant("1700000000") == expected
    assert parse_instant(1700000000) == expected
    assert parse_instant("2020-01-01") == datetime(2020, 1, 1, tzinfo=timezone.utc)


def test_parse_instant_returns_none_for_non_instants() -> None:
    assert parse_instant("next tuesday") is None
    assert parse_instant(True) is None
    assert parse_instant(["2024-01-01"]) is None
