"""Tests for timestamp parsing and range checks."""

import logging

import pendulum
import pytest

from scmscan.dates import from_epoch_millis, is_in_range, isoformat, months_ago, parse_timestamp

SINCE = pendulum.datetime(2024, 1, 10, tz="UTC")
UNTIL = pendulum.datetime(2024, 1, 20, tz="UTC")


def test_parse_timestamp_accepts_iso_and_epoch_millis() -> None:
    """ISO strings, digit strings and integers all resolve to the same UTC instant."""
    expected = pendulum.datetime(2024, 1, 15, 12, 0, 0, tz="UTC")
    millis = int(expected.timestamp() * 1000)

    assert parse_timestamp("2024-01-15T12:00:00Z") == expected
    assert parse_timestamp("2024-01-15T14:00:00+02:00") == expected
    assert parse_timestamp(millis) == expected
    assert parse_timestamp(str(millis)) == expected


def test_parse_timestamp_rejects_garbage() -> None:
    """Unparseable strings raise ValueError."""
    with pytest.raises(ValueError, match="Unparseable"):
        parse_timestamp("not a date")


def test_is_in_range_is_inclusive() -> None:
    """Both window bounds are part of the window."""
    assert is_in_range("2024-01-10T00:00:00Z", SINCE, UNTIL)
    assert is_in_range("2024-01-20T00:00:00Z", SINCE, UNTIL)
    assert not is_in_range("2024-01-09T23:59:59Z", SINCE, UNTIL)
    assert not is_in_range("2024-01-20T00:00:01Z", SINCE, UNTIL)


def test_is_in_range_fails_open_on_unparseable_dates(caplog: pytest.LogCaptureFixture) -> None:
    """A record with an unparseable timestamp is kept whatever the bounds."""
    caplog.set_level(logging.WARNING)

    assert is_in_range("yesterday-ish", SINCE, UNTIL)
    assert is_in_range("yesterday-ish", pendulum.datetime(2030, 1, 1, tz="UTC"), None)
    assert is_in_range(None, SINCE, UNTIL)
    assert any("unparseable" in record.message for record in caplog.records)


def test_months_ago_and_epoch_helpers() -> None:
    """Calendar month arithmetic and watermark conversion work in UTC."""
    now = pendulum.datetime(2024, 8, 31, tz="UTC")

    assert months_ago(6, now) == pendulum.datetime(2024, 2, 29, tz="UTC")
    assert from_epoch_millis(0) == pendulum.datetime(1970, 1, 1, tz="UTC")
    assert isoformat(pendulum.datetime(2024, 1, 2, 3, 4, 5, tz="UTC")) == "2024-01-02T03:04:05Z"
