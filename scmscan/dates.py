"""Timestamp parsing and window helpers shared by the adapters."""

from __future__ import annotations

import logging
from datetime import datetime

import pendulum

LOGGER = logging.getLogger(__name__)


def from_epoch_millis(value: int) -> datetime:
    """Convert an epoch-millis watermark to an aware UTC datetime."""
    return pendulum.from_timestamp(value / 1000, tz="UTC")


def to_epoch_millis(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds, treating naive values as UTC."""
    return int(pendulum.instance(value, tz="UTC").timestamp() * 1000)


def parse_timestamp(value: object) -> datetime | None:
    """Parse ISO-8601 strings, epoch millis or datetimes into UTC.

    Returns ``None`` for empty input. Raises ``ValueError`` when the value is
    present but cannot be interpreted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return pendulum.instance(value, tz="UTC").in_timezone("UTC")
    if isinstance(value, bool):
        msg = f"Unsupported timestamp value: {value!r}"
        raise ValueError(msg)
    if isinstance(value, int | float):
        return from_epoch_millis(int(value))
    if isinstance(value, str):
        text = value.strip()
        if "T" not in text and text.lstrip("-").isdigit():
            return from_epoch_millis(int(text))
        try:
            parsed = pendulum.parse(text, tz="UTC")
        except ValueError as exc:
            msg = f"Unparseable timestamp: {value!r}"
            raise ValueError(msg) from exc
        if not isinstance(parsed, datetime):
            msg = f"Timestamp is not a date-time: {value!r}"
            raise ValueError(msg)
        return pendulum.instance(parsed).in_timezone("UTC")
    msg = f"Unsupported timestamp value: {value!r}"
    raise ValueError(msg)


def parse_timestamp_or_none(value: object) -> datetime | None:
    """Parse a timestamp, logging and returning ``None`` on failure."""
    try:
        return parse_timestamp(value)
    except ValueError:
        LOGGER.warning("Ignoring unparseable timestamp %r", value)
        return None


def is_in_range(value: object, since: datetime | None, until: datetime | None) -> bool:
    """Return True when the timestamp falls inside [since, until].

    Missing or unparseable timestamps are kept: the check fails open.
    """
    try:
        moment = parse_timestamp(value)
    except ValueError:
        LOGGER.warning("Keeping record with unparseable timestamp %r", value)
        return True
    if moment is None:
        LOGGER.warning("Keeping record without a timestamp")
        return True
    if since is not None and moment < pendulum.instance(since, tz="UTC"):
        return False
    if until is not None and moment > pendulum.instance(until, tz="UTC"):
        return False
    return True


def months_ago(months: int, now: datetime | None = None) -> datetime:
    """Return ``now`` minus a number of calendar months in UTC."""
    current = pendulum.instance(now, tz="UTC") if now is not None else pendulum.now("UTC")
    return current.subtract(months=months)


def isoformat(value: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string with a ``Z`` suffix."""
    return pendulum.instance(value, tz="UTC").in_timezone("UTC").format("YYYY-MM-DD[T]HH:mm:ss[Z]")
