"""Wall-clock helpers shared by segmentation, schedules and policy windows."""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


LOCAL_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$|^24:00$")


class InvalidTimeError(ValueError):
    """Raised when a wall-clock string or timezone name cannot be interpreted."""


def parse_local_time(value: str) -> int:
    """Return minutes after midnight for an ``HH:MM`` string (``24:00`` allowed)."""
    if not isinstance(value, str) or LOCAL_TIME_PATTERN.fullmatch(value) is None:
        raise InvalidTimeError(f"local time must follow HH:MM format, got {value!r}")
    hours, minutes = (int(part) for part in value.split(":"))
    return hours * 60 + minutes


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimeError(f"unknown timezone {name!r}") from exc


def ensure_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def floor_to_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def next_hour_bucket(moment: datetime) -> datetime:
    return floor_to_hour(ensure_utc(moment)) + timedelta(hours=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
