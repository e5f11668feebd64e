"""Split booking intervals into local-hour-aligned segments."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from rate_engine.domain.models import DayOfWeek, Segment
from rate_engine.utils.time_utils import (
    InvalidTimeError,
    ensure_utc,
    floor_to_hour,
    resolve_timezone,
)


ONE_HOUR = timedelta(hours=1)


class InvalidRangeError(ValueError):
    """Raised when a booking interval is empty, inverted or cannot be localized."""


def split_into_segments(start: datetime, end: datetime, timezone_name: str) -> list[Segment]:
    """Partition ``[start, end)`` at local wall-clock hour boundaries.

    Boundaries are computed in the target zone and mapped back to UTC, so
    zones with fractional offsets and DST transitions still produce segments
    that begin on a local ``HH:00``. The first and last segments may be
    fractional.
    """
    start_utc = ensure_utc(start)
    end_utc = ensure_utc(end)
    if end_utc <= start_utc:
        raise InvalidRangeError(
            f"end ({end_utc.isoformat()}) must be after start ({start_utc.isoformat()})"
        )
    try:
        tz = resolve_timezone(timezone_name)
    except InvalidTimeError as exc:
        raise InvalidRangeError(str(exc)) from exc

    segments: list[Segment] = []
    cursor = start_utc
    while cursor < end_utc:
        local_start = cursor.astimezone(tz)
        boundary = floor_to_hour(local_start).astimezone(timezone.utc) + ONE_HOUR
        segment_end = min(boundary, end_utc)
        segments.append(
            Segment(
                start=cursor,
                end=segment_end,
                local_time=local_start.strftime("%H:%M"),
                local_date=local_start.date(),
                day_of_week=DayOfWeek.from_date(local_start.date()),
                duration_hours=(segment_end - cursor).total_seconds() / 3600.0,
            )
        )
        cursor = segment_end
    return segments


def total_hours(segments: list[Segment]) -> float:
    return sum(segment.duration_hours for segment in segments)
