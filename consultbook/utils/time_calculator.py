"""Time parsing and calculations for session slots (HH:MM strings on a date)"""

import re
from datetime import date, datetime, time, timezone
from typing import Optional

from ..errors import ValidationError

HHMM_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):([0-5][0-9])$")


def utcnow() -> datetime:
    """Naive UTC now - every timestamp column stores naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_hhmm(value: str) -> int:
    """Convert 'HH:MM' to minutes since midnight"""
    match = HHMM_PATTERN.match(value or "")
    if not match:
        raise ValidationError(f"Invalid time '{value}'. Use HH:MM format", code="invalid_time")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(total_minutes: int) -> str:
    if total_minutes < 0 or total_minutes >= 24 * 60:
        raise ValidationError("Session must start and end on the same day", code="invalid_time_range")
    return f"{total_minutes // 60:02d}:{total_minutes % 60:02d}"


def add_minutes(start: str, minutes: int) -> str:
    return format_hhmm(parse_hhmm(start) + minutes)


def minutes_between(start: str, end: str) -> int:
    return parse_hhmm(end) - parse_hhmm(start)


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open [start, end) overlap; adjacent ranges do not overlap"""
    return start_a < end_b and start_b < end_a


def combine(day: date, hhmm: str) -> datetime:
    minutes = parse_hhmm(hhmm)
    return datetime.combine(day, time(minutes // 60, minutes % 60))


def validate_time_range(
    start: str,
    end: str,
    duration: Optional[int],
    tolerance: int,
    min_minutes: int = 1,
    max_minutes: int = 24 * 60,
) -> int:
    """
    Check end > start and that the stated duration matches the delta.

    Returns the computed duration in minutes.
    """
    delta = minutes_between(start, end)
    if delta <= 0:
        raise ValidationError("End time must be after start time", code="invalid_time_range")
    if duration is not None and abs(delta - duration) > tolerance:
        raise ValidationError(
            "Duration does not match the time difference", code="duration_mismatch"
        )
    if delta < min_minutes or delta > max_minutes:
        raise ValidationError(
            f"Duration must be between {min_minutes} and {max_minutes} minutes",
            code="invalid_duration",
        )
    return delta

