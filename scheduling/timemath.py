"""Wall-clock helpers for "HH:MM" schedules.

Everything here is pure. Malformed time strings are a caller contract
violation; the schedule validator rejects them before they reach this module.
"""
from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import List

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

MINUTES_PER_DAY = 24 * 60

_TIME_RE = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


def is_valid_time_format(value: str) -> bool:
    return isinstance(value, str) and bool(_TIME_RE.match(value))


def parse_time(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_since_midnight(moment: datetime) -> int:
    return moment.hour * 60 + moment.minute


def combine(base_date: date, value: str) -> datetime:
    """Absolute timestamp for ``value`` ("HH:MM") on ``base_date``."""
    if isinstance(base_date, datetime):
        base_date = base_date.date()
    return datetime.combine(base_date, time()) + timedelta(minutes=parse_time(value))


def weekday_name(day: date) -> str:
    return WEEKDAYS[day.weekday()]


def end_of(start: datetime, duration_minutes: int) -> datetime:
    return start + timedelta(minutes=duration_minutes)


def intervals_overlap(start1, end1, start2, end2) -> bool:
    # Touching endpoints do not overlap.
    return start1 < end2 and start2 < end1


def generate_times(start: str, end: str, interval: int = 30) -> List[str]:
    """Every instant in [start, end) at ``interval`` minutes that still fits a full interval."""
    if interval <= 0:
        return []
    start_min = parse_time(start)
    end_min = parse_time(end)
    times = []
    current = start_min
    while current + interval <= end_min:
        times.append(format_minutes(current))
        current += interval
    return times


def to_local_naive(moment: datetime) -> datetime:
    """Aware timestamps become naive local wall-clock time; naive ones pass through."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone().replace(tzinfo=None)
