"""
Availability expansion

Turns a provider's weekly schedule into concrete bookable instants:
- one entry per granularity step inside each window of the day
- strictly after "now" (an instant equal to now counts as past)
- free of overlap with non-cancelled reservations

count / has / next are views over the same expansion.
"""
from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from booking.state import Provider, RecurringPattern, Reservation, ReservationStatus, TimeSlot

from .timemath import WEEKDAYS, combine, end_of, generate_times, intervals_overlap, weekday_name

DEFAULT_GRANULARITY = 30
DEFAULT_HORIZON_DAYS = 30


def _first_occurrence(anchor: date, weekday: int) -> date:
    return anchor + timedelta(days=(weekday - anchor.weekday()) % 7)


def _pattern_applies(pattern: RecurringPattern, day: date, anchor: date) -> bool:
    if pattern.end_date is not None and day > pattern.end_date:
        return False
    reference = _first_occurrence(anchor, day.weekday())
    if day < reference:
        return False
    if pattern.type == "weekly":
        return ((day - reference).days // 7) % pattern.interval == 0
    if pattern.type == "bi-weekly":
        return ((day - reference).days // 7) % (2 * pattern.interval) == 0
    # monthly: the same nth weekday of the month as the reference occurrence
    months = (day.year - reference.year) * 12 + (day.month - reference.month)
    same_week_of_month = (day.day - 1) // 7 == (reference.day - 1) // 7
    return same_week_of_month and months % pattern.interval == 0


def windows_for_date(provider: Provider, day: date, anchor: Optional[date] = None) -> List[TimeSlot]:
    """The provider's windows for ``day`` after recurrence filtering.

    Recurrence is counted from ``anchor`` (defaults to ``day`` itself).
    """
    slots = provider.schedule.get(weekday_name(day)) or []
    anchor = anchor or day
    return [
        slot
        for slot in slots
        if not (slot.is_recurring and slot.recurring_pattern)
        or _pattern_applies(slot.recurring_pattern, day, anchor)
    ]


def _active(reservations: Iterable[Reservation], provider_id: str) -> List[Reservation]:
    return [
        r for r in reservations
        if r.provider_id == provider_id and r.status != ReservationStatus.CANCELLED
    ]


def _is_free(start: datetime, granularity: int, reservations: List[Reservation]) -> bool:
    end = end_of(start, granularity)
    return not any(intervals_overlap(start, end, r.date_time, r.end_time) for r in reservations)


def _slots_for_day(
    provider: Provider,
    day: date,
    active: List[Reservation],
    now: datetime,
    granularity: int,
    anchor: date,
) -> List[datetime]:
    slots = []
    for window in windows_for_date(provider, day, anchor):
        for instant in generate_times(window.start_time, window.end_time, granularity):
            start = combine(day, instant)
            if start <= now:
                continue
            if _is_free(start, granularity, active):
                slots.append(start)
    return slots


def expand_availability(
    provider: Provider,
    reservations: Iterable[Reservation],
    days_ahead: int = DEFAULT_HORIZON_DAYS,
    now: Optional[datetime] = None,
    granularity: int = DEFAULT_GRANULARITY,
    start_date: Optional[date] = None,
) -> List[datetime]:
    now = now or datetime.now()
    start_date = start_date or now.date()
    active = _active(reservations, provider.id)
    slots: List[datetime] = []
    for offset in range(max(days_ahead, 0)):
        day = start_date + timedelta(days=offset)
        slots.extend(_slots_for_day(provider, day, active, now, granularity, start_date))
    return sorted(slots)


def available_slots_for_date(
    provider: Provider,
    reservations: Iterable[Reservation],
    day: date,
    now: Optional[datetime] = None,
    granularity: int = DEFAULT_GRANULARITY,
) -> List[datetime]:
    now = now or datetime.now()
    active = _active(reservations, provider.id)
    return sorted(_slots_for_day(provider, day, active, now, granularity, now.date()))


def count_available_slots(provider: Provider, reservations: Iterable[Reservation], **kwargs) -> int:
    return len(expand_availability(provider, reservations, **kwargs))


def has_available_slots(provider: Provider, reservations: Iterable[Reservation], **kwargs) -> bool:
    return count_available_slots(provider, reservations, **kwargs) > 0


def next_available_slot(
    provider: Provider, reservations: Iterable[Reservation], **kwargs
) -> Optional[datetime]:
    slots = expand_availability(provider, reservations, **kwargs)
    return slots[0] if slots else None


def working_days(provider: Provider) -> List[str]:
    return [day for day in WEEKDAYS if provider.schedule.get(day)]
