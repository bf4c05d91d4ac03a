"""Overlap detection between reservations and against a provider's weekly windows."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Union

from booking.state import Provider, Reservation, ReservationRequest, ReservationStatus

from .timemath import intervals_overlap, minutes_since_midnight, parse_time, weekday_name

Candidate = Union[ReservationRequest, Reservation]


def has_time_conflict(first: Candidate, second: Candidate) -> bool:
    if first.provider_id != second.provider_id:
        return False
    return intervals_overlap(first.date_time, first.end_time, second.date_time, second.end_time)


def find_conflicts(
    candidate: Candidate,
    existing: Iterable[Reservation],
    exclude_id: Optional[str] = None,
) -> List[Reservation]:
    """Non-cancelled reservations of the same provider overlapping ``candidate``.

    ``exclude_id`` skips the reservation being rescheduled.
    """
    if candidate.status == ReservationStatus.CANCELLED:
        return []
    conflicts = []
    for reservation in existing:
        if reservation.status == ReservationStatus.CANCELLED:
            continue
        if exclude_id is not None and reservation.id == exclude_id:
            continue
        if has_time_conflict(candidate, reservation):
            conflicts.append(reservation)
    return conflicts


def is_within_provider_schedule(provider: Provider, date_time: datetime, duration: int) -> bool:
    """True when [date_time, date_time + duration] sits inside a single window of that weekday."""
    slots = provider.schedule.get(weekday_name(date_time.date())) or []
    start = minutes_since_midnight(date_time)
    # Minutes past midnight of the start date, so a request crossing midnight never fits.
    end = start + duration
    for slot in slots:
        if start >= parse_time(slot.start_time) and end <= parse_time(slot.end_time):
            return True
    return False
