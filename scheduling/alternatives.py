from __future__ import annotations

from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from booking.state import PetInfo, Provider, Reservation, ReservationRequest

from .conflicts import find_conflicts
from .timemath import combine, parse_time, weekday_name

_PLACEHOLDER_PET = PetInfo(name="temp", species="temp")


def suggest_alternative_slots(
    provider: Provider,
    preferred_date: datetime,
    duration: int,
    existing: Iterable[Reservation],
    max_suggestions: int = 5,
    step_minutes: int = 30,
    not_before: Optional[datetime] = None,
) -> List[datetime]:
    """Conflict-free start times on the same calendar day as ``preferred_date``.

    Windows are walked in schedule order at ``step_minutes`` and the search
    stops as soon as ``max_suggestions`` are found. Instants at or before
    ``not_before`` are skipped.
    """
    suggestions: List[datetime] = []
    if max_suggestions <= 0 or step_minutes <= 0:
        return suggestions

    day = preferred_date.date() if isinstance(preferred_date, datetime) else preferred_date
    windows = provider.schedule.get(weekday_name(day)) or []
    existing = list(existing)

    for window in sorted(windows, key=lambda w: parse_time(w.start_time)):
        current = combine(day, window.start_time)
        window_end = combine(day, window.end_time)
        while current + timedelta(minutes=duration) <= window_end:
            if not_before is None or current > not_before:
                candidate = ReservationRequest(
                    provider_id=provider.id,
                    requester_id="temp",
                    pet=_PLACEHOLDER_PET,
                    date_time=current,
                    duration=duration,
                    reason="temp",
                )
                if not find_conflicts(candidate, existing):
                    suggestions.append(current)
                    if len(suggestions) >= max_suggestions:
                        return suggestions
            current += timedelta(minutes=step_minutes)
    return suggestions
