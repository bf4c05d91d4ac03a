from __future__ import annotations

from typing import Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from scheduling.conflicts import has_time_conflict

from .state import BookingAttempt


class ConflictResolution(BaseModel):
    winner: BookingAttempt
    losers: List[BookingAttempt] = Field(default_factory=list)
    resolution: Literal["no_conflict", "timestamp_priority"] = "no_conflict"


def resolve_booking_conflict(attempts: Iterable[BookingAttempt]) -> ConflictResolution:
    """Earliest submission wins; equal timestamps order by requester id, then attempt id."""
    ordered = sorted(attempts, key=lambda a: a.priority_key())
    if not ordered:
        raise ValueError("resolve_booking_conflict needs at least one attempt")
    if len(ordered) == 1:
        return ConflictResolution(winner=ordered[0])
    return ConflictResolution(winner=ordered[0], losers=ordered[1:], resolution="timestamp_priority")


class PendingAttemptRegistry:
    """In-flight booking attempts, keyed by attempt id.

    Owned by one arbitrator. Access happens on a single event loop so plain
    dict operations are enough.
    """

    def __init__(self) -> None:
        self._attempts: Dict[str, BookingAttempt] = {}

    def register(self, attempt: BookingAttempt) -> None:
        self._attempts[attempt.attempt_id] = attempt

    def deregister(self, attempt_id: str) -> Optional[BookingAttempt]:
        return self._attempts.pop(attempt_id, None)

    def get(self, attempt_id: str) -> Optional[BookingAttempt]:
        return self._attempts.get(attempt_id)

    def find_competitors(self, attempt: BookingAttempt) -> List[BookingAttempt]:
        return [
            other
            for other in self._attempts.values()
            if other.attempt_id != attempt.attempt_id
            and has_time_conflict(other.request, attempt.request)
        ]

    def for_provider(self, provider_id: str) -> List[BookingAttempt]:
        return [a for a in self._attempts.values() if a.request.provider_id == provider_id]

    def clear(self) -> None:
        self._attempts.clear()

    def __len__(self) -> int:
        return len(self._attempts)

    def __contains__(self, attempt_id: str) -> bool:
        return attempt_id in self._attempts
