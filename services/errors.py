"""Error taxonomy shared by the stores, the arbitrator and the outer surfaces.

ValidationError is never retried. BookingConflictError is recoverable but
retrying is the caller's decision. StorageError is retried automatically by
the arbitrator before it is surfaced.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from booking.state import AppError

VALIDATION_ERROR = "VALIDATION_ERROR"
BOOKING_CONFLICT = "BOOKING_CONFLICT"
STORAGE_ERROR = "STORAGE_ERROR"


class SchedulingError(Exception):
    error_type = STORAGE_ERROR
    recoverable = True

    def __init__(self, message: str, recoverable: Optional[bool] = None) -> None:
        super().__init__(message)
        self.message = message
        if recoverable is not None:
            self.recoverable = recoverable

    def to_app_error(self) -> AppError:
        return AppError(type=self.error_type, message=self.message, recoverable=self.recoverable)


class ValidationError(SchedulingError):
    error_type = VALIDATION_ERROR
    recoverable = False

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class BookingConflictError(SchedulingError):
    error_type = BOOKING_CONFLICT

    def __init__(
        self,
        message: str,
        conflicts: Optional[List[Any]] = None,
        alternatives: Optional[List[datetime]] = None,
    ) -> None:
        conflict_count = len(conflicts or [])
        if conflict_count > 1:
            message = f"{message} ({conflict_count} conflicts detected)"
        super().__init__(message)
        self.conflicts = list(conflicts or [])
        self.alternatives = list(alternatives or [])


class SimultaneousBookingError(BookingConflictError):
    """Another pending attempt for an overlapping slot has priority."""


class SlotUnavailableError(BookingConflictError):
    """The authoritative store check disagreed with the in-memory snapshot."""


class StorageError(SchedulingError):
    error_type = STORAGE_ERROR
