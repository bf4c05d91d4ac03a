from __future__ import annotations

from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from scheduling.timemath import to_local_naive


class RecurringPattern(BaseModel):
    type: Literal["weekly", "bi-weekly", "monthly"] = "weekly"
    interval: int = Field(default=1, ge=1)
    end_date: Optional[date] = None


class TimeSlot(BaseModel):
    start_time: str  # HH:MM
    end_time: str
    is_recurring: bool = True
    recurring_pattern: Optional[RecurringPattern] = None


WeeklySchedule = Dict[str, List[TimeSlot]]


class PetInfo(BaseModel):
    name: str
    species: str
    breed: Optional[str] = None
    age: float = 0


class Provider(BaseModel):
    id: str
    name: str
    specializations: List[str] = Field(default_factory=list)
    schedule: WeeklySchedule = Field(default_factory=dict)
    rating: float = Field(default=0, ge=0, le=5)
    experience_years: int = Field(default=0, ge=0)
    languages: List[str] = Field(default_factory=lambda: ["English"])


class ReservationStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ReservationRequest(BaseModel):
    provider_id: str
    requester_id: str
    pet: PetInfo
    date_time: datetime
    duration: int = 30  # minutes
    reason: str = ""
    status: ReservationStatus = ReservationStatus.SCHEDULED

    # Schedules are local wall-clock times; offsets are folded in on the way in.
    @field_validator("date_time")
    @classmethod
    def _local_date_time(cls, value: datetime) -> datetime:
        return to_local_naive(value)

    @property
    def end_time(self) -> datetime:
        return self.date_time + timedelta(minutes=self.duration)


class Reservation(ReservationRequest):
    id: str
    created_at: datetime


class BookingState(str, Enum):
    SUBMITTED = "submitted"
    CONFLICT_CHECKED = "conflict_checked"
    RETRYING = "retrying"
    BOOKED = "booked"
    REJECTED = "rejected"


class BookingAttempt(BaseModel):
    attempt_id: str
    request: ReservationRequest
    requester_id: str
    submitted_at: datetime
    state: BookingState = BookingState.SUBMITTED
    attempts_made: int = 0

    def priority_key(self) -> Tuple[datetime, str, str]:
        # Identical timestamps fall back to requester id, then attempt id.
        return (self.submitted_at, self.requester_id, self.attempt_id)


class BookingOptions(BaseModel):
    enable_optimistic_updates: bool = True
    max_retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: float = Field(default=1000, ge=0)
    max_retry_delay_ms: float = Field(default=10000, ge=0)
    max_alternative_suggestions: int = Field(default=5, ge=0)
    enforce_schedule: bool = True


class AppError(BaseModel):
    type: Literal["VALIDATION_ERROR", "BOOKING_CONFLICT", "STORAGE_ERROR"]
    message: str
    recoverable: bool


class BookingResult(BaseModel):
    success: bool
    reservation: Optional[Reservation] = None
    error: Optional[AppError] = None
    alternatives: List[datetime] = Field(default_factory=list)
    attempts: int = 0


class ScheduleValidationReport(BaseModel):
    is_valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ScheduleEditResult(BaseModel):
    is_valid: bool
    conflicting_reservations: List[Reservation] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    pending_attempts: List[str] = Field(default_factory=list)  # attempt ids the edit would strand
    applied: bool = False


class ProviderAvailability(BaseModel):
    provider: Provider
    available_slots: int
