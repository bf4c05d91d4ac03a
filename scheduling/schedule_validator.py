"""
Schedule validation

A schedule edit is accepted only if both checks pass:
1. Structure: "HH:MM" strings, start < end, windows of at least 30 minutes,
   no overlapping windows within a day.
2. Commitments: every scheduled reservation of the provider still falls
   inside a single window of the new schedule.

There is no partial application: any orphaned reservation rejects the edit.
"""
from __future__ import annotations

from typing import Dict, Iterable, List

from booking.state import (
    Provider,
    Reservation,
    ReservationStatus,
    ScheduleEditResult,
    ScheduleValidationReport,
    TimeSlot,
    WeeklySchedule,
)

from .conflicts import is_within_provider_schedule
from .timemath import WEEKDAYS, intervals_overlap, is_valid_time_format, parse_time

MIN_SLOT_MINUTES = 30
DEFAULT_WORKING_HOURS = ("09:00", "17:00")


def validate_time_slot(slot: TimeSlot) -> List[str]:
    errors = []
    if not is_valid_time_format(slot.start_time):
        errors.append("Start time must be in HH:MM format")
    if not is_valid_time_format(slot.end_time):
        errors.append("End time must be in HH:MM format")
    if errors:
        return errors
    start = parse_time(slot.start_time)
    end = parse_time(slot.end_time)
    if start >= end:
        errors.append("End time must be after start time")
    elif end - start < MIN_SLOT_MINUTES:
        errors.append(f"Time slot must be at least {MIN_SLOT_MINUTES} minutes long")
    return errors


def _slots_overlap(first: TimeSlot, second: TimeSlot) -> bool:
    return intervals_overlap(
        parse_time(first.start_time),
        parse_time(first.end_time),
        parse_time(second.start_time),
        parse_time(second.end_time),
    )


def validate_schedule_structure(schedule: WeeklySchedule) -> ScheduleValidationReport:
    errors: List[str] = []
    warnings: List[str] = []

    if not any(slots for slots in schedule.values()):
        warnings.append("Schedule has no working days")

    for day, slots in schedule.items():
        if day not in WEEKDAYS:
            errors.append(f"Unknown day '{day}'; expected a lowercase weekday name")
            continue
        if not slots:
            continue

        well_formed = []
        for index, slot in enumerate(slots, start=1):
            slot_errors = validate_time_slot(slot)
            errors.extend(f"{msg} for {day}, slot {index}" for msg in slot_errors)
            if is_valid_time_format(slot.start_time) and is_valid_time_format(slot.end_time):
                well_formed.append((index, slot))

        # k is small, pairwise is fine
        for i in range(len(well_formed)):
            for j in range(i + 1, len(well_formed)):
                (a_index, a), (b_index, b) = well_formed[i], well_formed[j]
                if _slots_overlap(a, b):
                    errors.append(f"Overlapping time slots for {day}: slot {a_index} and slot {b_index}")

    return ScheduleValidationReport(is_valid=not errors, errors=errors, warnings=warnings)


def find_orphaned_reservations(
    provider_id: str,
    schedule: WeeklySchedule,
    reservations: Iterable[Reservation],
) -> List[Reservation]:
    candidate = Provider(id=provider_id, name=provider_id, schedule=schedule)
    return [
        r
        for r in reservations
        if r.provider_id == provider_id
        and r.status == ReservationStatus.SCHEDULED
        and not is_within_provider_schedule(candidate, r.date_time, r.duration)
    ]


def validate_schedule_edit(
    provider_id: str,
    new_schedule: WeeklySchedule,
    existing: Iterable[Reservation],
) -> ScheduleEditResult:
    report = validate_schedule_structure(new_schedule)
    conflicting: List[Reservation] = []
    if report.is_valid:
        conflicting = find_orphaned_reservations(provider_id, new_schedule, existing)
    return ScheduleEditResult(
        is_valid=report.is_valid and not conflicting,
        conflicting_reservations=conflicting,
        errors=report.errors,
        warnings=report.warnings,
    )


def create_default_schedule() -> WeeklySchedule:
    start, end = DEFAULT_WORKING_HOURS
    return {
        day: [TimeSlot(start_time=start, end_time=end, is_recurring=True)]
        for day in WEEKDAYS[:5]
    }


def clone_schedule(schedule: WeeklySchedule) -> Dict[str, List[TimeSlot]]:
    return {day: [slot.model_copy(deep=True) for slot in slots] for day, slots in schedule.items()}
