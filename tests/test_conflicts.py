from datetime import datetime, timedelta

from booking.state import Reservation, ReservationStatus, TimeSlot
from scheduling.conflicts import find_conflicts, has_time_conflict, is_within_provider_schedule


def _reservation(req, rid="appointment_1", status=ReservationStatus.SCHEDULED):
    return Reservation(**req.model_dump(), id=rid, created_at=datetime.now()).model_copy(update={"status": status})


def test_overlapping_same_provider_conflicts(at, make_request):
    booked = _reservation(make_request(at("09:00"), duration=60))
    candidate = make_request(at("09:30"))
    assert find_conflicts(candidate, [booked]) == [booked]
    assert has_time_conflict(candidate, booked) and has_time_conflict(booked, candidate)


def test_back_to_back_is_not_a_conflict(at, make_request):
    booked = _reservation(make_request(at("09:00")))
    assert find_conflicts(make_request(at("09:30")), [booked]) == []


def test_other_provider_never_conflicts(at, make_request):
    booked = _reservation(make_request(at("09:00"), provider_id="doc-2"))
    assert find_conflicts(make_request(at("09:00")), [booked]) == []


def test_cancelled_reservations_are_ignored(at, make_request):
    cancelled = _reservation(make_request(at("09:00")), status=ReservationStatus.CANCELLED)
    assert find_conflicts(make_request(at("09:00")), [cancelled]) == []


def test_cancelled_candidate_has_no_conflicts(at, make_request):
    booked = _reservation(make_request(at("09:00")))
    candidate = make_request(at("09:00")).model_copy(update={"status": ReservationStatus.CANCELLED})
    assert find_conflicts(candidate, [booked]) == []


def test_excluded_id_is_skipped(at, make_request):
    booked = _reservation(make_request(at("09:00")), rid="appointment_self")
    assert find_conflicts(make_request(at("09:00")), [booked], exclude_id="appointment_self") == []


def test_within_schedule_requires_end_inside_window(provider, at):
    assert is_within_provider_schedule(provider, at("09:00"), 30)
    assert is_within_provider_schedule(provider, at("11:30"), 30)
    # 11:45-12:15 starts inside 09:00-12:00 but ends after it
    assert not is_within_provider_schedule(provider, at("11:45"), 30)
    assert not is_within_provider_schedule(provider, at("08:30"), 60)


def test_spanning_adjacent_windows_is_rejected(provider, at):
    split = provider.model_copy(update={"schedule": {"monday": [
        TimeSlot(start_time="09:00", end_time="10:00"),
        TimeSlot(start_time="10:00", end_time="11:00"),
    ]}})
    assert is_within_provider_schedule(split, at("09:30"), 30)
    assert not is_within_provider_schedule(split, at("09:45"), 30)


def test_day_without_windows(provider, at, monday):
    tuesday = monday + timedelta(days=1)
    assert not is_within_provider_schedule(provider, at("09:00", tuesday), 30)
