import asyncio
from datetime import datetime, timedelta

import pytest

from booking.arbitrator import BookingArbitrator
from booking.service import SchedulingService
from booking.state import BookingAttempt, Provider, ReservationStatus, TimeSlot
from scheduling.conflicts import is_within_provider_schedule
from services.errors import ValidationError
from services.storage import InMemoryReservationStore


@pytest.fixture
def service(store, at, no_sleep):
    clock = lambda: at("08:00") - timedelta(days=1)  # the Sunday before
    return SchedulingService(store, arbitrator=BookingArbitrator(store, clock=clock, sleep=no_sleep), clock=clock)


@pytest.mark.asyncio
async def test_book_then_slot_is_unavailable(service, at, make_request):
    assert await service.check_availability("doc-1", at("09:00"))
    assert (await service.attempt_booking(make_request(at("09:00")), "owner-1")).success
    assert not await service.check_availability("doc-1", at("09:00"))
    assert await service.check_availability("doc-1", at("09:30"))


@pytest.mark.asyncio
async def test_check_availability_edge_cases(service, at):
    assert not await service.check_availability("nobody", at("09:00"))
    assert not await service.check_availability("doc-1", at("11:45"), 30)
    assert not await service.check_availability("doc-1", at("13:00"))


@pytest.mark.asyncio
async def test_every_suggestion_passes_availability(service, at, make_request):
    await service.attempt_booking(make_request(at("09:00"), duration=60), "owner-1")
    suggestions = await service.suggest_alternatives("doc-1", at("09:00"), 30, max_suggestions=10)
    assert suggestions == [at(t) for t in ("10:00", "10:30", "11:00", "11:30")]
    for dt in suggestions:
        assert await service.check_availability("doc-1", dt, 30)
    assert await service.suggest_alternatives("nobody", at("09:00")) == []


@pytest.mark.asyncio
async def test_slot_views(service, at, monday, make_request):
    await service.attempt_booking(make_request(at("09:00")), "owner-1")
    slots = await service.get_available_slots("doc-1", days_ahead=2)
    assert slots[0] == at("09:30")
    assert await service.count_available_slots("doc-1", days_ahead=2) == 5
    assert await service.has_available_slots("doc-1", days_ahead=2)
    assert await service.get_next_available_slot("doc-1", days_ahead=2) == at("09:30")
    assert len(await service.get_available_slots_for_date("doc-1", monday)) == 5
    with pytest.raises(ValidationError):
        await service.get_available_slots("nobody")


@pytest.mark.asyncio
async def test_providers_with_availability_filters_by_specialization(store, service):
    await store.save_provider(Provider(id="doc-2", name="Dr. Chen", specializations=["Dermatology"], schedule={}))
    found = await service.get_providers_with_availability("surg")
    assert [p.provider.id for p in found] == ["doc-1"]
    assert found[0].available_slots > 0
    # doc-2 has no working days
    assert [p.provider.id for p in await service.get_providers_with_availability()] == ["doc-1"]


@pytest.mark.asyncio
async def test_schedule_edit_is_all_or_nothing(service, store, at, make_request):
    booked = (await service.attempt_booking(make_request(at("09:00")), "owner-1")).reservation
    tuesday_only = {"tuesday": [TimeSlot(start_time="09:00", end_time="12:00")]}

    result = await service.apply_schedule_edit("doc-1", tuesday_only)
    assert not result.is_valid
    assert not result.applied
    assert [r.id for r in result.conflicting_reservations] == [booked.id]
    assert "monday" in (await store.get_provider("doc-1")).schedule

    await service.cancel(booked.id)
    result = await service.apply_schedule_edit("doc-1", tuesday_only)
    assert result.is_valid and result.applied
    assert list((await store.get_provider("doc-1")).schedule) == ["tuesday"]


@pytest.mark.asyncio
async def test_validate_schedule_edit_with_explicit_reservations(service):
    result = await service.validate_schedule_edit("doc-1", {"monday": []}, existing_reservations=[])
    assert result.is_valid
    assert result.warnings


@pytest.mark.asyncio
async def test_list_reservations_filters(service, at, make_request):
    await service.attempt_booking(make_request(at("10:00"), requester="owner-2"), "owner-2")
    first = (await service.attempt_booking(make_request(at("09:00")), "owner-1")).reservation
    await service.cancel(first.id)

    everything = await service.list_reservations(provider_id="doc-1")
    assert [r.date_time for r in everything] == [at("09:00"), at("10:00")]
    assert [r.requester_id for r in await service.list_reservations(requester_id="owner-2")] == ["owner-2"]
    active = await service.list_reservations(statuses=[ReservationStatus.SCHEDULED])
    assert [r.requester_id for r in active] == ["owner-2"]


def test_default_arbitrator_is_built_from_the_store():
    svc = SchedulingService(InMemoryReservationStore())
    assert svc.arbitrator.store is svc.store
    assert isinstance(svc.clock(), datetime)


class SlowReadStore(InMemoryReservationStore):
    async def list_reservations_for_provider(self, provider_id):
        await asyncio.sleep(0)
        return await super().list_reservations_for_provider(provider_id)


@pytest.mark.asyncio
@pytest.mark.parametrize("edit_first", [False, True])
async def test_schedule_edit_and_booking_never_both_succeed(provider, at, make_request, no_sleep, edit_first):
    store = SlowReadStore([provider])
    svc = SchedulingService(store, arbitrator=BookingArbitrator(store, sleep=no_sleep))
    tuesday_only = {"tuesday": [TimeSlot(start_time="09:00", end_time="12:00")]}

    book = svc.attempt_booking(make_request(at("09:00")), "owner-1")
    edit = svc.apply_schedule_edit("doc-1", tuesday_only)
    if edit_first:
        edited, booking = await asyncio.gather(edit, book)
    else:
        booking, edited = await asyncio.gather(book, edit)

    assert not (booking.success and edited.applied)
    current = await store.get_provider("doc-1")
    for r in await store.list_all_reservations():
        assert is_within_provider_schedule(current, r.date_time, r.duration)


@pytest.mark.asyncio
async def test_schedule_edit_refused_while_booking_in_flight(service, at, make_request):
    attempt = BookingAttempt(
        attempt_id="booking_inflight",
        request=make_request(at("09:00")),
        requester_id="owner-1",
        submitted_at=datetime.now(),
    )
    service.arbitrator.registry.register(attempt)

    result = await service.apply_schedule_edit("doc-1", {"tuesday": [TimeSlot(start_time="09:00", end_time="12:00")]})
    assert not result.is_valid
    assert not result.applied
    assert result.pending_attempts == ["booking_inflight"]
    assert "monday" in (await service.store.get_provider("doc-1")).schedule

    # an edit that still covers the attempt goes through
    wider = {"monday": [TimeSlot(start_time="08:00", end_time="13:00")]}
    assert (await service.apply_schedule_edit("doc-1", wider)).applied


@pytest.mark.asyncio
async def test_zero_day_horizon_has_no_slots(service):
    assert await service.get_available_slots("doc-1", days_ahead=0) == []
    assert not await service.has_available_slots("doc-1", days_ahead=0)


@pytest.mark.asyncio
async def test_offset_timestamps_are_read_as_local_time(service, at):
    assert await service.check_availability("doc-1", at("09:00").astimezone())
    suggestions = await service.suggest_alternatives("doc-1", at("09:00").astimezone(), max_suggestions=1)
    assert suggestions == [at("09:00")]
