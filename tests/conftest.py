from datetime import date, datetime, timedelta

import pytest

from booking.state import BookingOptions, PetInfo, Provider, ReservationRequest, TimeSlot
from scheduling.timemath import combine
from services.storage import InMemoryReservationStore


def _next_monday(min_days: int = 7) -> date:
    d = date.today() + timedelta(days=min_days)
    return d + timedelta(days=(0 - d.weekday()) % 7)


@pytest.fixture
def monday() -> date:
    return _next_monday()


@pytest.fixture
def at(monday):
    """at("09:00") -> datetime on the test Monday."""
    def _at(hhmm: str, day: date = None) -> datetime:
        return combine(day or monday, hhmm)
    return _at


@pytest.fixture
def provider() -> Provider:
    return Provider(
        id="doc-1",
        name="Dr. Rivera",
        specializations=["Surgery", "Dentistry"],
        schedule={"monday": [TimeSlot(start_time="09:00", end_time="12:00")]},
        rating=4.5,
        experience_years=12,
    )


@pytest.fixture
def store(provider) -> InMemoryReservationStore:
    return InMemoryReservationStore([provider])


@pytest.fixture
def make_request(provider):
    def _make(when: datetime, duration: int = 30, requester: str = "owner-1", provider_id: str = None) -> ReservationRequest:
        return ReservationRequest(
            provider_id=provider_id or provider.id,
            requester_id=requester,
            pet=PetInfo(name="Biscuit", species="dog", breed="beagle", age=3),
            date_time=when,
            duration=duration,
            reason="Annual checkup",
        )
    return _make


@pytest.fixture
def fast_options() -> BookingOptions:
    return BookingOptions(retry_delay_ms=1, max_retry_delay_ms=4)


@pytest.fixture
def no_sleep():
    delays = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
