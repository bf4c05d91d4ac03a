from __future__ import annotations

from datetime import date, datetime
from typing import Callable, Iterable, List, Optional

from scheduling import availability
from scheduling.alternatives import suggest_alternative_slots
from scheduling.conflicts import find_conflicts, is_within_provider_schedule
from scheduling.schedule_validator import validate_schedule_edit
from scheduling.timemath import to_local_naive
from services.errors import ValidationError
from services.logger import setup_logger
from services.storage import ReservationStore, build_store

from .arbitrator import BookingArbitrator
from .state import (
    BookingOptions,
    BookingResult,
    PetInfo,
    Provider,
    ProviderAvailability,
    Reservation,
    ReservationRequest,
    ReservationStatus,
    ScheduleEditResult,
    WeeklySchedule,
)

logger = setup_logger("scheduling")


class SchedulingService:
    """Entry point used by the HTTP server and the CLI.

    Read-only questions (availability, alternatives, schedule checks) are
    answered here from the store; anything that changes a reservation goes
    through the arbitrator.
    """

    def __init__(
        self,
        store: ReservationStore,
        arbitrator: Optional[BookingArbitrator] = None,
        clock: Callable[[], datetime] = datetime.now,
        granularity: int = availability.DEFAULT_GRANULARITY,
        horizon_days: int = availability.DEFAULT_HORIZON_DAYS,
        options: Optional[BookingOptions] = None,
    ) -> None:
        self.store = store
        self.arbitrator = arbitrator or BookingArbitrator(store, clock=clock)
        self.clock = clock
        self.granularity = granularity
        self.horizon_days = horizon_days
        self.options = options or BookingOptions()

    async def _require_provider(self, provider_id: str) -> Provider:
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            raise ValidationError(f"Doctor not found: {provider_id}")
        return provider

    # bookings

    async def attempt_booking(
        self,
        request: ReservationRequest,
        requester_id: Optional[str] = None,
        options: Optional[BookingOptions] = None,
    ) -> BookingResult:
        return await self.arbitrator.attempt_booking(request, requester_id, options or self.options)

    async def reschedule(
        self, reservation_id: str, new_date_time: datetime, options: Optional[BookingOptions] = None
    ) -> BookingResult:
        return await self.arbitrator.reschedule(reservation_id, new_date_time, options or self.options)

    async def cancel(self, reservation_id: str) -> BookingResult:
        return await self.arbitrator.cancel(reservation_id, self.options)

    async def list_reservations(
        self,
        provider_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        statuses: Optional[Iterable[ReservationStatus]] = None,
    ) -> List[Reservation]:
        if provider_id:
            items = await self.store.list_reservations_for_provider(provider_id)
        else:
            items = await self.store.list_all_reservations()
        if requester_id:
            items = [r for r in items if r.requester_id == requester_id]
        if statuses is not None:
            wanted = {ReservationStatus(s) for s in statuses}
            items = [r for r in items if r.status in wanted]
        return sorted(items, key=lambda r: r.date_time)

    # availability

    async def check_availability(self, provider_id: str, date_time: datetime, duration: int = 30) -> bool:
        date_time = to_local_naive(date_time)
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            return False
        if date_time <= self.clock():
            return False
        if not is_within_provider_schedule(provider, date_time, duration):
            return False
        candidate = ReservationRequest(
            provider_id=provider_id,
            requester_id="availability-check",
            pet=PetInfo(name="-", species="-"),
            date_time=date_time,
            duration=duration,
        )
        existing = await self.store.list_reservations_for_provider(provider_id)
        return not find_conflicts(candidate, existing)

    async def suggest_alternatives(
        self,
        provider_id: str,
        preferred_date: datetime,
        duration: int = 30,
        max_suggestions: int = 5,
    ) -> List[datetime]:
        provider = await self.store.get_provider(provider_id)
        if provider is None:
            return []
        existing = await self.store.list_reservations_for_provider(provider_id)
        return suggest_alternative_slots(
            provider,
            to_local_naive(preferred_date),
            duration,
            existing,
            max_suggestions=max_suggestions,
            not_before=self.clock(),
        )

    async def _expansion_inputs(self, provider_id: str):
        provider = await self._require_provider(provider_id)
        reservations = await self.store.list_reservations_for_provider(provider_id)
        return provider, reservations

    async def get_available_slots(self, provider_id: str, days_ahead: Optional[int] = None) -> List[datetime]:
        provider, reservations = await self._expansion_inputs(provider_id)
        return availability.expand_availability(
            provider,
            reservations,
            days_ahead=self.horizon_days if days_ahead is None else days_ahead,
            now=self.clock(),
            granularity=self.granularity,
        )

    async def get_available_slots_for_date(self, provider_id: str, day: date) -> List[datetime]:
        provider, reservations = await self._expansion_inputs(provider_id)
        return availability.available_slots_for_date(
            provider, reservations, day, now=self.clock(), granularity=self.granularity
        )

    async def count_available_slots(self, provider_id: str, days_ahead: Optional[int] = None) -> int:
        return len(await self.get_available_slots(provider_id, days_ahead))

    async def has_available_slots(self, provider_id: str, days_ahead: Optional[int] = None) -> bool:
        return await self.count_available_slots(provider_id, days_ahead) > 0

    async def get_next_available_slot(self, provider_id: str, days_ahead: Optional[int] = None) -> Optional[datetime]:
        slots = await self.get_available_slots(provider_id, days_ahead)
        return slots[0] if slots else None

    async def get_providers_with_availability(self, specialization: Optional[str] = None) -> List[ProviderAvailability]:
        providers = await self.store.list_providers()
        if specialization:
            needle = specialization.lower()
            providers = [p for p in providers if any(needle in s.lower() for s in p.specializations)]

        result = []
        for provider in providers:
            count = await self.count_available_slots(provider.id)
            if count > 0:
                result.append(ProviderAvailability(provider=provider, available_slots=count))
        return result

    # schedules

    async def validate_schedule_edit(
        self,
        provider_id: str,
        new_schedule: WeeklySchedule,
        existing_reservations: Optional[List[Reservation]] = None,
    ) -> ScheduleEditResult:
        if existing_reservations is None:
            existing_reservations = await self.store.list_reservations_for_provider(provider_id)
        return validate_schedule_edit(provider_id, new_schedule, existing_reservations)

    async def apply_schedule_edit(self, provider_id: str, new_schedule: WeeklySchedule) -> ScheduleEditResult:
        """Validate and store a new weekly schedule, all or nothing.

        Runs under the arbitrator's lock for this doctor so no booking can be
        persisted between the check and the update. In-flight booking attempts
        that the new schedule would no longer cover block the edit as well.
        """
        async with self.arbitrator.provider_lock(provider_id):
            provider = await self._require_provider(provider_id)
            result = await self.validate_schedule_edit(provider_id, new_schedule)
            if result.is_valid:
                edited = provider.model_copy(update={"schedule": new_schedule})
                stranded = [
                    a.attempt_id
                    for a in self.arbitrator.pending_attempts(provider_id)
                    if not is_within_provider_schedule(edited, a.request.date_time, a.request.duration)
                ]
                if stranded:
                    result = result.model_copy(update={"is_valid": False, "pending_attempts": stranded})
            if not result.is_valid:
                logger.warning(
                    f"schedule edit for {provider_id} refused: {len(result.errors)} errors, "
                    f"{len(result.conflicting_reservations)} conflicting appointments, "
                    f"{len(result.pending_attempts)} bookings in progress"
                )
                return result
            await self.store.update_provider(edited)
        logger.info(f"schedule updated for {provider_id}")
        return result.model_copy(update={"applied": True})


def build_service(settings) -> SchedulingService:
    store = build_store(settings)
    return SchedulingService(
        store,
        granularity=settings.slot_granularity,
        horizon_days=settings.horizon_days,
        options=settings.booking_options(),
    )
