"""
Booking arbitration

Every booking attempt walks the same state machine:

    submitted -> conflict_checked -> booked | retrying | rejected

Competing attempts for overlapping intervals are ordered by submission time
(then requester id, then attempt id). The persisting step runs under a
per-provider lock and re-checks the store, so two overlapping reservations
are never both saved whatever the interleaving.
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from scheduling.alternatives import suggest_alternative_slots
from scheduling.conflicts import find_conflicts, is_within_provider_schedule
from scheduling.timemath import to_local_naive
from services.errors import (
    BookingConflictError,
    SchedulingError,
    SimultaneousBookingError,
    SlotUnavailableError,
    StorageError,
    ValidationError,
)
from services.logger import setup_logger
from services.retry import RetryPolicy, with_retry
from services.storage import ReservationStore, validate_reservation_request

from .optimistic import OptimisticBookingState, ProvisionalView, RemoveProvisional, RestoreSnapshot
from .registry import PendingAttemptRegistry, resolve_booking_conflict
from .state import (
    BookingAttempt,
    BookingOptions,
    BookingResult,
    BookingState,
    Provider,
    Reservation,
    ReservationRequest,
    ReservationStatus,
)

logger = setup_logger("arbitrator")

RETRYABLE = (SimultaneousBookingError, SlotUnavailableError, StorageError)


def _policy(options: BookingOptions) -> RetryPolicy:
    return RetryPolicy(
        max_retries=options.max_retry_attempts,
        base_delay_ms=options.retry_delay_ms,
        multiplier=2.0,
        max_delay_ms=options.max_retry_delay_ms,
    )


def _failure(error: SchedulingError, alternatives: Iterable[datetime] = (), attempts: int = 0) -> BookingResult:
    return BookingResult(
        success=False,
        error=error.to_app_error(),
        alternatives=list(alternatives),
        attempts=attempts,
    )


class BookingArbitrator:
    def __init__(
        self,
        store: ReservationStore,
        registry: Optional[PendingAttemptRegistry] = None,
        view: Optional[ProvisionalView] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.registry = registry if registry is not None else PendingAttemptRegistry()
        self.view = view if view is not None else ProvisionalView()
        self.clock = clock
        self.sleep = sleep
        self._optimistic: Dict[str, OptimisticBookingState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def provider_lock(self, provider_id: str) -> asyncio.Lock:
        """Serialises everything that writes one doctor's appointments or schedule."""
        return self._locks.setdefault(provider_id, asyncio.Lock())

    def pending_attempts(self, provider_id: str) -> List[BookingAttempt]:
        return self.registry.for_provider(provider_id)

    def pending_count(self) -> int:
        return len(self.registry)

    def optimistic_count(self) -> int:
        return len(self._optimistic)

    async def _check_current_schedule(self, provider_id: str, date_time: datetime, duration: int) -> None:
        # Must run under provider_lock: the schedule may have been edited since Submitted.
        provider = await self.store.get_provider(provider_id)
        if provider is None or not is_within_provider_schedule(provider, date_time, duration):
            raise BookingConflictError("Doctor's working hours changed; requested time is no longer offered")

    @staticmethod
    def _transition(attempt: BookingAttempt, state: BookingState) -> None:
        logger.info(f"{attempt.attempt_id}: {attempt.state.value} -> {state.value}")
        attempt.state = state

    async def attempt_booking(
        self,
        request: ReservationRequest,
        requester_id: Optional[str] = None,
        options: Optional[BookingOptions] = None,
    ) -> BookingResult:
        options = options or BookingOptions()
        requester_id = requester_id or request.requester_id

        try:
            provider = await self.store.get_provider(request.provider_id)
        except StorageError as e:
            return _failure(e)

        errors = validate_reservation_request(request, self.clock())
        if provider is None:
            errors.insert(0, f"Doctor not found: {request.provider_id}")
        if errors:
            logger.warning(f"booking request rejected by validation: {errors}")
            return _failure(ValidationError(f"Appointment validation failed: {', '.join(errors)}", errors))

        attempt = BookingAttempt(
            attempt_id=f"booking_{uuid.uuid4()}",
            request=request,
            requester_id=requester_id,
            submitted_at=self.clock(),
        )
        self.registry.register(attempt)
        logger.info(
            f"{attempt.attempt_id}: submitted by {requester_id} for {request.provider_id} "
            f"at {request.date_time.isoformat()} ({request.duration}min)"
        )

        try:
            if options.enforce_schedule and not is_within_provider_schedule(
                provider, request.date_time, request.duration
            ):
                raise BookingConflictError("Requested time is outside the doctor's working hours")

            if options.enable_optimistic_updates:
                self._apply_optimistic(attempt)

            def on_retry(n: int, error: BaseException, delay_ms: float) -> None:
                self._transition(attempt, BookingState.RETRYING)

            reservation = await with_retry(
                lambda n: self._commit(attempt, provider, options, n),
                _policy(options),
                retry_on=RETRYABLE,
                sleep=self.sleep,
                on_retry=on_retry,
            )
            self._confirm(attempt.attempt_id, reservation)
            self._transition(attempt, BookingState.BOOKED)
            return BookingResult(success=True, reservation=reservation, attempts=attempt.attempts_made)

        except SchedulingError as e:
            self._transition(attempt, BookingState.REJECTED)
            logger.warning(f"{attempt.attempt_id}: {e.message}")
            self._rollback(attempt.attempt_id)
            alternatives = await self._alternatives(provider, request, options)
            if isinstance(e, BookingConflictError):
                e.alternatives = alternatives
            return _failure(e, alternatives, attempt.attempts_made)

        except Exception:
            self._rollback(attempt.attempt_id)
            raise

        finally:
            self.registry.deregister(attempt.attempt_id)

    async def _commit(self, attempt: BookingAttempt, provider: Provider, options: BookingOptions, n: int) -> Reservation:
        attempt.attempts_made = n + 1
        request = attempt.request

        existing = await self.store.list_reservations_for_provider(provider.id)
        conflicts = find_conflicts(request, existing)
        self._transition(attempt, BookingState.CONFLICT_CHECKED)

        if conflicts:
            competitors = self.registry.find_competitors(attempt)
            if competitors:
                resolution = resolve_booking_conflict([attempt, *competitors])
                if resolution.winner.attempt_id != attempt.attempt_id:
                    raise SimultaneousBookingError(
                        "Another booking attempt for this time slot has priority", conflicts
                    )
            raise BookingConflictError("Time slot is no longer available", conflicts)

        async with self.provider_lock(provider.id):
            earlier = [
                other
                for other in self.registry.find_competitors(attempt)
                if other.priority_key() < attempt.priority_key()
            ]
            if earlier:
                raise SimultaneousBookingError("An earlier booking attempt for this time slot is in progress")

            if not await self.store.is_slot_available(provider.id, request.date_time, request.duration):
                raise SlotUnavailableError("Slot became unavailable during booking process")

            if options.enforce_schedule:
                await self._check_current_schedule(provider.id, request.date_time, request.duration)

            try:
                return await self.store.save_reservation(request)
            except SchedulingError:
                raise
            except Exception as e:
                raise StorageError(f"Failed to save appointment: {e}") from e

    async def reschedule(
        self,
        reservation_id: str,
        new_date_time: datetime,
        options: Optional[BookingOptions] = None,
    ) -> BookingResult:
        """Move a scheduled reservation, keeping its id, provider and duration."""
        new_date_time = to_local_naive(new_date_time)
        options = options or BookingOptions()
        try:
            current = await self.store.get_reservation(reservation_id)
            provider = await self.store.get_provider(current.provider_id) if current else None
        except StorageError as e:
            return _failure(e)

        if current is None:
            return _failure(ValidationError(f"Appointment not found: {reservation_id}"))
        if current.status != ReservationStatus.SCHEDULED:
            return _failure(ValidationError(f"Cannot reschedule a {current.status.value} appointment"))
        if provider is None:
            return _failure(ValidationError(f"Doctor not found: {current.provider_id}"))
        if new_date_time <= self.clock():
            return _failure(ValidationError("Appointment cannot be scheduled in the past"))

        moved = current.model_copy(update={"date_time": new_date_time})
        key = f"reschedule_{uuid.uuid4()}"
        attempts = 0

        async def commit(n: int) -> Reservation:
            nonlocal attempts
            attempts = n + 1
            async with self.provider_lock(provider.id):
                existing = await self.store.list_reservations_for_provider(provider.id)
                conflicts = find_conflicts(moved, existing, exclude_id=current.id)
                if conflicts:
                    raise BookingConflictError("Time slot is no longer available", conflicts)
                if options.enforce_schedule:
                    await self._check_current_schedule(provider.id, new_date_time, moved.duration)
                await self.store.update_reservation(moved)
                return moved

        try:
            if options.enforce_schedule and not is_within_provider_schedule(
                provider, new_date_time, moved.duration
            ):
                raise BookingConflictError("Requested time is outside the doctor's working hours")
            if options.enable_optimistic_updates:
                self._apply_optimistic_move(key, current, moved)
            result = await with_retry(commit, _policy(options), retry_on=(StorageError,), sleep=self.sleep)
        except SchedulingError as e:
            logger.warning(f"reschedule of {reservation_id} rejected: {e.message}")
            self._rollback(key)
            alternatives = await self._alternatives(provider, moved, options, exclude_id=current.id)
            return _failure(e, alternatives, attempts)
        except Exception:
            self._rollback(key)
            raise

        self._confirm(key, result)
        logger.info(f"rescheduled {reservation_id} to {new_date_time.isoformat()}")
        return BookingResult(success=True, reservation=result, attempts=attempts)

    async def cancel(self, reservation_id: str, options: Optional[BookingOptions] = None) -> BookingResult:
        """Mark a reservation cancelled. Reservations are never deleted."""
        options = options or BookingOptions()
        try:
            current = await self.store.get_reservation(reservation_id)
        except StorageError as e:
            return _failure(e)
        if current is None:
            return _failure(ValidationError(f"Appointment not found: {reservation_id}"))
        if current.status == ReservationStatus.CANCELLED:
            return BookingResult(success=True, reservation=current)
        if current.status == ReservationStatus.COMPLETED:
            return _failure(ValidationError("Cannot cancel a completed appointment"))

        cancelled = current.model_copy(update={"status": ReservationStatus.CANCELLED})

        async def commit(n: int) -> None:
            await self.store.update_reservation(cancelled)

        try:
            await with_retry(commit, _policy(options), retry_on=(StorageError,), sleep=self.sleep)
        except SchedulingError as e:
            return _failure(e)

        if any(r.id == cancelled.id for r in self.view.reservations):
            self.view.add(cancelled)
        logger.info(f"cancelled {reservation_id}")
        return BookingResult(success=True, reservation=cancelled, attempts=1)

    # optimistic view

    def _apply_optimistic(self, attempt: BookingAttempt) -> None:
        temp_id = f"temp_{attempt.attempt_id}"
        original = self.view.snapshot()
        self.view.add(
            Reservation(
                **attempt.request.model_dump(),
                id=temp_id,
                created_at=attempt.submitted_at,
            )
        )
        self._optimistic[attempt.attempt_id] = OptimisticBookingState(
            attempt_id=attempt.attempt_id,
            appointment_id=temp_id,
            original_state=original,
            rollback_actions=[RemoveProvisional(reservation_id=temp_id)],
            timestamp=self.clock(),
        )

    def _apply_optimistic_move(self, key: str, current: Reservation, moved: Reservation) -> None:
        temp_id = f"temp_{key}"
        previous = [r for r in self.view.snapshot() if r.id == current.id]
        self.view.remove(current.id)
        self.view.add(moved.model_copy(update={"id": temp_id}))
        self._optimistic[key] = OptimisticBookingState(
            attempt_id=key,
            appointment_id=temp_id,
            original_state=previous,
            rollback_actions=[
                RemoveProvisional(reservation_id=temp_id),
                RestoreSnapshot(snapshot=previous),
            ],
            timestamp=self.clock(),
        )

    def _confirm(self, key: str, reservation: Reservation) -> None:
        state = self._optimistic.pop(key, None)
        if state is not None:
            self.view.confirm(state.appointment_id, reservation)

    def _rollback(self, key: str) -> None:
        state = self._optimistic.pop(key, None)
        if state is None:
            return
        for command in state.rollback_actions:
            try:
                self.view.apply(command)
            except Exception as e:
                logger.error(f"rollback of {key} failed at {command.kind}: {e}")
        logger.info(f"rolled back provisional {state.appointment_id}")

    async def _alternatives(
        self,
        provider: Provider,
        request: ReservationRequest,
        options: BookingOptions,
        exclude_id: Optional[str] = None,
    ) -> List[datetime]:
        if options.max_alternative_suggestions <= 0:
            return []
        try:
            provider = await self.store.get_provider(provider.id) or provider
            existing = await self.store.list_reservations_for_provider(provider.id)
        except StorageError as e:
            logger.warning(f"could not load reservations for alternatives: {e}")
            return []
        return suggest_alternative_slots(
            provider,
            request.date_time,
            request.duration,
            [r for r in existing if r.id != exclude_id],
            max_suggestions=options.max_alternative_suggestions,
            not_before=self.clock(),
        )
