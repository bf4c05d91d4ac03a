from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from booking.service import SchedulingService, build_service
from booking.state import BookingResult, PetInfo, ReservationRequest, WeeklySchedule
from services.config import load_settings
from services.errors import BOOKING_CONFLICT, STORAGE_ERROR, VALIDATION_ERROR, SchedulingError
from services.logger import setup_logger

logger = setup_logger("api")

STATUS_BY_ERROR = {VALIDATION_ERROR: 422, BOOKING_CONFLICT: 409, STORAGE_ERROR: 503}


class BookingIn(BaseModel):
    provider_id: str
    requester_id: str
    pet: PetInfo
    date_time: datetime
    duration: int = 30
    reason: str


class RescheduleIn(BaseModel):
    date_time: datetime


class ScheduleIn(BaseModel):
    schedule: WeeklySchedule


def _result_or_raise(result: BookingResult) -> Dict[str, Any]:
    if result.success:
        return {"item": result.reservation.model_dump(mode="json"), "attempts": result.attempts}
    err = result.error
    raise HTTPException(
        status_code=STATUS_BY_ERROR.get(err.type, 500),
        detail={
            "type": err.type,
            "message": err.message,
            "recoverable": err.recoverable,
            "alternatives": [a.isoformat() for a in result.alternatives],
        },
    )


def create_app(service: Optional[SchedulingService] = None) -> FastAPI:
    app = FastAPI(title="Appointment Scheduler")
    holder: Dict[str, Optional[SchedulingService]] = {"service": service}

    def get_service() -> SchedulingService:
        # Built on first request so importing this module never touches storage
        if holder["service"] is None:
            holder["service"] = build_service(load_settings())
        return holder["service"]

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
        logger.warning(f"{request.method} {request.url.path} -> {exc.error_type}: {exc.message}")
        return JSONResponse(
            status_code=STATUS_BY_ERROR.get(exc.error_type, 500),
            content={"detail": {"type": exc.error_type, "message": exc.message, "recoverable": exc.recoverable}},
        )

    @app.get("/providers")
    async def list_providers(specialization: Optional[str] = None, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        if specialization:
            items = await svc.get_providers_with_availability(specialization)
            return {"items": [it.model_dump(mode="json") for it in items]}
        providers = await svc.store.list_providers()
        return {"items": [p.model_dump(mode="json") for p in providers]}

    @app.get("/providers/{provider_id}/slots")
    async def provider_slots(provider_id: str, days: Optional[int] = None, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        slots = await svc.get_available_slots(provider_id, days)
        return {"items": [s.isoformat() for s in slots]}

    @app.get("/providers/{provider_id}/availability")
    async def provider_availability(provider_id: str, date_time: datetime, duration: int = 30, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        return {"available": await svc.check_availability(provider_id, date_time, duration)}

    @app.get("/providers/{provider_id}/alternatives")
    async def provider_alternatives(
        provider_id: str,
        preferred: datetime,
        duration: int = 30,
        max_suggestions: int = 5,
        svc: SchedulingService = Depends(get_service),
    ) -> Dict[str, Any]:
        items = await svc.suggest_alternatives(provider_id, preferred, duration, max_suggestions)
        return {"items": [s.isoformat() for s in items]}

    @app.put("/providers/{provider_id}/schedule")
    async def update_schedule(provider_id: str, body: ScheduleIn, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        result = await svc.apply_schedule_edit(provider_id, body.schedule)
        payload = result.model_dump(mode="json")
        if result.errors:
            raise HTTPException(status_code=422, detail=payload)
        if result.conflicting_reservations or result.pending_attempts:
            raise HTTPException(status_code=409, detail=payload)
        return payload

    @app.post("/bookings", status_code=201)
    async def create_booking(body: BookingIn, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        logger.info(f"/bookings <- {body.model_dump_json()}")
        request = ReservationRequest(**body.model_dump())
        return _result_or_raise(await svc.attempt_booking(request, body.requester_id))

    @app.post("/appointments/{reservation_id}/cancel")
    async def cancel_appointment(reservation_id: str, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        return _result_or_raise(await svc.cancel(reservation_id))

    @app.post("/appointments/{reservation_id}/reschedule")
    async def reschedule_appointment(reservation_id: str, body: RescheduleIn, svc: SchedulingService = Depends(get_service)) -> Dict[str, Any]:
        return _result_or_raise(await svc.reschedule(reservation_id, body.date_time))

    @app.get("/appointments")
    async def list_appointments(
        provider_id: Optional[str] = None,
        requester_id: Optional[str] = None,
        svc: SchedulingService = Depends(get_service),
    ) -> Dict[str, Any]:
        items = await svc.list_reservations(provider_id=provider_id, requester_id=requester_id)
        return {"items": [r.model_dump(mode="json") for r in items]}

    return app


app = create_app()
