"""Scheduling router - FastAPI endpoints for bookings"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import Caller, get_current_caller, require_role
from ...database import get_db
from ...models import Appointment
from .availability import free_intervals
from .schemas import (
    AppointmentListResponse,
    AppointmentResponse,
    BookingRequest,
    ChannelResponse,
    DynamicGroupRequest,
    FeedbackRequest,
    GroupSessionRequest,
    ReasonRequest,
    RescheduleRequest,
)
from .service import SchedulingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_scheduling_service(db: Session = Depends(get_db)) -> SchedulingService:
    """Dependency injection for SchedulingService"""
    return SchedulingService(db)


def appointment_response(appointment: Appointment) -> AppointmentResponse:
    """Appointment as clients see it; dynamic group sessions show their plan's current slot"""
    data = {field: getattr(appointment, field, None) for field in AppointmentResponse.model_fields}
    data.update(
        session_date=appointment.effective_date,
        start_time=appointment.effective_start_time,
        end_time=appointment.effective_end_time,
    )
    return AppointmentResponse(**data)


# ============================================================================
# AVAILABILITY & BOOKING
# ============================================================================


@router.get("/availability/{provider_id}")
async def get_availability(
    provider_id: str,
    session_date: date = Query(...),
    window_start: Optional[str] = Query(None),
    window_end: Optional[str] = Query(None),
    slot_minutes: int = Query(30, ge=15, le=480),
    session_format: str = Query("one_to_one"),
    db: Session = Depends(get_db),
):
    """Free slots inside the provider's published hours on a date"""
    slots = free_intervals(db, provider_id, session_date, window_start, window_end, slot_minutes, session_format)
    return {"provider_id": provider_id, "session_date": session_date, "slots": slots}


@router.post("", response_model=AppointmentResponse, status_code=201)
async def book_session(
    body: BookingRequest,
    caller: Caller = Depends(require_role("client")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Book a single session (pending until paid or accepted)"""
    return appointment_response(service.book_single(caller, body))


@router.get("/client", response_model=AppointmentListResponse)
async def list_client_bookings(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(get_current_caller),
    service: SchedulingService = Depends(get_scheduling_service),
):
    items, total = service.list_for_client(caller, status, page, page_size)
    return {"items": [appointment_response(a) for a in items], "total": total, "page": page, "page_size": page_size}


@router.get("/provider", response_model=AppointmentListResponse)
async def list_provider_bookings(
    status: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    caller: Caller = Depends(require_role("provider")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    items, total = service.list_for_provider(caller, status, page, page_size)
    return {"items": [appointment_response(a) for a in items], "total": total, "page": page, "page_size": page_size}


# ============================================================================
# GROUP SESSIONS
# ============================================================================


@router.post("/group-sessions", response_model=list[AppointmentResponse], status_code=201)
async def schedule_group_session(
    body: GroupSessionRequest,
    caller: Caller = Depends(require_role("provider")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Schedule a group session for every eligible subscriber of a plan"""
    return [appointment_response(a) for a in service.schedule_group_session(caller, body)]


@router.post("/dynamic-group-sessions", response_model=list[AppointmentResponse], status_code=201)
async def schedule_dynamic_group_session(
    body: DynamicGroupRequest,
    caller: Caller = Depends(require_role("provider")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Enrol subscribers in a plan's recurring group slot"""
    return [appointment_response(a) for a in service.schedule_dynamic_group_session(caller, body)]


# ============================================================================
# LIFECYCLE
# ============================================================================


@router.get("/{appointment_id}", response_model=AppointmentResponse)
async def get_booking(
    appointment_id: int,
    caller: Caller = Depends(get_current_caller),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return appointment_response(service.get_for_participant(appointment_id, caller))


@router.post("/{appointment_id}/accept", response_model=AppointmentResponse)
async def accept_booking(
    appointment_id: int,
    caller: Caller = Depends(require_role("provider")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return appointment_response(service.accept(appointment_id, caller))


@router.post("/{appointment_id}/reject", response_model=AppointmentResponse)
async def reject_booking(
    appointment_id: int,
    body: ReasonRequest,
    caller: Caller = Depends(require_role("provider")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return appointment_response(service.reject(appointment_id, caller, body.reason))


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
async def cancel_booking(
    appointment_id: int,
    body: ReasonRequest,
    caller: Caller = Depends(get_current_caller),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Cancel as client, provider or admin (admins must give a reason)"""
    return appointment_response(service.cancel(appointment_id, caller, body.reason))


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_booking(
    appointment_id: int,
    body: RescheduleRequest,
    caller: Caller = Depends(require_role("client")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return appointment_response(service.reschedule(appointment_id, caller, body))


@router.post("/{appointment_id}/feedback", response_model=AppointmentResponse)
async def submit_feedback(
    appointment_id: int,
    body: FeedbackRequest,
    caller: Caller = Depends(require_role("client")),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return appointment_response(service.submit_feedback(appointment_id, caller, body.rating, body.comment))


@router.get("/{appointment_id}/channel", response_model=ChannelResponse)
async def get_session_channel(
    appointment_id: int,
    caller: Caller = Depends(get_current_caller),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Real-time channel for a confirmed session inside its join window"""
    return service.get_channel(appointment_id, caller)
