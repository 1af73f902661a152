"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...utils.time_calculator import HHMM_PATTERN
from .state_machine import CONSULTATION_METHODS, SESSION_FORMATS


def _check_time(v: Optional[str]) -> Optional[str]:
    if v is not None and not HHMM_PATTERN.match(v):
        raise ValueError("Time must be in HH:MM format")
    return v


class BookingRequest(BaseModel):
    """Schema for booking a single session"""

    provider_id: str
    session_date: date
    start_time: str
    duration_minutes: int
    end_time: Optional[str] = None  # Optional cross-check against start + duration
    consultation_method: str = "video"
    session_format: str = "one_to_one"
    plan_id: Optional[int] = None
    notes: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)

    @field_validator("consultation_method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v not in CONSULTATION_METHODS:
            raise ValueError(f"consultation_method must be one of {', '.join(CONSULTATION_METHODS)}")
        return v

    @field_validator("session_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in SESSION_FORMATS:
            raise ValueError("session_format must be 'one_to_one' or 'one_to_many'")
        return v


class ReasonRequest(BaseModel):
    """Cancel / reject body"""

    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    session_date: date
    start_time: str
    duration_minutes: Optional[int] = None

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)


class FeedbackRequest(BaseModel):
    rating: int
    comment: Optional[str] = None

    @field_validator("rating")
    @classmethod
    def validate_rating(cls, v: int) -> int:
        if v < 1 or v > 5:
            raise ValueError("rating must be between 1 and 5")
        return v


class GroupSessionRequest(BaseModel):
    """Provider-led group session for every active subscriber of a plan"""

    plan_id: int
    session_date: date
    start_time: str
    duration_minutes: Optional[int] = None
    consultation_method: str = "video"

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v):
        return _check_time(v)


class DynamicGroupRequest(BaseModel):
    plan_id: int
    consultation_method: str = "video"


class AppointmentResponse(BaseModel):
    id: int
    client_id: str
    provider_id: str
    session_date: Optional[date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    duration_minutes: Optional[int] = None
    consultation_method: str
    session_format: str
    status: str
    price: float
    payment_required: bool
    payment_status: str
    plan_id: Optional[int] = None
    plan_instance_id: Optional[str] = None
    session_ordinal: Optional[int] = None
    total_sessions_in_plan: Optional[int] = None
    group_session_id: Optional[str] = None
    is_dynamic_group: bool = False
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    channel_name: Optional[str] = None
    notes: Optional[str] = None
    feedback_rating: Optional[int] = None
    feedback_comment: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AppointmentListResponse(BaseModel):
    items: list[AppointmentResponse]
    total: int
    page: int
    page_size: int


class ChannelResponse(BaseModel):
    appointment_id: int
    channel_name: str
    consultation_method: str
    join_opens_at: datetime
    ends_at: datetime
