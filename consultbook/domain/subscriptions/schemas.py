"""Subscription ledger schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...utils.time_calculator import HHMM_PATTERN
from ..scheduling.state_machine import CONSULTATION_METHODS


class SessionSlot(BaseModel):
    session_date: date
    start_time: str

    @field_validator("start_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not HHMM_PATTERN.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v


class PurchaseRequest(BaseModel):
    """Schema for purchasing a monthly plan with an initial set of sessions"""

    plan_id: int
    sessions: list[SessionSlot] = []
    consultation_method: str = "video"
    auto_renewal: bool = False

    @field_validator("consultation_method")
    @classmethod
    def validate_method(cls, v: str) -> str:
        if v not in CONSULTATION_METHODS:
            raise ValueError(f"consultation_method must be one of {', '.join(CONSULTATION_METHODS)}")
        return v


class PlanSessionRequest(SessionSlot):
    """Schedule one more session against a ledger entry"""

    consultation_method: str = "video"


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


class SubscriptionResponse(BaseModel):
    id: int
    client_id: str
    provider_id: str
    plan_id: int
    plan_instance_id: str
    plan_name: str
    plan_kind: str
    total_sessions: int
    sessions_used: int
    sessions_remaining: int
    monthly_price: float
    start_date: datetime
    expiry_date: datetime
    next_billing_date: Optional[datetime] = None
    status: str
    auto_renewal: bool
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None


class ProviderStatsResponse(BaseModel):
    active: int
    expired: int
    cancelled: int
    total_subscribers: int
    sessions_completed: int
    sessions_scheduled: int
    revenue: float
