"""Plan catalog schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from ...utils.time_calculator import HHMM_PATTERN


class PlanCreate(BaseModel):
    """Schema for creating a plan"""

    name: str
    description: Optional[str] = None
    kind: str  # "single" | "monthly"
    session_format: str = "one_to_one"
    duration_minutes: int = 30
    price: Optional[float] = None
    sessions_per_month: Optional[int] = None
    monthly_price: Optional[float] = None
    group_session_date: Optional[date] = None
    group_start_time: Optional[str] = None
    group_end_time: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("name is required")
        return v.strip()

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in {"single", "monthly"}:
            raise ValueError("kind must be 'single' or 'monthly'")
        return v

    @field_validator("session_format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v not in {"one_to_one", "one_to_many"}:
            raise ValueError("session_format must be 'one_to_one' or 'one_to_many'")
        return v

    @field_validator("group_start_time", "group_end_time")
    @classmethod
    def validate_time(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not HHMM_PATTERN.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v


class PlanUpdate(BaseModel):
    """Partial update; commercial fields on a referenced plan produce a new version"""

    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    session_format: Optional[str] = None
    duration_minutes: Optional[int] = None
    price: Optional[float] = None
    sessions_per_month: Optional[int] = None
    monthly_price: Optional[float] = None


class GroupSlotUpdate(BaseModel):
    """Move the recurring slot of a dynamic group plan"""

    session_date: date
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not HHMM_PATTERN.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v


class PlanResponse(BaseModel):
    id: int
    provider_id: str
    name: str
    description: Optional[str] = None
    kind: str
    session_format: str
    duration_minutes: int
    price: Optional[float] = None
    sessions_per_month: Optional[int] = None
    monthly_price: Optional[float] = None
    price_per_session: Optional[float] = None
    is_active: bool
    group_session_date: Optional[date] = None
    group_start_time: Optional[str] = None
    group_end_time: Optional[str] = None
    superseded_by_id: Optional[int] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
