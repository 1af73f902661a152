"""Provider schedule schemas"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator, model_validator

from ...utils.time_calculator import HHMM_PATTERN, parse_hhmm

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class TimeRange(BaseModel):
    start_time: str
    end_time: str

    @field_validator("start_time", "end_time")
    @classmethod
    def validate_time(cls, v: str) -> str:
        if not HHMM_PATTERN.match(v):
            raise ValueError("Time must be in HH:MM format")
        return v

    @model_validator(mode="after")
    def validate_order(self):
        if parse_hhmm(self.end_time) <= parse_hhmm(self.start_time):
            raise ValueError("end_time must be after start_time")
        return self


class ScheduleUpdate(BaseModel):
    """Replace a provider's weekly hours; days left out are closed"""

    hourly_rate: float = 0.0
    weekly_hours: dict[str, list[TimeRange]] = {}

    @field_validator("hourly_rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        if v < 0:
            raise ValueError("hourly_rate cannot be negative")
        return v

    @field_validator("weekly_hours")
    @classmethod
    def validate_days(cls, v: dict) -> dict:
        normalized = {}
        for day, ranges in v.items():
            key = day.strip().lower()
            if key not in WEEKDAYS:
                raise ValueError(f"Unknown weekday '{day}'")
            ordered = sorted(ranges, key=lambda r: parse_hhmm(r.start_time))
            for prev, nxt in zip(ordered, ordered[1:]):
                if parse_hhmm(nxt.start_time) < parse_hhmm(prev.end_time):
                    raise ValueError(f"Overlapping hours on {key}")
            normalized[key] = ordered
        return normalized


class ScheduleResponse(BaseModel):
    provider_id: str
    hourly_rate: float
    weekly_hours: dict[str, list[TimeRange]]
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
