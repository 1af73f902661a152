"""Provider schedule service - weekly open hours and direct-booking price"""

import logging
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import Caller
from ...errors import NotFoundError, PermissionDeniedError, ValidationError
from ...models import ProviderSchedule
from ...utils.time_calculator import parse_hhmm
from .repository import ProviderScheduleRepository
from .schemas import WEEKDAYS, ScheduleUpdate

logger = logging.getLogger(__name__)


def open_ranges(schedule: Optional[ProviderSchedule], session_date: date) -> list[tuple[int, int]]:
    """Open [start, end) minute ranges for the weekday of session_date"""
    if schedule is None:
        return []
    day = WEEKDAYS[session_date.weekday()]
    return sorted(
        (parse_hhmm(r["start_time"]), parse_hhmm(r["end_time"])) for r in (schedule.weekly_hours or {}).get(day, [])
    )


def ensure_within_hours(db: Session, provider_id: str, session_date: date, start_time: str, end_time: str) -> None:
    """A client-initiated session must sit entirely inside one open range"""
    schedule = ProviderScheduleRepository.get_schedule(db, provider_id)
    if schedule is None:
        raise ValidationError("Provider has not published their availability", code="provider_unavailable")

    ranges = open_ranges(schedule, session_date)
    day = WEEKDAYS[session_date.weekday()]
    if not ranges:
        raise ValidationError(f"Provider is not available on {day.capitalize()}", code="day_closed")

    start, end = parse_hhmm(start_time), parse_hhmm(end_time)
    if not any(r_start <= start and end <= r_end for r_start, r_end in ranges):
        raise ValidationError(
            f"{start_time}-{end_time} is outside the provider's hours on {day.capitalize()}", code="outside_hours"
        )


def session_price(db: Session, provider_id: str, duration_minutes: int) -> float:
    """Hourly rate pro-rated to the session length"""
    schedule = ProviderScheduleRepository.get_schedule(db, provider_id)
    if schedule is None:
        return 0.0
    return round((schedule.hourly_rate or 0.0) * duration_minutes / 60, 2)


class ProviderService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = ProviderScheduleRepository()

    def get_schedule(self, provider_id: str) -> ProviderSchedule:
        schedule = self.repo.get_schedule(self.db, provider_id)
        if not schedule:
            raise NotFoundError("Provider has not published a schedule", code="schedule_not_found")
        return schedule

    def set_schedule(self, caller: Caller, data: ScheduleUpdate) -> ProviderSchedule:
        if caller.role != "provider":
            raise PermissionDeniedError("Only providers publish schedules")
        weekly_hours = {day: [r.model_dump() for r in ranges] for day, ranges in data.weekly_hours.items()}
        schedule = self.repo.save_schedule(self.db, caller.id, data.hourly_rate, weekly_hours)
        open_days = ", ".join(day for day in WEEKDAYS if weekly_hours.get(day)) or "none"
        logger.info(f"✅ Schedule saved for provider {caller.id} (open: {open_days}, rate {data.hourly_rate})")
        return schedule
