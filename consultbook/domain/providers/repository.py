"""Provider schedule repository"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import ProviderSchedule


class ProviderScheduleRepository:
    @staticmethod
    def get_schedule(db: Session, provider_id: str) -> Optional[ProviderSchedule]:
        return db.query(ProviderSchedule).filter(ProviderSchedule.provider_id == provider_id).first()

    @staticmethod
    def save_schedule(db: Session, provider_id: str, hourly_rate: float, weekly_hours: dict) -> ProviderSchedule:
        schedule = ProviderScheduleRepository.get_schedule(db, provider_id)
        if schedule is None:
            schedule = ProviderSchedule(provider_id=provider_id)
            db.add(schedule)
        schedule.hourly_rate = hourly_rate
        schedule.weekly_hours = weekly_hours
        db.commit()
        db.refresh(schedule)
        return schedule
