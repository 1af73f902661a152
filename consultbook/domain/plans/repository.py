"""Plan repository - Database operations for the plan catalog"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment, Plan, UserSubscription


class PlanRepository:
    """Repository for plan database operations"""

    @staticmethod
    def get_plan(db: Session, plan_id: int) -> Optional[Plan]:
        return db.query(Plan).filter(Plan.id == plan_id).first()

    @staticmethod
    def get_provider_plans(db: Session, provider_id: str, active_only: bool = True) -> list[Plan]:
        query = db.query(Plan).filter(Plan.provider_id == provider_id)
        if active_only:
            query = query.filter(Plan.is_active.is_(True))
        return query.order_by(Plan.created_at.desc(), Plan.id.desc()).all()

    @staticmethod
    def is_referenced(db: Session, plan_id: int) -> bool:
        """True once any appointment or ledger entry points at the plan"""
        if db.query(Appointment.id).filter(Appointment.plan_id == plan_id).first():
            return True
        return db.query(UserSubscription.id).filter(UserSubscription.plan_id == plan_id).first() is not None

    @staticmethod
    def create_plan(db: Session, **plan_data) -> Plan:
        plan = Plan(**plan_data)
        db.add(plan)
        db.commit()
        db.refresh(plan)
        return plan
