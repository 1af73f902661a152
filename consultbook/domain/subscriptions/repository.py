"""Subscription repository - Database operations for ledger entries"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Appointment, UserSubscription
from ...models_payment import Payment


class SubscriptionRepository:
    """Repository for ledger database operations"""

    @staticmethod
    def get_subscription(db: Session, subscription_id: int) -> Optional[UserSubscription]:
        return db.query(UserSubscription).filter(UserSubscription.id == subscription_id).first()

    @staticmethod
    def list_subscriptions(
        db: Session, client_id: Optional[str] = None, provider_id: Optional[str] = None, status: Optional[str] = None
    ) -> list[UserSubscription]:
        query = db.query(UserSubscription)
        if client_id is not None:
            query = query.filter(UserSubscription.client_id == client_id)
        if provider_id is not None:
            query = query.filter(UserSubscription.provider_id == provider_id)
        if status:
            query = query.filter(UserSubscription.status == status)
        return query.order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc()).all()

    @staticmethod
    def next_ordinal(db: Session, plan_instance_id: str) -> int:
        current = (
            db.query(func.max(Appointment.session_ordinal))
            .filter(Appointment.plan_instance_id == plan_instance_id)
            .scalar()
        )
        return (current or 0) + 1

    @staticmethod
    def status_counts(db: Session, provider_id: str) -> dict:
        rows = (
            db.query(UserSubscription.status, func.count(UserSubscription.id))
            .filter(UserSubscription.provider_id == provider_id)
            .group_by(UserSubscription.status)
            .all()
        )
        return dict(rows)

    @staticmethod
    def plan_session_counts(db: Session, provider_id: str) -> dict:
        rows = (
            db.query(Appointment.status, func.count(Appointment.id))
            .filter(Appointment.provider_id == provider_id, Appointment.plan_instance_id.isnot(None))
            .group_by(Appointment.status)
            .all()
        )
        return dict(rows)

    @staticmethod
    def subscription_revenue(db: Session, provider_id: str) -> float:
        total = (
            db.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(
                Payment.provider_id == provider_id,
                Payment.subscription_id.isnot(None),
                Payment.status == "completed",
            )
            .scalar()
        )
        return round(float(total or 0), 2)

    @staticmethod
    def distinct_subscribers(db: Session, provider_id: str) -> int:
        return (
            db.query(func.count(func.distinct(UserSubscription.client_id)))
            .filter(UserSubscription.provider_id == provider_id)
            .scalar()
            or 0
        )
