"""Session accounting for ledger entries, derived from sibling appointments"""

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import Appointment, UserSubscription
from ...models_payment import Payment
from ..notifications.service import emit
from ..scheduling.state_machine import CONSUMING_STATUSES

logger = logging.getLogger(__name__)

ACTIVE = "active"
EXPIRED = "expired"
CANCELLED = "cancelled"


def sessions_used(db: Session, plan_instance_id: str) -> int:
    """Appointments under the plan instance that are confirmed or completed"""
    return (
        db.query(func.count(Appointment.id))
        .filter(
            Appointment.plan_instance_id == plan_instance_id,
            Appointment.status.in_(CONSUMING_STATUSES),
        )
        .scalar()
        or 0
    )


def session_usage(db: Session, subscription: UserSubscription) -> tuple[int, int]:
    """(used, remaining) - remaining never drops below zero"""
    used = sessions_used(db, subscription.plan_instance_id)
    return used, max(0, subscription.total_sessions - used)


def sessions_booked(db: Session, plan_instance_id: str) -> int:
    """Live or consumed appointments; bounds how many more may be scheduled"""
    return (
        db.query(func.count(Appointment.id))
        .filter(
            Appointment.plan_instance_id == plan_instance_id,
            Appointment.status.in_(("pending",) + CONSUMING_STATUSES),
        )
        .scalar()
        or 0
    )


def expire_if_due(db: Session, subscription_id: int, now: datetime) -> bool:
    """
    Flip an active entry past its expiry to expired.

    Conditional on the current status, so only one caller (read path or sweep)
    wins and emits the expiry fact. Does not commit.
    """
    won = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.id == subscription_id,
            UserSubscription.status == ACTIVE,
            UserSubscription.expiry_date < now,
        )
        .update({"status": EXPIRED, "auto_renewal": False, "next_billing_date": None}, synchronize_session=False)
    )
    if won != 1:
        return False

    subscription = db.query(UserSubscription).filter(UserSubscription.id == subscription_id).first()
    db.refresh(subscription)
    emit(
        db,
        "expired",
        "client",
        subscription.client_id,
        f"expired:subscription:{subscription.id}:{subscription.expiry_date.isoformat()}",
        subscription_id=subscription.id,
        payload={
            "plan_name": subscription.plan_name,
            "plan_id": subscription.plan_id,
            "expiry_date": subscription.expiry_date.isoformat(),
        },
    )
    logger.info(f"⏰ Subscription {subscription.id} expired")
    return True


def expire_due_entries(db: Session, now: datetime, **filters) -> int:
    """Lazy expiry for read paths: expire every due active entry matching the filters, then commit"""
    query = db.query(UserSubscription.id).filter(
        UserSubscription.status == ACTIVE, UserSubscription.expiry_date < now
    )
    for column, value in filters.items():
        query = query.filter(getattr(UserSubscription, column) == value)

    expired = 0
    for (subscription_id,) in query.all():
        if expire_if_due(db, subscription_id, now):
            expired += 1
    if expired:
        db.commit()
    return expired


def is_paid(db: Session, subscription: UserSubscription) -> bool:
    """True once a payment for the ledger entry has completed"""
    return (
        db.query(Payment.id)
        .filter(Payment.subscription_id == subscription.id, Payment.status == "completed")
        .first()
        is not None
    )
