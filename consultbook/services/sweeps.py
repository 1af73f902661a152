"""
Time-driven sweeps for appointments and subscription ledger entries

Each sweep takes an explicit `now`, claims its work with a conditional update
before emitting anything, and isolates failures per record so one bad row
never blocks the rest. Every sweep returns a summary dict for the worker log.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..config import (
    JOIN_WINDOW_MINUTES,
    SESSION_REMINDER_MINUTES,
    STALE_PENDING_GRACE_MINUTES,
    SUBSCRIPTION_REMINDER_DAYS,
)
from ..domain.notifications.service import appointment_payload, dispatch_notifications, emit
from ..domain.scheduling.service import SchedulingService, notify_cancellation
from ..domain.scheduling.state_machine import CANCELLED, CONFIRMED, PENDING
from ..domain.subscriptions.ledger import ACTIVE, expire_if_due
from ..errors import BookingError
from ..models import Appointment, UserSubscription

logger = logging.getLogger(__name__)

STALE_PENDING_REASON = "Payment not completed before session start"

__all__ = [
    "appointment_reminder_sweep",
    "session_imminent_sweep",
    "subscription_reminder_sweep",
    "subscription_expiry_sweep",
    "appointment_completion_sweep",
    "stale_pending_sweep",
    "dispatch_notifications",
]


def _candidates(db: Session, status: str, last_day, first_day=None) -> list[Appointment]:
    """Appointments in a status whose effective date may fall in [first_day, last_day]"""
    dated = Appointment.session_date <= last_day
    if first_day is not None:
        dated = and_(Appointment.session_date >= first_day, dated)
    return (
        db.query(Appointment)
        .filter(
            Appointment.status == status,
            or_(
                dated,
                and_(Appointment.is_dynamic_group.is_(True), Appointment.session_date.is_(None)),
            ),
        )
        .order_by(Appointment.id)
        .all()
    )


def _fact_scope(appointment: Appointment, audience: str) -> str:
    # A provider hosting a group gets one fact per group, not one per attendee
    if audience == "provider" and appointment.session_format == "one_to_many" and appointment.channel_name:
        return appointment.channel_name
    return f"appointment:{appointment.id}"


def _claim_and_emit(db: Session, appointment: Appointment, kind: str, stamps: dict, now: datetime) -> int:
    """Claim each audience's stamp and emit its fact; returns the number of facts emitted"""
    emitted = 0
    starts_at = appointment.starts_at.isoformat()
    payload = appointment_payload(appointment)
    recipients = {"client": appointment.client_id, "provider": appointment.provider_id}

    for audience, column in stamps.items():
        claimed = (
            db.query(Appointment)
            .filter(Appointment.id == appointment.id, getattr(Appointment, column).is_(None))
            .update({column: now}, synchronize_session=False)
        )
        if claimed != 1:
            continue
        key = f"{kind}:{_fact_scope(appointment, audience)}:{audience}:{starts_at}"
        if emit(db, kind, audience, recipients[audience], key, appointment_id=appointment.id, payload=payload):
            emitted += 1
    db.commit()
    return emitted


def _session_nudge_sweep(db: Session, now: datetime, kind: str, window_minutes: int, stamps: dict) -> dict:
    summary = {"checked": 0, "notified": 0, "errors": 0}
    horizon = now + timedelta(minutes=window_minutes)

    for appointment in _candidates(db, CONFIRMED, horizon.date(), first_day=now.date()):
        starts_at = appointment.starts_at
        if starts_at is None or not now <= starts_at <= horizon:
            continue
        summary["checked"] += 1
        try:
            summary["notified"] += _claim_and_emit(db, appointment, kind, stamps, now)
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.error(f"❌ {kind} for appointment {appointment.id} failed: {e}")

    if summary["notified"]:
        logger.info(f"✅ {kind} sweep: {summary['notified']} facts for {summary['checked']} appointments")
    return summary


def appointment_reminder_sweep(db: Session, now: datetime) -> dict:
    """Confirmed sessions starting within SESSION_REMINDER_MINUTES get one reminder per audience"""
    return _session_nudge_sweep(
        db,
        now,
        "reminder",
        SESSION_REMINDER_MINUTES,
        {"client": "client_reminder_sent_at", "provider": "provider_reminder_sent_at"},
    )


def session_imminent_sweep(db: Session, now: datetime) -> dict:
    """Confirmed sessions starting within JOIN_WINDOW_MINUTES get one join-now fact per audience"""
    return _session_nudge_sweep(
        db,
        now,
        "join_now",
        JOIN_WINDOW_MINUTES,
        {"client": "client_join_nudge_sent_at", "provider": "provider_join_nudge_sent_at"},
    )


def subscription_reminder_sweep(db: Session, now: datetime) -> dict:
    """Active entries expiring within SUBSCRIPTION_REMINDER_DAYS get one "expiring" fact per cycle"""
    summary = {"checked": 0, "notified": 0, "errors": 0}
    horizon = now + timedelta(days=SUBSCRIPTION_REMINDER_DAYS)

    due = (
        db.query(UserSubscription)
        .filter(
            UserSubscription.status == ACTIVE,
            UserSubscription.expiry_date >= now,
            UserSubscription.expiry_date <= horizon,
        )
        .order_by(UserSubscription.id)
        .all()
    )
    for subscription in due:
        if subscription.expiry_reminder_sent_for == subscription.expiry_date:
            continue
        summary["checked"] += 1
        try:
            claimed = (
                db.query(UserSubscription)
                .filter(
                    UserSubscription.id == subscription.id,
                    UserSubscription.status == ACTIVE,
                    or_(
                        UserSubscription.expiry_reminder_sent_for.is_(None),
                        UserSubscription.expiry_reminder_sent_for != subscription.expiry_date,
                    ),
                )
                .update({"expiry_reminder_sent_for": subscription.expiry_date}, synchronize_session=False)
            )
            if claimed == 1:
                expiry = subscription.expiry_date.isoformat()
                emit(
                    db,
                    "expiring",
                    "client",
                    subscription.client_id,
                    f"expiring:subscription:{subscription.id}:{expiry}",
                    subscription_id=subscription.id,
                    payload={
                        "plan_name": subscription.plan_name,
                        "plan_id": subscription.plan_id,
                        "expiry_date": expiry,
                        "days_left": max((subscription.expiry_date - now).days, 0),
                    },
                )
                summary["notified"] += 1
            db.commit()
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.error(f"❌ Expiry reminder for subscription {subscription.id} failed: {e}")

    if summary["notified"]:
        logger.info(f"✅ Sent {summary['notified']} subscription expiry reminders")
    return summary


def subscription_expiry_sweep(db: Session, now: datetime) -> dict:
    """Active entries past their expiry become expired with auto-renewal off"""
    summary = {"expired": 0, "errors": 0}
    due = (
        db.query(UserSubscription.id)
        .filter(UserSubscription.status == ACTIVE, UserSubscription.expiry_date < now)
        .order_by(UserSubscription.id)
        .all()
    )
    for (subscription_id,) in due:
        try:
            if expire_if_due(db, subscription_id, now):
                summary["expired"] += 1
            db.commit()
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.error(f"❌ Expiring subscription {subscription_id} failed: {e}")

    if summary["expired"]:
        logger.info(f"✅ Expired {summary['expired']} subscriptions")
    return summary


def appointment_completion_sweep(db: Session, now: datetime) -> dict:
    """
    The only completion trigger: confirmed appointments whose end has passed
    become completed. Completion goes through the state machine, which refuses
    anything that has not ended.
    """
    summary = {"completed": 0, "skipped": 0, "errors": 0}
    scheduling = SchedulingService(db)

    for appointment in _candidates(db, CONFIRMED, now.date()):
        ends_at = appointment.ends_at
        if ends_at is None or ends_at > now:
            continue
        try:
            scheduling.complete(appointment.id, now)
            summary["completed"] += 1
        except BookingError as e:
            db.rollback()
            summary["skipped"] += 1
            logger.info(f"Skipping completion of appointment {appointment.id}: {e.detail}")
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.error(f"❌ Completing appointment {appointment.id} failed: {e}")

    if summary["completed"]:
        logger.info(f"✅ Completed {summary['completed']} appointments")
    return summary


def stale_pending_sweep(db: Session, now: datetime) -> dict:
    """Pending appointments whose start passed the grace period are cancelled by the system"""
    summary = {"cancelled": 0, "errors": 0}
    cutoff = now - timedelta(minutes=STALE_PENDING_GRACE_MINUTES)

    for appointment in _candidates(db, PENDING, now.date()):
        starts_at = appointment.starts_at
        if starts_at is None or starts_at > cutoff:
            continue
        try:
            claimed = (
                db.query(Appointment)
                .filter(Appointment.id == appointment.id, Appointment.status == PENDING)
                .update(
                    {
                        "status": CANCELLED,
                        "cancelled_by": "system",
                        "cancellation_reason": STALE_PENDING_REASON,
                        "cancelled_at": now,
                    },
                    synchronize_session=False,
                )
            )
            if claimed == 1:
                db.refresh(appointment)
                notify_cancellation(db, appointment, "system", STALE_PENDING_REASON)
                summary["cancelled"] += 1
                logger.info(f"⚠️ Appointment {appointment.id} cancelled: payment never completed")
            db.commit()
        except Exception as e:
            db.rollback()
            summary["errors"] += 1
            logger.error(f"❌ Cancelling stale appointment {appointment.id} failed: {e}")

    return summary
