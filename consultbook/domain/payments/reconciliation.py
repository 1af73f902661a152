"""
Payment reconciliation

Turns a gateway outcome into Payment and Appointment state exactly once. The
client-side verify call and the gateway webhook can race on the same payment;
every write here is a compare-and-swap on the current status, so whichever
arrives second sees "already_processed".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...errors import NotFoundError
from ...models import Appointment, UserSubscription
from ...models_payment import Payment
from ..notifications.service import appointment_payload, emit, emit_for_both
from ..scheduling.channels import assign_channel
from ..scheduling.state_machine import CANCELLED, CONFIRMED, PENDING, REJECTED
from ..subscriptions.ledger import ACTIVE

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
# Gateway statuses meaning "not settled yet"
IN_FLIGHT_STATUSES = ("processing", "requires_customer_action", "requires_merchant_action")


@dataclass
class GatewayConfirmation:
    """A payment outcome as reported by the gateway (webhook or lookup)"""

    order_id: Optional[str]
    payment_id: Optional[str]
    status: str
    verified: bool
    failure_reason: Optional[str] = None


def find_payment(db: Session, confirmation: GatewayConfirmation) -> Optional[Payment]:
    if confirmation.order_id:
        payment = (
            db.query(Payment)
            .filter(or_(Payment.gateway_order_id == confirmation.order_id, Payment.reference == confirmation.order_id))
            .first()
        )
        if payment:
            return payment
    if confirmation.payment_id:
        return db.query(Payment).filter(Payment.gateway_payment_id == confirmation.payment_id).first()
    return None


def mark_payment_failed(db: Session, payment_id: int, reason: str, now: datetime) -> bool:
    """Record a failure in its own transaction; a completed payment is never downgraded"""
    changed = (
        db.query(Payment)
        .filter(Payment.id == payment_id, Payment.status.in_(("pending", "processing", "failed")))
        .update({"status": "failed", "failure_reason": reason[:1000], "failed_at": now}, synchronize_session=False)
    )
    db.commit()
    return changed == 1


def _request_refund(db: Session, payment: Payment, now: datetime, reason: str, appointment=None) -> None:
    """Money was captured for a target that cannot use it; one refund fact per payment"""
    db.query(Payment).filter(Payment.id == payment.id).update({"refund_requested_at": now}, synchronize_session=False)
    payload = {
        "payment_reference": payment.reference,
        "amount": payment.amount,
        "currency": payment.currency,
        "reason": reason,
    }
    if appointment is not None:
        payload = {**appointment_payload(appointment), **payload}
    emit(
        db,
        "refund_requested",
        "client",
        payment.payer_id,
        f"refund_requested:payment:{payment.id}",
        appointment_id=payment.appointment_id,
        subscription_id=payment.subscription_id,
        payload=payload,
    )
    logger.warning(f"⚠️ Payment {payment.id} needs a refund: {reason}")


def _confirm_appointment(db: Session, appointment: Appointment, now: datetime) -> bool:
    """pending -> confirmed + paid"""
    changed = (
        db.query(Appointment)
        .filter(Appointment.id == appointment.id, Appointment.status == PENDING)
        .update(
            {"status": CONFIRMED, "payment_status": "paid", "confirmed_at": now},
            synchronize_session=False,
        )
    )
    db.refresh(appointment)
    if changed != 1:
        return False
    assign_channel(appointment)
    emit_for_both(db, "confirmed", appointment)
    return True


def _settle_appointment(db: Session, payment: Payment, now: datetime) -> list[int]:
    appointment = db.query(Appointment).filter(Appointment.id == payment.appointment_id).first()
    if not appointment:
        return []
    if _confirm_appointment(db, appointment, now):
        return [appointment.id]

    if appointment.status in (CANCELLED, REJECTED):
        values = {"payment_status": "paid"}
        if not appointment.refund_requested_at:
            values["refund_requested_at"] = now
        db.query(Appointment).filter(Appointment.id == appointment.id).update(values, synchronize_session=False)
        db.refresh(appointment)
        _request_refund(db, payment, now, f"Appointment was {appointment.status}", appointment)
    elif appointment.payment_status == "paid":
        # The CAS above waited on the row, so a concurrent payment has committed by now
        _request_refund(db, payment, now, "Appointment was already paid", appointment)
    else:
        db.query(Appointment).filter(Appointment.id == appointment.id).update(
            {"payment_status": "paid"}, synchronize_session=False
        )
    return []


def _settle_subscription(db: Session, payment: Payment, now: datetime) -> list[int]:
    # Row lock serializes concurrent completions for one ledger entry
    subscription = (
        db.query(UserSubscription).filter(UserSubscription.id == payment.subscription_id).with_for_update().one()
    )
    lapsed = subscription.status != ACTIVE or (subscription.expiry_date and subscription.expiry_date < now)
    if lapsed:
        state = subscription.status if subscription.status != ACTIVE else "expired"
        _request_refund(db, payment, now, f"Subscription was {state}")
        return []

    paid_elsewhere = (
        db.query(Payment.id)
        .filter(
            Payment.subscription_id == subscription.id,
            Payment.status == "completed",
            Payment.id != payment.id,
        )
        .first()
    )
    if paid_elsewhere:
        _request_refund(db, payment, now, "Subscription was already paid")
        return []

    confirmed = []
    siblings = (
        db.query(Appointment)
        .filter(Appointment.plan_instance_id == subscription.plan_instance_id, Appointment.status == PENDING)
        .order_by(Appointment.session_ordinal, Appointment.id)
        .all()
    )
    for appointment in siblings:
        if _confirm_appointment(db, appointment, now):
            confirmed.append(appointment.id)
    return confirmed


def _apply_success(db: Session, payment: Payment, now: datetime) -> list[int]:
    if payment.appointment_id:
        return _settle_appointment(db, payment, now)
    if payment.subscription_id:
        return _settle_subscription(db, payment, now)
    return []


def reconcile(db: Session, confirmation: GatewayConfirmation, now: datetime) -> dict:
    """
    Apply a gateway outcome idempotently.

    Returns {"status": "confirmed" | "already_processed" | "failed" | "processing", ...}.
    Any error rolls back, marks the payment failed in a fresh transaction and re-raises.
    """
    payment = find_payment(db, confirmation)
    if not payment:
        raise NotFoundError("Payment not found", code="payment_not_found")

    result = {"payment_id": payment.id, "order_id": payment.gateway_order_id, "appointment_ids": []}
    if payment.status == "completed":
        logger.info(f"🔄 Payment {payment.id} already completed - nothing to do")
        return {**result, "status": "already_processed"}

    try:
        if confirmation.verified and confirmation.status in IN_FLIGHT_STATUSES:
            db.query(Payment).filter(Payment.id == payment.id, Payment.status == "pending").update(
                {"status": "processing"}, synchronize_session=False
            )
            db.commit()
            return {**result, "status": "processing"}

        if not confirmation.verified or confirmation.status != SUCCEEDED:
            reason = confirmation.failure_reason or (
                "Payment verification failed" if not confirmation.verified else f"Gateway reported {confirmation.status}"
            )
            mark_payment_failed(db, payment.id, reason, now)
            logger.warning(f"⚠️ Payment {payment.id} failed: {reason}")
            return {**result, "status": "failed"}

        values = {"status": "completed", "paid_at": now, "failure_reason": None}
        if confirmation.payment_id and not payment.gateway_payment_id:
            values["gateway_payment_id"] = confirmation.payment_id
        won = (
            db.query(Payment)
            .filter(Payment.id == payment.id, Payment.status.in_(("pending", "processing", "failed", "cancelled")))
            .update(values, synchronize_session=False)
        )
        if won != 1:
            db.rollback()
            logger.info(f"🔄 Payment {payment.id} completed by a concurrent confirmation")
            return {**result, "status": "already_processed"}

        db.refresh(payment)
        confirmed = _apply_success(db, payment, now)
        db.commit()
        db.refresh(payment)
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Reconciliation of payment {payment.id} failed: {e}")
        mark_payment_failed(db, payment.id, str(e) or e.__class__.__name__, now)
        raise

    logger.info(f"✅ Payment {payment.id} completed; confirmed appointments {confirmed}")
    return {
        **result,
        "status": "confirmed",
        "appointment_ids": confirmed,
        "refund_requested": payment.refund_requested_at is not None,
    }
