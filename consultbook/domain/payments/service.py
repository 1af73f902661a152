"""Payment service - orders, client-side verification and history"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import Caller
from ...config import DEFAULT_CURRENCY, FRONTEND_URL
from ...errors import (
    ConflictError,
    ExternalDependencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from ...models import Appointment, UserSubscription, generate_public_id
from ...models_payment import Payment
from ...utils.time_calculator import utcnow
from ..scheduling.state_machine import PENDING
from ..subscriptions.ledger import ACTIVE, is_paid
from .gateway import DodoPaymentsGateway
from .reconciliation import GatewayConfirmation, mark_payment_failed, reconcile
from .repository import PaymentRepository
from .schemas import CreateOrderRequest

logger = logging.getLogger(__name__)


class PaymentService:
    """Service layer for payments against appointments and ledger entries"""

    def __init__(self, db: Session, gateway: DodoPaymentsGateway):
        self.db = db
        self.gateway = gateway
        self.repo = PaymentRepository()

    def _appointment_target(self, appointment_id: int, caller: Caller) -> dict:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise NotFoundError("Appointment not found", code="appointment_not_found")
        if appointment.client_id != caller.id:
            raise PermissionDeniedError("Only the client can pay for this appointment")
        if appointment.plan_instance_id:
            raise ValidationError("Plan sessions are paid through the subscription", code="pay_subscription")
        if appointment.status != PENDING or not appointment.payment_required or appointment.payment_status == "paid":
            raise ValidationError("Appointment is not awaiting payment", code="not_awaiting_payment")
        return {
            "appointment_id": appointment.id,
            "provider_id": appointment.provider_id,
            "plan_id": appointment.plan_id,
            "amount": appointment.price,
            "description": f"Session on {appointment.session_date} at {appointment.start_time}",
        }

    def _subscription_target(self, subscription_id: int, caller: Caller) -> dict:
        subscription = self.db.query(UserSubscription).filter(UserSubscription.id == subscription_id).first()
        if not subscription:
            raise NotFoundError("Subscription not found", code="subscription_not_found")
        if subscription.client_id != caller.id:
            raise PermissionDeniedError("Only the subscriber can pay for this plan")
        if subscription.status != ACTIVE:
            raise ValidationError(f"Subscription is {subscription.status}", code="subscription_not_active")
        if is_paid(self.db, subscription):
            raise ValidationError("Subscription is already paid", code="not_awaiting_payment")
        return {
            "subscription_id": subscription.id,
            "provider_id": subscription.provider_id,
            "plan_id": subscription.plan_id,
            "amount": subscription.monthly_price,
            "description": f"{subscription.plan_name} ({subscription.total_sessions} sessions)",
        }

    def _open_payments(self, target: dict) -> list[Payment]:
        """A processing order blocks a new one; older pending checkouts get superseded"""
        open_payments = self.repo.payments_for_target(
            self.db,
            appointment_id=target.get("appointment_id"),
            subscription_id=target.get("subscription_id"),
            statuses=("pending", "processing"),
        )
        if any(p.status == "processing" for p in open_payments):
            raise ConflictError("A payment for this booking is already being processed", code="payment_in_progress")
        return open_payments

    def _supersede(self, open_payments: list[Payment]) -> None:
        for payment in open_payments:
            superseded = (
                self.db.query(Payment)
                .filter(Payment.id == payment.id, Payment.status == "pending")
                .update(
                    {"status": "cancelled", "failure_reason": "Superseded by a newer order"},
                    synchronize_session=False,
                )
            )
            if superseded:
                logger.info(f"🔄 Payment {payment.id} superseded by a newer order")

    async def create_payment(self, caller: Caller, data: CreateOrderRequest) -> Payment:
        """Open a gateway checkout for an appointment or ledger entry and persist it as pending"""
        if data.appointment_id is not None:
            target = self._appointment_target(data.appointment_id, caller)
        else:
            target = self._subscription_target(data.subscription_id, caller)

        amount = round(float(target["amount"] or 0), 2)
        if amount <= 0:
            raise ValidationError("Amount must be greater than 0 to create a payment", code="invalid_amount")
        open_payments = self._open_payments(target)

        reference = generate_public_id()
        return_url = f"{FRONTEND_URL}{data.return_path or '/payments/complete'}"
        metadata = {
            "payer_id": caller.id,
            "provider_id": target["provider_id"],
            "appointment_id": str(target.get("appointment_id") or ""),
            "subscription_id": str(target.get("subscription_id") or ""),
        }
        session = await self.gateway.create_checkout(amount, reference, return_url, metadata=metadata)
        self._supersede(open_payments)

        payment = self.repo.create_payment(
            self.db,
            payer_id=caller.id,
            provider_id=target["provider_id"],
            appointment_id=target.get("appointment_id"),
            subscription_id=target.get("subscription_id"),
            plan_id=target.get("plan_id"),
            reference=reference,
            gateway_order_id=session["session_id"],
            checkout_url=session["checkout_url"],
            amount=amount,
            currency=DEFAULT_CURRENCY,
            status="pending",
            description=target["description"],
        )
        logger.info(f"✅ Payment {payment.id} created (order {payment.gateway_order_id}, amount {amount})")
        return payment

    async def verify(self, caller: Caller, order_id: str, payment_id: str, now: Optional[datetime] = None) -> dict:
        """
        Client callback after checkout: ask the gateway what happened and reconcile.

        Gateway errors or timeouts mark the payment failed; the appointment stays
        pending and the client can retry with a new payment.
        """
        now = now or utcnow()
        payment = self.repo.get_by_order_id(self.db, order_id)
        if not payment:
            raise NotFoundError("Payment not found", code="payment_not_found")
        if payment.payer_id != caller.id:
            raise PermissionDeniedError("Not your payment")
        if payment.status == "completed":
            return {
                "status": "already_processed",
                "payment_id": payment.id,
                "order_id": payment.gateway_order_id,
                "appointment_ids": [],
            }

        try:
            reported = await self.gateway.retrieve_payment(payment_id)
        except ExternalDependencyError as e:
            mark_payment_failed(self.db, payment.id, e.detail, now)
            raise

        # The gateway payment must belong to this order
        verified = (reported.get("metadata") or {}).get("payment_ref") == payment.reference
        confirmation = GatewayConfirmation(
            order_id=payment.gateway_order_id,
            payment_id=reported.get("payment_id") or payment_id,
            status=reported.get("status") or "unknown",
            verified=verified,
            failure_reason=None if verified else "Payment does not belong to this order",
        )
        return reconcile(self.db, confirmation, now)

    def handle_gateway_event(self, event: dict, now: Optional[datetime] = None) -> dict:
        """Map a verified webhook event onto reconcile; unknown events and payments are acknowledged"""
        now = now or utcnow()
        event_type = event.get("type")
        data = event.get("data") or {}
        meta = data.get("metadata") or {}

        if event_type not in ("payment.succeeded", "payment.failed", "payment.processing", "payment.cancelled"):
            logger.info(f"Ignoring gateway event {event_type}")
            return {"status": "ignored", "event_type": event_type}

        status = data.get("status") or event_type.split(".", 1)[1]
        confirmation = GatewayConfirmation(
            order_id=meta.get("payment_ref") or data.get("checkout_session_id"),
            payment_id=data.get("payment_id"),
            status=status,
            verified=True,
            failure_reason=data.get("error_message"),
        )
        try:
            result = reconcile(self.db, confirmation, now)
        except NotFoundError:
            logger.warning(f"⚠️ Gateway event {event_type} for unknown payment {confirmation.payment_id}")
            return {"status": "ignored", "event_type": event_type}
        return {**result, "event_type": event_type}

    def payment_history(self, caller: Caller, limit: int = 50) -> list[Payment]:
        if caller.role == "provider":
            return self.repo.history(self.db, provider_id=caller.id, limit=limit)
        if caller.is_admin:
            return self.repo.history(self.db, limit=limit)
        return self.repo.history(self.db, payer_id=caller.id, limit=limit)
