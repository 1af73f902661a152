import asyncio
import json
from datetime import timedelta

import pytest

from conftest import CLIENT, NOW, OTHER_CLIENT, PROVIDER, SESSION_DAY, auth_headers
from consultbook.config import DODO_PAYMENTS_WEBHOOK_SECRET
from consultbook.domain.payments.reconciliation import GatewayConfirmation, reconcile
from consultbook.domain.payments.schemas import CreateOrderRequest
from consultbook.domain.payments.service import PaymentService
from consultbook.domain.scheduling.schemas import BookingRequest
from consultbook.domain.scheduling.service import SchedulingService
from consultbook.domain.subscriptions.schemas import PurchaseRequest, SessionSlot
from consultbook.domain.subscriptions.service import SubscriptionService
from consultbook.errors import ConflictError, ExternalDependencyError, PermissionDeniedError, ValidationError
from consultbook.models import Appointment
from consultbook.models_payment import NotificationEvent, Payment
from consultbook.utils.time_calculator import utcnow
from consultbook.webhook_security import create_webhook_headers


def _paid_booking(db, plan, start="10:00"):
    return SchedulingService(db).book_single(
        CLIENT,
        BookingRequest(
            provider_id=PROVIDER.id,
            session_date=SESSION_DAY,
            start_time=start,
            duration_minutes=30,
            consultation_method="video",
            plan_id=plan.id,
        ),
        now=NOW,
    )


def _open_order(db, gateway, **target):
    service = PaymentService(db, gateway)
    return asyncio.run(service.create_payment(CLIENT, CreateOrderRequest(**target)))


def _success(payment, payment_id="pay_1"):
    return GatewayConfirmation(
        order_id=payment.gateway_order_id, payment_id=payment_id, status="succeeded", verified=True
    )


def _succeeded_event(payment, payment_id="pay_1"):
    return {
        "type": "payment.succeeded",
        "data": {"payment_id": payment_id, "status": "succeeded", "metadata": {"payment_ref": payment.reference}},
    }


def test_scenario_a_single_session_confirmed_by_payment(db, gateway, dodo, single_plan):
    appointment = _paid_booking(db, single_plan)
    assert appointment.status == "pending"

    payment = _open_order(db, gateway, appointment_id=appointment.id)
    assert payment.status == "pending"
    assert payment.amount == 500.0
    cart = dodo.checkouts[0]["product_cart"][0]
    assert cart["amount"] == 50000
    assert dodo.checkouts[0]["metadata"]["payment_ref"] == payment.reference

    result = reconcile(db, _success(payment), NOW)
    assert result["status"] == "confirmed"
    assert result["appointment_ids"] == [appointment.id]

    db.refresh(appointment)
    assert appointment.status == "confirmed"
    assert appointment.payment_status == "paid"
    assert appointment.channel_name == f"appointment:{appointment.id}"


def test_webhook_and_verify_race_is_idempotent(db, gateway, dodo, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    dodo.settle("pay_1", payment.reference)
    service = PaymentService(db, gateway)

    first = asyncio.run(service.verify(CLIENT, payment.gateway_order_id, "pay_1", now=NOW))
    second = service.handle_gateway_event(_succeeded_event(payment), now=NOW)
    third = asyncio.run(service.verify(CLIENT, payment.gateway_order_id, "pay_1", now=NOW))

    assert first["status"] == "confirmed"
    assert second["status"] == "already_processed"
    assert third["status"] == "already_processed"

    db.refresh(payment)
    assert payment.status == "completed"
    assert payment.gateway_payment_id == "pay_1"
    confirmed_facts = db.query(NotificationEvent).filter(NotificationEvent.kind == "confirmed").count()
    assert confirmed_facts == 2


def test_verify_rejects_payment_from_another_order(db, gateway, dodo, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    dodo.settle("pay_other", "some-other-reference")

    result = asyncio.run(PaymentService(db, gateway).verify(CLIENT, payment.gateway_order_id, "pay_other", now=NOW))
    assert result["status"] == "failed"
    db.refresh(payment)
    db.refresh(appointment)
    assert payment.status == "failed"
    assert appointment.status == "pending"


def test_verify_is_for_the_payer_only(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    with pytest.raises(PermissionDeniedError):
        asyncio.run(PaymentService(db, gateway).verify(OTHER_CLIENT, payment.gateway_order_id, "pay_1", now=NOW))


def test_gateway_timeout_marks_payment_failed(db, gateway, dodo, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    dodo.failures["pay_1"] = asyncio.TimeoutError()

    with pytest.raises(ExternalDependencyError) as exc:
        asyncio.run(PaymentService(db, gateway).verify(CLIENT, payment.gateway_order_id, "pay_1", now=NOW))
    assert exc.value.code == "gateway_timeout"
    assert exc.value.retryable

    db.refresh(payment)
    db.refresh(appointment)
    assert payment.status == "failed"
    assert appointment.status == "pending"

    # A late success still settles the failed payment
    dodo.failures.clear()
    dodo.settle("pay_1", payment.reference)
    result = asyncio.run(PaymentService(db, gateway).verify(CLIENT, payment.gateway_order_id, "pay_1", now=NOW))
    assert result["status"] == "confirmed"


def test_in_flight_payment_stays_pending(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)

    result = reconcile(
        db,
        GatewayConfirmation(order_id=payment.gateway_order_id, payment_id="pay_1", status="processing", verified=True),
        NOW,
    )
    assert result["status"] == "processing"
    db.refresh(appointment)
    assert appointment.status == "pending"


def test_payment_for_cancelled_appointment_requests_refund(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    SchedulingService(db).cancel(appointment.id, CLIENT, now=NOW)

    result = reconcile(db, _success(payment), NOW + timedelta(minutes=1))
    assert result["status"] == "confirmed"
    assert result["appointment_ids"] == []

    db.refresh(appointment)
    assert appointment.status == "cancelled"
    assert appointment.payment_status == "paid"
    assert appointment.refund_requested_at is not None
    assert db.query(NotificationEvent).filter(NotificationEvent.kind == "refund_requested").count() == 1


def test_subscription_payment_confirms_every_pending_session(db, gateway, monthly_plan):
    subscription, appointments = SubscriptionService(db).purchase_monthly_plan(
        CLIENT,
        PurchaseRequest(
            plan_id=monthly_plan.id,
            sessions=[SessionSlot(session_date=SESSION_DAY, start_time=t) for t in ("09:00", "11:00", "13:00")],
        ),
        now=NOW,
    )
    payment = _open_order(db, gateway, subscription_id=subscription.id)
    assert payment.amount == 4000.0

    result = reconcile(db, _success(payment), NOW)
    assert sorted(result["appointment_ids"]) == sorted(a.id for a in appointments)
    statuses = {
        a.status
        for a in db.query(Appointment).filter(Appointment.plan_instance_id == subscription.plan_instance_id).all()
    }
    assert statuses == {"confirmed"}

    with pytest.raises(ValidationError) as exc:
        _open_order(db, gateway, subscription_id=subscription.id)
    assert exc.value.code == "not_awaiting_payment"


def test_plan_sessions_are_not_paid_individually(db, gateway, monthly_plan):
    _, appointments = SubscriptionService(db).purchase_monthly_plan(
        CLIENT,
        PurchaseRequest(plan_id=monthly_plan.id, sessions=[SessionSlot(session_date=SESSION_DAY, start_time="09:00")]),
        now=NOW,
    )
    with pytest.raises(ValidationError) as exc:
        _open_order(db, gateway, appointment_id=appointments[0].id)
    assert exc.value.code == "pay_subscription"


def test_unknown_gateway_events_are_acknowledged(db, gateway):
    service = PaymentService(db, gateway)
    assert service.handle_gateway_event({"type": "refund.succeeded", "data": {}})["status"] == "ignored"
    unknown = {"type": "payment.succeeded", "data": {"payment_id": "pay_x", "metadata": {"payment_ref": "nope"}}}
    assert service.handle_gateway_event(unknown)["status"] == "ignored"


class TestPaymentApi:
    def _pending_payment(self, db, single_plan):
        appointment = Appointment(
            client_id=CLIENT.id,
            provider_id=PROVIDER.id,
            session_date=(utcnow() + timedelta(days=3)).date(),
            start_time="10:00",
            end_time="10:30",
            duration_minutes=30,
            status="pending",
            price=500.0,
            payment_required=True,
            payment_status="pending",
            plan_id=single_plan.id,
        )
        db.add(appointment)
        db.flush()
        payment = Payment(
            payer_id=CLIENT.id,
            provider_id=PROVIDER.id,
            appointment_id=appointment.id,
            reference="ref-api-1",
            gateway_order_id="cks_api_1",
            amount=500.0,
            status="pending",
        )
        db.add(payment)
        db.commit()
        return appointment, payment

    def test_signed_webhook_confirms_appointment(self, api, db, single_plan):
        appointment, payment = self._pending_payment(db, single_plan)
        body = json.dumps(_succeeded_event(payment)).encode()

        response = api.post(
            "/webhooks/payments", content=body, headers=create_webhook_headers(DODO_PAYMENTS_WEBHOOK_SECRET, body)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

        replay = api.post(
            "/webhooks/payments", content=body, headers=create_webhook_headers(DODO_PAYMENTS_WEBHOOK_SECRET, body)
        )
        assert replay.json()["status"] == "already_processed"

        db.expire_all()
        assert db.query(Appointment).filter(Appointment.id == appointment.id).one().status == "confirmed"

    def test_tampered_webhook_is_rejected(self, api, db, single_plan):
        appointment, payment = self._pending_payment(db, single_plan)
        body = json.dumps(_succeeded_event(payment)).encode()
        headers = create_webhook_headers(DODO_PAYMENTS_WEBHOOK_SECRET, body)
        tampered = body.replace(b"succeeded", b"succeedeD", 1)

        response = api.post("/webhooks/payments", content=tampered, headers=headers)
        assert response.status_code == 401

        db.expire_all()
        assert db.query(Payment).filter(Payment.id == payment.id).one().status == "pending"

    def test_stale_webhook_timestamp_is_rejected(self, api, db, single_plan):
        _, payment = self._pending_payment(db, single_plan)
        body = json.dumps(_succeeded_event(payment)).encode()
        headers = create_webhook_headers(DODO_PAYMENTS_WEBHOOK_SECRET, body, timestamp=1_000_000)
        assert api.post("/webhooks/payments", content=body, headers=headers).status_code == 401

    def test_order_endpoint_requires_client_role(self, api, db, single_plan):
        appointment, _ = self._pending_payment(db, single_plan)
        response = api.post(
            "/payments/orders", json={"appointment_id": appointment.id}, headers=auth_headers(PROVIDER)
        )
        assert response.status_code == 403


def test_new_order_supersedes_open_checkout(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    first = _open_order(db, gateway, appointment_id=appointment.id)
    second = _open_order(db, gateway, appointment_id=appointment.id)

    db.refresh(first)
    assert first.status == "cancelled"
    assert second.status == "pending"


def test_processing_order_blocks_a_new_one(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    payment = _open_order(db, gateway, appointment_id=appointment.id)
    reconcile(
        db,
        GatewayConfirmation(order_id=payment.gateway_order_id, payment_id="pay_1", status="processing", verified=True),
        NOW,
    )

    with pytest.raises(ConflictError) as exc:
        _open_order(db, gateway, appointment_id=appointment.id)
    assert exc.value.code == "payment_in_progress"
    assert exc.value.retryable


def test_second_captured_payment_is_flagged_for_refund(db, gateway, single_plan):
    appointment = _paid_booking(db, single_plan)
    superseded = _open_order(db, gateway, appointment_id=appointment.id)
    current = _open_order(db, gateway, appointment_id=appointment.id)

    assert reconcile(db, _success(current, "pay_2"), NOW)["appointment_ids"] == [appointment.id]
    # The abandoned checkout still gets paid
    late = reconcile(db, _success(superseded, "pay_1"), NOW + timedelta(minutes=5))
    assert late["status"] == "confirmed"
    assert late["appointment_ids"] == []
    assert late["refund_requested"] is True

    db.refresh(superseded)
    db.refresh(appointment)
    assert superseded.status == "completed"
    assert superseded.refund_requested_at == NOW + timedelta(minutes=5)
    assert appointment.status == "confirmed"
    assert appointment.refund_requested_at is None

    refund = db.query(NotificationEvent).filter(NotificationEvent.kind == "refund_requested").one()
    assert refund.recipient_id == CLIENT.id
    assert refund.payload["payment_reference"] == superseded.reference
    assert db.query(NotificationEvent).filter(NotificationEvent.kind == "confirmed").count() == 2


def test_duplicate_subscription_payment_is_flagged_for_refund(db, gateway, monthly_plan):
    subscription, appointments = SubscriptionService(db).purchase_monthly_plan(
        CLIENT,
        PurchaseRequest(plan_id=monthly_plan.id, sessions=[SessionSlot(session_date=SESSION_DAY, start_time="09:00")]),
        now=NOW,
    )
    first = _open_order(db, gateway, subscription_id=subscription.id)
    second = _open_order(db, gateway, subscription_id=subscription.id)

    assert reconcile(db, _success(second, "pay_2"), NOW)["appointment_ids"] == [appointments[0].id]
    late = reconcile(db, _success(first, "pay_1"), NOW)
    assert late["refund_requested"] is True

    db.refresh(first)
    assert first.refund_requested_at is not None
    assert db.query(NotificationEvent).filter(NotificationEvent.kind == "refund_requested").count() == 1


def test_payment_after_subscription_cancelled_requests_refund(db, gateway, monthly_plan):
    subscription, appointments = SubscriptionService(db).purchase_monthly_plan(
        CLIENT,
        PurchaseRequest(plan_id=monthly_plan.id, sessions=[SessionSlot(session_date=SESSION_DAY, start_time="09:00")]),
        now=NOW,
    )
    payment = _open_order(db, gateway, subscription_id=subscription.id)
    SubscriptionService(db).cancel_subscription(subscription.id, CLIENT, now=NOW)

    result = reconcile(db, _success(payment), NOW + timedelta(minutes=1))
    assert result["appointment_ids"] == []
    assert result["refund_requested"] is True

    db.refresh(appointments[0])
    assert appointments[0].status == "cancelled"
    refund = db.query(NotificationEvent).filter(NotificationEvent.kind == "refund_requested").one()
    assert refund.subscription_id == subscription.id
    assert refund.payload["reason"] == "Subscription was cancelled"


def test_payment_after_subscription_expired_requests_refund(db, gateway, monthly_plan):
    subscription, _ = SubscriptionService(db).purchase_monthly_plan(
        CLIENT, PurchaseRequest(plan_id=monthly_plan.id, sessions=[]), now=NOW
    )
    payment = _open_order(db, gateway, subscription_id=subscription.id)

    result = reconcile(db, _success(payment), subscription.expiry_date + timedelta(hours=1))
    assert result["refund_requested"] is True
    db.refresh(payment)
    assert payment.status == "completed"
