from datetime import datetime, timedelta

import pytest

from conftest import ADMIN, CLIENT, NOW, OTHER_CLIENT, PROVIDER, SESSION_DAY
from consultbook.domain.scheduling.channels import assign_channel, channel_name_for
from consultbook.domain.scheduling.schemas import BookingRequest, RescheduleRequest
from consultbook.domain.scheduling.service import SchedulingService
from consultbook.domain.scheduling.state_machine import ensure_transition, is_terminal, validate_status_transition
from consultbook.errors import (
    ConflictError,
    PermissionDeniedError,
    StateTransitionError,
    ValidationError,
)
from consultbook.models import Appointment
from consultbook.models_payment import NotificationEvent


def _free_booking(db, start="10:00", client=CLIENT, method="video"):
    service = SchedulingService(db)
    return service.book_single(
        client,
        BookingRequest(
            provider_id=PROVIDER.id,
            session_date=SESSION_DAY,
            start_time=start,
            duration_minutes=30,
            consultation_method=method,
        ),
        now=NOW,
    )


def _confirmed(db, start="10:00", **kwargs):
    appointment = _free_booking(db, start, **kwargs)
    return SchedulingService(db).accept(appointment.id, PROVIDER, now=NOW)


def test_transition_table():
    assert validate_status_transition("pending", "confirmed")
    assert validate_status_transition("confirmed", "completed")
    assert not validate_status_transition("pending", "completed")
    assert not validate_status_transition("completed", "cancelled")
    for terminal in ("completed", "cancelled", "rejected"):
        assert is_terminal(terminal)
        with pytest.raises(StateTransitionError):
            ensure_transition(terminal, "confirmed")


def test_free_booking_is_accepted_by_provider(db):
    appointment = _free_booking(db)
    assert appointment.status == "pending"
    assert appointment.payment_required is False

    accepted = SchedulingService(db).accept(appointment.id, PROVIDER, now=NOW)
    assert accepted.status == "confirmed"
    assert accepted.channel_name == f"appointment:{appointment.id}"
    kinds = {(e.kind, e.audience) for e in db.query(NotificationEvent).all()}
    assert kinds == {("confirmed", "client"), ("confirmed", "provider")}


def test_paid_booking_cannot_be_accepted_before_payment(db, single_plan):
    appointment = SchedulingService(db).book_single(
        CLIENT,
        BookingRequest(
            provider_id=PROVIDER.id,
            session_date=SESSION_DAY,
            start_time="10:00",
            duration_minutes=30,
            plan_id=single_plan.id,
        ),
        now=NOW,
    )
    assert appointment.price == 500.0
    with pytest.raises(StateTransitionError) as exc:
        SchedulingService(db).accept(appointment.id, PROVIDER, now=NOW)
    assert exc.value.code == "awaiting_payment"


def test_booking_in_the_past_is_rejected(db):
    with pytest.raises(ValidationError) as exc:
        SchedulingService(db).book_single(
            CLIENT,
            BookingRequest(provider_id=PROVIDER.id, session_date=SESSION_DAY, start_time="10:00", duration_minutes=30),
            now=datetime(2025, 1, 10, 10, 0),
        )
    assert exc.value.code == "past_slot"


def test_only_clients_book_and_not_with_themselves(db):
    with pytest.raises(PermissionDeniedError):
        SchedulingService(db).book_single(
            PROVIDER,
            BookingRequest(provider_id="provider-2", session_date=SESSION_DAY, start_time="10:00", duration_minutes=30),
            now=NOW,
        )


def test_provider_rejects_pending_booking(db):
    appointment = _free_booking(db)
    rejected = SchedulingService(db).reject(appointment.id, PROVIDER, "Unavailable", now=NOW)
    assert rejected.status == "rejected"
    assert rejected.cancelled_by == "provider"
    # The provider acted, so only the client hears about it
    events = db.query(NotificationEvent).filter(NotificationEvent.kind == "cancelled").all()
    assert [e.audience for e in events] == ["client"]


def test_confirmed_cannot_be_rejected(db):
    appointment = _confirmed(db)
    with pytest.raises(StateTransitionError):
        SchedulingService(db).reject(appointment.id, PROVIDER, now=NOW)


def test_admin_cancellation_requires_reason(db):
    appointment = _confirmed(db)
    service = SchedulingService(db)
    with pytest.raises(ValidationError) as exc:
        service.cancel(appointment.id, ADMIN, "   ", now=NOW)
    assert exc.value.code == "reason_required"

    cancelled = service.cancel(appointment.id, ADMIN, "Provider on leave", now=NOW)
    assert cancelled.status == "cancelled"
    assert cancelled.cancelled_by == "admin"
    assert cancelled.cancellation_reason == "Provider on leave"
    audiences = sorted(
        e.audience for e in db.query(NotificationEvent).filter(NotificationEvent.kind == "cancelled").all()
    )
    assert audiences == ["client", "provider"]


def test_strangers_cannot_cancel(db):
    appointment = _free_booking(db)
    with pytest.raises(PermissionDeniedError):
        SchedulingService(db).cancel(appointment.id, OTHER_CLIENT, now=NOW)


def test_cancelled_is_terminal(db):
    appointment = _free_booking(db)
    service = SchedulingService(db)
    service.cancel(appointment.id, CLIENT, now=NOW)
    with pytest.raises(StateTransitionError):
        service.cancel(appointment.id, CLIENT, now=NOW)
    with pytest.raises(StateTransitionError):
        service.accept(appointment.id, PROVIDER, now=NOW)


def test_cancelling_paid_confirmed_session_requests_refund(db):
    appointment = _confirmed(db)
    db.query(Appointment).filter(Appointment.id == appointment.id).update({"payment_status": "paid"})
    db.commit()

    cancelled = SchedulingService(db).cancel(appointment.id, CLIENT, now=NOW)
    assert cancelled.refund_requested_at == NOW
    refund = db.query(NotificationEvent).filter(NotificationEvent.kind == "refund_requested").one()
    assert refund.recipient_id == CLIENT.id


def test_completion_never_before_end(db):
    appointment = _confirmed(db)
    service = SchedulingService(db)
    ends_at = datetime(2025, 1, 10, 10, 30)

    with pytest.raises(StateTransitionError) as exc:
        service.complete(appointment.id, ends_at - timedelta(minutes=1))
    assert exc.value.code == "session_not_over"

    completed = service.complete(appointment.id, ends_at)
    assert completed.status == "completed"
    assert completed.completed_at == ends_at


def test_pending_cannot_complete(db):
    appointment = _free_booking(db)
    with pytest.raises(StateTransitionError):
        SchedulingService(db).complete(appointment.id, datetime(2025, 1, 11))


def test_reschedule_keeps_channel_and_rearms_reminders(db):
    appointment = _confirmed(db)
    channel = appointment.channel_name
    db.query(Appointment).filter(Appointment.id == appointment.id).update({"client_reminder_sent_at": NOW})
    db.commit()

    moved = SchedulingService(db).reschedule(
        appointment.id, CLIENT, RescheduleRequest(session_date=SESSION_DAY, start_time="14:00"), now=NOW
    )
    assert moved.status == "confirmed"
    assert (moved.start_time, moved.end_time) == ("14:00", "14:30")
    assert moved.channel_name == channel
    assert moved.client_reminder_sent_at is None


def test_reschedule_onto_taken_slot_conflicts(db):
    appointment = _free_booking(db, "10:00")
    _free_booking(db, "11:00", client=OTHER_CLIENT)
    with pytest.raises(ConflictError):
        SchedulingService(db).reschedule(
            appointment.id, CLIENT, RescheduleRequest(session_date=SESSION_DAY, start_time="11:15"), now=NOW
        )


def test_reschedule_into_own_slot_neighbourhood(db):
    appointment = _free_booking(db, "10:00")
    moved = SchedulingService(db).reschedule(
        appointment.id, CLIENT, RescheduleRequest(session_date=SESSION_DAY, start_time="10:15"), now=NOW
    )
    assert moved.start_time == "10:15"


def test_channel_names():
    single = Appointment(id=7, plan_id=None, is_dynamic_group=False, group_session_id=None)
    group = Appointment(id=8, plan_id=3, is_dynamic_group=False, group_session_id="g-1")
    dynamic = Appointment(id=9, plan_id=3, is_dynamic_group=True, group_session_id=None)
    assert channel_name_for(single) == "appointment:7"
    assert channel_name_for(group) == "group:g-1"
    assert channel_name_for(dynamic) == "group-plan:3"

    single.channel_name = "appointment:legacy"
    assert assign_channel(single) == "appointment:legacy"


def test_channel_access_inside_join_window_only(db):
    appointment = _confirmed(db)
    service = SchedulingService(db)
    with pytest.raises(ValidationError) as exc:
        service.get_channel(appointment.id, CLIENT, now=datetime(2025, 1, 10, 9, 50))
    assert exc.value.code == "outside_join_window"

    details = service.get_channel(appointment.id, PROVIDER, now=datetime(2025, 1, 10, 9, 58))
    assert details["channel_name"] == f"appointment:{appointment.id}"

    with pytest.raises(PermissionDeniedError):
        service.get_channel(appointment.id, OTHER_CLIENT, now=datetime(2025, 1, 10, 10, 5))


def test_chat_sessions_have_no_channel(db):
    appointment = _confirmed(db, method="chat")
    with pytest.raises(ValidationError) as exc:
        SchedulingService(db).get_channel(appointment.id, CLIENT, now=datetime(2025, 1, 10, 10, 0))
    assert exc.value.code == "no_realtime_channel"


def test_feedback_once_after_completion(db):
    appointment = _confirmed(db)
    service = SchedulingService(db)
    with pytest.raises(ValidationError) as exc:
        service.submit_feedback(appointment.id, CLIENT, 5, now=NOW)
    assert exc.value.code == "not_completed"

    service.complete(appointment.id, datetime(2025, 1, 10, 11, 0))
    rated = service.submit_feedback(appointment.id, CLIENT, 4, "Helpful", now=datetime(2025, 1, 10, 12, 0))
    assert rated.feedback_rating == 4

    with pytest.raises(ValidationError) as exc:
        service.submit_feedback(appointment.id, CLIENT, 5, now=datetime(2025, 1, 10, 12, 5))
    assert exc.value.code == "feedback_exists"
