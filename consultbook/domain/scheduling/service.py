"""Scheduling service - appointment booking and lifecycle"""

import logging
import zlib
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...auth import Caller
from ...config import (
    DURATION_TOLERANCE_MINUTES,
    JOIN_WINDOW_MINUTES,
    MAX_SESSION_MINUTES,
    MIN_SESSION_MINUTES,
    SLOT_STEP_MINUTES,
)
from ...database import is_postgres
from ...errors import ConflictError, NotFoundError, PermissionDeniedError, StateTransitionError, ValidationError
from ...models import Appointment, Plan, UserSubscription, generate_public_id
from ...utils.time_calculator import add_minutes, combine, minutes_between, utcnow, validate_time_range
from ..notifications.service import appointment_payload, emit, emit_for_both
from ..plans.service import price_per_session
from ..providers.service import ensure_within_hours, session_price
from ..subscriptions.ledger import expire_due_entries, is_paid, sessions_booked
from .availability import ensure_slot_available
from .channels import assign_channel
from .repository import AppointmentRepository
from .schemas import BookingRequest, DynamicGroupRequest, GroupSessionRequest, RescheduleRequest
from .state_machine import (
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    LIVE_STATUSES,
    PENDING,
    REALTIME_METHODS,
    REJECTED,
    ensure_transition,
)

logger = logging.getLogger(__name__)

REMINDER_STAMPS = (
    "client_reminder_sent_at",
    "provider_reminder_sent_at",
    "client_join_nudge_sent_at",
    "provider_join_nudge_sent_at",
)


def resolve_session_times(start_time: str, duration_minutes: int, end_time: Optional[str] = None) -> tuple[str, int]:
    """
    Validate a requested session length and derive its end time.

    The end is always start + duration; a supplied end_time only has to agree
    with it within the duration tolerance.
    """
    if duration_minutes is None or not MIN_SESSION_MINUTES <= duration_minutes <= MAX_SESSION_MINUTES:
        raise ValidationError(
            f"Duration must be between {MIN_SESSION_MINUTES} and {MAX_SESSION_MINUTES} minutes",
            code="invalid_duration",
        )
    if duration_minutes % SLOT_STEP_MINUTES:
        raise ValidationError(
            f"Duration must be a multiple of {SLOT_STEP_MINUTES} minutes", code="invalid_duration"
        )

    computed_end = add_minutes(start_time, duration_minutes)
    if end_time is not None:
        validate_time_range(start_time, end_time, duration_minutes, DURATION_TOLERANCE_MINUTES)
    return computed_end, duration_minutes


def ensure_future(session_date: date, start_time: str, now: datetime) -> None:
    if combine(session_date, start_time) <= now:
        raise ValidationError("Cannot schedule a session in the past", code="past_slot")


def notify_cancellation(db: Session, appointment: Appointment, actor: str, reason: Optional[str]) -> None:
    """Cancelled facts for everyone except the actor, plus a refund fact when one was requested"""
    audiences = {"client": appointment.client_id, "provider": appointment.provider_id}
    if actor in audiences:
        audiences.pop(actor)

    payload = appointment_payload(appointment)
    payload.update(cancelled_by=actor, reason=reason, rejected=appointment.status == REJECTED)
    for audience, recipient in audiences.items():
        emit(
            db,
            "cancelled",
            audience,
            recipient,
            f"cancelled:appointment:{appointment.id}:{audience}",
            appointment_id=appointment.id,
            payload=payload,
        )

    if appointment.refund_requested_at:
        emit(
            db,
            "refund_requested",
            "client",
            appointment.client_id,
            f"refund_requested:appointment:{appointment.id}",
            appointment_id=appointment.id,
            payload={**payload, "amount": appointment.price},
        )


class SchedulingService:
    """Service layer for appointment booking and lifecycle"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = AppointmentRepository()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_appointment(self, appointment_id: int) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment not found", code="appointment_not_found")
        return appointment

    def get_for_participant(self, appointment_id: int, caller: Caller) -> Appointment:
        appointment = self.get_appointment(appointment_id)
        if caller.id not in (appointment.client_id, appointment.provider_id) and not caller.is_admin:
            raise PermissionDeniedError("Not a participant of this appointment")
        return appointment

    def list_for_client(self, caller: Caller, status: Optional[str] = None, page: int = 1, page_size: int = 20):
        return self.repo.list_appointments(self.db, client_id=caller.id, status=status, page=page, page_size=page_size)

    def list_for_provider(self, caller: Caller, status: Optional[str] = None, page: int = 1, page_size: int = 20):
        return self.repo.list_appointments(
            self.db, provider_id=caller.id, status=status, page=page, page_size=page_size
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def lock_provider_day(self, provider_id: str, session_date: date) -> None:
        """Serialize bookings for one provider/day on PostgreSQL (released at commit)"""
        if not is_postgres(self.db):
            return
        key = zlib.crc32(f"{provider_id}:{session_date.isoformat()}".encode())
        self.db.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})

    def commit_booking(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Booking lost a slot race: {e.orig}")
            raise ConflictError("This slot was just taken. Please pick another time.", code="slot_unavailable") from e

    def _transition(self, appointment: Appointment, from_statuses: tuple, target: str, values: dict) -> None:
        """Conditional status update; a lost race surfaces as a transition error"""
        changed = self.repo.transition(self.db, appointment.id, from_statuses, {"status": target, **values})
        if changed != 1:
            self.db.rollback()
            self.db.refresh(appointment)
            raise StateTransitionError(appointment.status, target, code="concurrent_update")
        self.db.refresh(appointment)

    def _actor_for(self, appointment: Appointment, caller: Caller) -> str:
        if caller.is_admin:
            return "admin"
        if caller.id == appointment.client_id:
            return "client"
        if caller.id == appointment.provider_id:
            return "provider"
        raise PermissionDeniedError("Not a participant of this appointment")

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    def book_single(self, caller: Caller, data: BookingRequest, now: Optional[datetime] = None) -> Appointment:
        """Book a single session; it stays pending until paid (or accepted when free)"""
        now = now or utcnow()
        if caller.role != "client":
            raise PermissionDeniedError("Only clients can book sessions")
        if data.provider_id == caller.id:
            raise ValidationError("You cannot book a session with yourself", code="self_booking")

        end_time, duration = resolve_session_times(data.start_time, data.duration_minutes, data.end_time)
        ensure_future(data.session_date, data.start_time, now)

        session_format = data.session_format
        plan = None
        if data.plan_id is not None:
            plan = self.db.query(Plan).filter(Plan.id == data.plan_id).first()
            if not plan or not plan.is_active:
                raise NotFoundError("Plan not found or no longer offered", code="plan_not_found")
            if plan.provider_id != data.provider_id:
                raise ValidationError("Plan belongs to a different provider", code="plan_provider_mismatch")
            if plan.kind != "single":
                raise ValidationError("Monthly plans are purchased as subscriptions", code="monthly_plan")
            price = price_per_session(plan)
            session_format = plan.session_format
        else:
            price = session_price(self.db, data.provider_id, duration)
        ensure_within_hours(self.db, data.provider_id, data.session_date, data.start_time, end_time)

        logger.info(
            f"📥 Booking {data.provider_id} on {data.session_date} {data.start_time}-{end_time} for client {caller.id}"
        )
        self.lock_provider_day(data.provider_id, data.session_date)
        ensure_slot_available(
            self.db, data.provider_id, data.session_date, data.start_time, end_time, session_format
        )

        appointment = Appointment(
            client_id=caller.id,
            provider_id=data.provider_id,
            session_date=data.session_date,
            start_time=data.start_time,
            end_time=end_time,
            duration_minutes=duration,
            consultation_method=data.consultation_method,
            session_format=session_format,
            status=PENDING,
            price=price,
            payment_required=price > 0,
            payment_status="pending",
            plan_id=plan.id if plan else None,
            notes=data.notes,
        )
        self.db.add(appointment)
        self.commit_booking()
        self.db.refresh(appointment)
        logger.info(f"✅ Appointment {appointment.id} created (pending, price={price})")
        return appointment

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def accept(self, appointment_id: int, caller: Caller, now: Optional[datetime] = None) -> Appointment:
        """Provider confirms a pending appointment that needs no (further) payment"""
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        if appointment.provider_id != caller.id:
            raise PermissionDeniedError("Only the appointment's provider can accept it")

        ensure_transition(appointment.status, CONFIRMED)
        if appointment.payment_required and appointment.payment_status != "paid":
            raise StateTransitionError(
                appointment.status, CONFIRMED, "Payment has not been completed yet", code="awaiting_payment"
            )

        self._transition(appointment, (PENDING,), CONFIRMED, {"confirmed_at": now})
        assign_channel(appointment)
        emit_for_both(self.db, "confirmed", appointment)
        self.db.commit()
        logger.info(f"✅ Appointment {appointment.id} accepted by provider {caller.id}")
        return appointment

    def cancel(
        self, appointment_id: int, caller: Caller, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Appointment:
        """
        Cancel a pending or confirmed appointment.

        Admins must give a reason. A confirmed, paid appointment is flagged for refund.
        """
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        actor = self._actor_for(appointment, caller)
        reason = (reason or "").strip() or None
        if actor == "admin" and not reason:
            raise ValidationError("A reason is required for administrative cancellation", code="reason_required")

        ensure_transition(appointment.status, CANCELLED)
        values = {"cancelled_by": actor, "cancellation_reason": reason, "cancelled_at": now}
        if appointment.status == CONFIRMED and appointment.payment_status == "paid":
            values["refund_requested_at"] = now

        self._transition(appointment, (appointment.status,), CANCELLED, values)
        notify_cancellation(self.db, appointment, actor, reason)
        self.db.commit()
        logger.info(f"✅ Appointment {appointment.id} cancelled by {actor}")
        return appointment

    def reject(
        self, appointment_id: int, caller: Caller, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> Appointment:
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        if appointment.provider_id != caller.id:
            raise PermissionDeniedError("Only the appointment's provider can reject it")
        if appointment.payment_status == "paid":
            raise StateTransitionError(
                appointment.status, REJECTED, "Paid appointments must be cancelled instead", code="already_paid"
            )

        ensure_transition(appointment.status, REJECTED)
        self._transition(
            appointment,
            (PENDING,),
            REJECTED,
            {"cancelled_by": "provider", "cancellation_reason": reason, "cancelled_at": now},
        )
        notify_cancellation(self.db, appointment, "provider", reason)
        self.db.commit()
        logger.info(f"✅ Appointment {appointment.id} rejected by provider {caller.id}")
        return appointment

    def complete(self, appointment_id: int, now: datetime) -> Appointment:
        """Mark a confirmed appointment completed once its end time has passed (scheduler only)"""
        appointment = self.get_appointment(appointment_id)
        ensure_transition(appointment.status, COMPLETED)

        ends_at = appointment.ends_at
        if ends_at is None or now < ends_at:
            raise StateTransitionError(
                appointment.status, COMPLETED, "Session has not ended yet", code="session_not_over"
            )

        values = {"completed_at": now}
        if appointment.is_dynamic_group and appointment.session_date is None:
            # Freeze the slot it actually ran in; the plan's slot moves on
            values.update(
                session_date=appointment.effective_date,
                start_time=appointment.effective_start_time,
                end_time=appointment.effective_end_time,
            )

        self._transition(appointment, (CONFIRMED,), COMPLETED, values)
        self.db.commit()
        return appointment

    def reschedule(
        self, appointment_id: int, caller: Caller, data: RescheduleRequest, now: Optional[datetime] = None
    ) -> Appointment:
        """Client moves a live appointment; status and channel are kept, reminders re-arm"""
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        if appointment.client_id != caller.id:
            raise PermissionDeniedError("Only the client can reschedule this appointment")
        if appointment.status not in LIVE_STATUSES:
            raise StateTransitionError(
                appointment.status,
                appointment.status,
                "Only pending or confirmed appointments can be rescheduled",
                code="not_reschedulable",
            )
        if appointment.group_session_id or appointment.is_dynamic_group:
            raise ValidationError("Group sessions are rescheduled by the provider", code="group_session")

        end_time, duration = resolve_session_times(
            data.start_time, data.duration_minutes or appointment.duration_minutes
        )
        ensure_future(data.session_date, data.start_time, now)
        ensure_within_hours(self.db, appointment.provider_id, data.session_date, data.start_time, end_time)

        self.lock_provider_day(appointment.provider_id, data.session_date)
        ensure_slot_available(
            self.db,
            appointment.provider_id,
            data.session_date,
            data.start_time,
            end_time,
            appointment.session_format,
            exclude_id=appointment.id,
        )

        values = {
            "session_date": data.session_date,
            "start_time": data.start_time,
            "end_time": end_time,
            "duration_minutes": duration,
        }
        values.update({stamp: None for stamp in REMINDER_STAMPS})
        try:
            changed = self.repo.transition(self.db, appointment.id, (appointment.status,), values)
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                "This slot was just taken. Please pick another time.", code="slot_unavailable"
            ) from e
        if changed != 1:
            self.db.rollback()
            self.db.refresh(appointment)
            raise StateTransitionError(appointment.status, appointment.status, code="concurrent_update")
        self.commit_booking()
        self.db.refresh(appointment)
        logger.info(f"🔄 Appointment {appointment.id} moved to {data.session_date} {data.start_time}")
        return appointment

    def submit_feedback(
        self,
        appointment_id: int,
        caller: Caller,
        rating: int,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Appointment:
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        if appointment.client_id != caller.id:
            raise PermissionDeniedError("Only the client can leave feedback")
        if appointment.status != COMPLETED:
            raise ValidationError("Feedback is accepted for completed sessions only", code="not_completed")
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", code="invalid_rating")

        changed = (
            self.db.query(Appointment)
            .filter(Appointment.id == appointment.id, Appointment.feedback_submitted_at.is_(None))
            .update(
                {"feedback_rating": rating, "feedback_comment": comment, "feedback_submitted_at": now},
                synchronize_session=False,
            )
        )
        if changed != 1:
            self.db.rollback()
            raise ValidationError("Feedback was already submitted", code="feedback_exists")
        self.db.commit()
        self.db.refresh(appointment)
        return appointment

    def get_channel(self, appointment_id: int, caller: Caller, now: Optional[datetime] = None) -> dict:
        """Channel details for a participant inside the join window"""
        now = now or utcnow()
        appointment = self.get_appointment(appointment_id)
        if caller.id not in (appointment.client_id, appointment.provider_id):
            raise PermissionDeniedError("Not a participant of this appointment")
        if appointment.status != CONFIRMED:
            raise ValidationError("The session channel opens once the appointment is confirmed", code="not_confirmed")
        if appointment.consultation_method not in REALTIME_METHODS:
            raise ValidationError("This session has no audio/video channel", code="no_realtime_channel")

        starts_at, ends_at = appointment.starts_at, appointment.ends_at
        opens_at = starts_at - timedelta(minutes=JOIN_WINDOW_MINUTES)
        if now < opens_at or now > ends_at:
            raise ValidationError(
                f"The session can be joined from {opens_at.isoformat()} until {ends_at.isoformat()}",
                code="outside_join_window",
            )

        if not appointment.channel_name:
            assign_channel(appointment)
            self.db.commit()
        return {
            "appointment_id": appointment.id,
            "channel_name": appointment.channel_name,
            "consultation_method": appointment.consultation_method,
            "join_opens_at": opens_at,
            "ends_at": ends_at,
        }

    # ------------------------------------------------------------------
    # Group sessions
    # ------------------------------------------------------------------

    def _group_plan(self, plan_id: int, caller: Caller) -> Plan:
        plan = self.db.query(Plan).filter(Plan.id == plan_id).first()
        if not plan:
            raise NotFoundError("Plan not found", code="plan_not_found")
        if plan.provider_id != caller.id:
            raise PermissionDeniedError("Only the plan's provider can schedule its group sessions")
        if plan.kind != "monthly" or plan.session_format != "one_to_many":
            raise ValidationError("Group sessions need a one-to-many monthly plan", code="not_group_plan")
        return plan

    def _eligible_subscribers(self, plan: Plan, now: datetime) -> list[tuple[UserSubscription, int]]:
        """Paid, active ledger entries with capacity left, with their booked count"""
        expire_due_entries(self.db, now, plan_id=plan.id)
        eligible = []
        for subscription in self.repo.get_active_plan_subscribers(self.db, plan.id, now):
            booked = sessions_booked(self.db, subscription.plan_instance_id)
            if booked < subscription.total_sessions and is_paid(self.db, subscription):
                eligible.append((subscription, booked))
        return eligible

    def _group_appointment(self, plan: Plan, subscription: UserSubscription, booked: int, method: str, now: datetime, **timing):
        return Appointment(
            client_id=subscription.client_id,
            provider_id=plan.provider_id,
            consultation_method=method,
            session_format="one_to_many",
            status=CONFIRMED,
            price=price_per_session(plan),
            payment_required=False,
            payment_status="paid",
            plan=plan,
            plan_instance_id=subscription.plan_instance_id,
            session_ordinal=booked + 1,
            total_sessions_in_plan=subscription.total_sessions,
            confirmed_at=now,
            **timing,
        )

    def _announce_group(self, appointments: list[Appointment], provider_key: str) -> None:
        for appointment in appointments:
            assign_channel(appointment)
            emit(
                self.db,
                "confirmed",
                "client",
                appointment.client_id,
                f"confirmed:appointment:{appointment.id}:client",
                appointment_id=appointment.id,
                payload=appointment_payload(appointment),
            )
        first = appointments[0]
        payload = appointment_payload(first)
        payload.update(appointment_id=None, client_id=None, participants=len(appointments))
        emit(self.db, "confirmed", "provider", first.provider_id, provider_key, payload=payload)

    def schedule_group_session(
        self, caller: Caller, data: GroupSessionRequest, now: Optional[datetime] = None
    ) -> list[Appointment]:
        """One confirmed appointment per eligible subscriber, all sharing a new group session id"""
        now = now or utcnow()
        plan = self._group_plan(data.plan_id, caller)
        if not plan.is_active:
            raise ValidationError("Plan is no longer offered", code="plan_inactive")

        end_time, duration = resolve_session_times(data.start_time, data.duration_minutes or plan.duration_minutes)
        ensure_future(data.session_date, data.start_time, now)
        self.lock_provider_day(plan.provider_id, data.session_date)
        ensure_slot_available(self.db, plan.provider_id, data.session_date, data.start_time, end_time, "one_to_many")

        subscribers = self._eligible_subscribers(plan, now)
        if not subscribers:
            raise ValidationError("No active subscribers with sessions remaining", code="no_active_subscribers")

        group_session_id = generate_public_id()
        appointments = [
            self._group_appointment(
                plan,
                subscription,
                booked,
                data.consultation_method,
                now,
                session_date=data.session_date,
                start_time=data.start_time,
                end_time=end_time,
                duration_minutes=duration,
                group_session_id=group_session_id,
            )
            for subscription, booked in subscribers
        ]
        self.db.add_all(appointments)
        self.db.flush()
        self._announce_group(appointments, f"confirmed:group:{group_session_id}:provider")
        self.commit_booking()
        logger.info(f"✅ Group session {group_session_id} scheduled for {len(appointments)} subscribers")
        return appointments

    def schedule_dynamic_group_session(
        self, caller: Caller, data: DynamicGroupRequest, now: Optional[datetime] = None
    ) -> list[Appointment]:
        """
        Enrol eligible subscribers in the plan's recurring group slot.

        The appointments store no timing; they follow the plan's slot until they
        complete. Subscribers already holding a live slot appointment are skipped.
        """
        now = now or utcnow()
        plan = self._group_plan(data.plan_id, caller)
        if not plan.has_group_slot:
            raise ValidationError("Plan has no recurring group slot", code="no_group_slot")
        ensure_future(plan.group_session_date, plan.group_start_time, now)
        self.lock_provider_day(plan.provider_id, plan.group_session_date)
        ensure_slot_available(
            self.db, plan.provider_id, plan.group_session_date, plan.group_start_time, plan.group_end_time, "one_to_many"
        )

        enrolled = {
            instance_id
            for (instance_id,) in self.db.query(Appointment.plan_instance_id).filter(
                Appointment.plan_id == plan.id,
                Appointment.is_dynamic_group.is_(True),
                Appointment.status.in_(LIVE_STATUSES),
            )
        }
        appointments = [
            self._group_appointment(plan, subscription, booked, data.consultation_method, now, is_dynamic_group=True)
            for subscription, booked in self._eligible_subscribers(plan, now)
            if subscription.plan_instance_id not in enrolled
        ]
        if not appointments:
            return []

        self.db.add_all(appointments)
        self.db.flush()
        self._announce_group(
            appointments, f"confirmed:group-plan:{plan.id}:batch:{appointments[0].id}:provider"
        )
        self.commit_booking()
        logger.info(f"✅ {len(appointments)} subscribers enrolled in dynamic group slot of plan {plan.id}")
        return appointments

    def reschedule_plan_slot(
        self,
        plan_id: int,
        caller: Caller,
        session_date: date,
        start_time: str,
        end_time: str,
        now: Optional[datetime] = None,
    ) -> Plan:
        """Move a plan's recurring group slot; every live dynamic appointment follows it"""
        now = now or utcnow()
        plan = self._group_plan(plan_id, caller)
        validate_time_range(
            start_time, end_time, None, DURATION_TOLERANCE_MINUTES, MIN_SESSION_MINUTES, MAX_SESSION_MINUTES
        )
        ensure_future(session_date, start_time, now)

        self.lock_provider_day(plan.provider_id, session_date)
        ensure_slot_available(self.db, plan.provider_id, session_date, start_time, end_time, "one_to_many")

        plan.group_session_date = session_date
        plan.group_start_time = start_time
        plan.group_end_time = end_time
        self.db.query(Appointment).filter(
            Appointment.plan_id == plan.id,
            Appointment.is_dynamic_group.is_(True),
            Appointment.session_date.is_(None),
            Appointment.status.in_(LIVE_STATUSES),
        ).update({stamp: None for stamp in REMINDER_STAMPS}, synchronize_session=False)
        self.db.commit()
        self.db.refresh(plan)
        logger.info(
            f"🔄 Plan {plan.id} group slot moved to {session_date} {start_time}-{end_time} "
            f"({minutes_between(start_time, end_time)} min)"
        )
        return plan
