"""Subscription ledger service - monthly plan purchases and session accounting"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import Caller
from ...config import SUBSCRIPTION_PERIOD_DAYS
from ...errors import NotFoundError, PermissionDeniedError, StateTransitionError, ValidationError
from ...models import Appointment, Plan, UserSubscription, generate_public_id
from ...utils.time_calculator import combine, overlaps, parse_hhmm, utcnow
from ..notifications.service import emit_for_both
from ..plans.service import price_per_session
from ..providers.service import ensure_within_hours
from ..scheduling.availability import ensure_slot_available
from ..scheduling.channels import assign_channel
from ..scheduling.service import SchedulingService, ensure_future, notify_cancellation, resolve_session_times
from ..scheduling.state_machine import CANCELLED, COMPLETED, CONFIRMED, LIVE_STATUSES, PENDING
from .ledger import ACTIVE, expire_due_entries, expire_if_due, is_paid, session_usage, sessions_booked
from .repository import SubscriptionRepository
from .schemas import PlanSessionRequest, PurchaseRequest

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "Subscription cancelled"


class SubscriptionService:
    """Service layer for the subscription ledger"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = SubscriptionRepository()
        self.scheduling = SchedulingService(db)

    # ------------------------------------------------------------------
    # Reads (each one expires due entries first)
    # ------------------------------------------------------------------

    def to_response(self, subscription: UserSubscription) -> dict:
        used, remaining = session_usage(self.db, subscription)
        data = {column.name: getattr(subscription, column.name) for column in UserSubscription.__table__.columns}
        data.update(sessions_used=used, sessions_remaining=remaining)
        return data

    def _get_visible(self, subscription_id: int, caller: Caller) -> UserSubscription:
        subscription = self.repo.get_subscription(self.db, subscription_id)
        if not subscription:
            raise NotFoundError("Subscription not found", code="subscription_not_found")
        if caller.id not in (subscription.client_id, subscription.provider_id) and not caller.is_admin:
            raise PermissionDeniedError("Not your subscription")
        return subscription

    def get_subscription(self, subscription_id: int, caller: Caller, now: Optional[datetime] = None) -> UserSubscription:
        now = now or utcnow()
        subscription = self._get_visible(subscription_id, caller)
        if expire_if_due(self.db, subscription.id, now):
            self.db.commit()
            self.db.refresh(subscription)
        return subscription

    def list_for_client(self, caller: Caller, status: Optional[str] = None, now: Optional[datetime] = None):
        expire_due_entries(self.db, now or utcnow(), client_id=caller.id)
        return self.repo.list_subscriptions(self.db, client_id=caller.id, status=status)

    def list_for_provider(self, caller: Caller, status: Optional[str] = None, now: Optional[datetime] = None):
        expire_due_entries(self.db, now or utcnow(), provider_id=caller.id)
        return self.repo.list_subscriptions(self.db, provider_id=caller.id, status=status)

    def list_sessions(self, subscription_id: int, caller: Caller) -> list[Appointment]:
        subscription = self._get_visible(subscription_id, caller)
        return self.scheduling.repo.get_plan_instance_appointments(self.db, subscription.plan_instance_id)

    def provider_stats(self, caller: Caller, now: Optional[datetime] = None) -> dict:
        expire_due_entries(self.db, now or utcnow(), provider_id=caller.id)
        statuses = self.repo.status_counts(self.db, caller.id)
        sessions = self.repo.plan_session_counts(self.db, caller.id)
        return {
            "active": statuses.get("active", 0),
            "expired": statuses.get("expired", 0),
            "cancelled": statuses.get("cancelled", 0),
            "total_subscribers": self.repo.distinct_subscribers(self.db, caller.id),
            "sessions_completed": sessions.get(COMPLETED, 0),
            "sessions_scheduled": sessions.get(PENDING, 0) + sessions.get(CONFIRMED, 0),
            "revenue": self.repo.subscription_revenue(self.db, caller.id),
        }

    # ------------------------------------------------------------------
    # Purchase and booking
    # ------------------------------------------------------------------

    def purchase_monthly_plan(
        self, caller: Caller, data: PurchaseRequest, now: Optional[datetime] = None
    ) -> tuple[UserSubscription, list[Appointment]]:
        """
        Open a ledger entry for a monthly plan and book its first sessions.

        Every appointment starts pending and shares the entry's plan_instance_id;
        payment reconciliation confirms them together.
        """
        now = now or utcnow()
        if caller.role != "client":
            raise PermissionDeniedError("Only clients can purchase plans")

        plan = self.db.query(Plan).filter(Plan.id == data.plan_id).first()
        if not plan or not plan.is_active:
            raise NotFoundError("Plan not found or no longer offered", code="plan_not_found")
        if plan.kind != "monthly":
            raise ValidationError("Only monthly plans can be purchased as subscriptions", code="not_monthly_plan")
        if plan.provider_id == caller.id:
            raise ValidationError("You cannot subscribe to your own plan", code="self_booking")
        if len(data.sessions) > plan.sessions_per_month:
            raise ValidationError(
                f"This plan includes {plan.sessions_per_month} sessions per month", code="too_many_sessions"
            )

        expiry = now + timedelta(days=SUBSCRIPTION_PERIOD_DAYS)
        slots = self._validate_slots(plan, data.sessions, now, expiry)

        plan_instance_id = generate_public_id()
        subscription = UserSubscription(
            client_id=caller.id,
            provider_id=plan.provider_id,
            plan_id=plan.id,
            plan_instance_id=plan_instance_id,
            plan_name=plan.name,
            plan_kind=plan.kind,
            total_sessions=plan.sessions_per_month,
            monthly_price=plan.monthly_price,
            start_date=now,
            expiry_date=expiry,
            next_billing_date=expiry if data.auto_renewal else None,
            status=ACTIVE,
            auto_renewal=data.auto_renewal,
        )
        per_session = price_per_session(plan)
        appointments = [
            Appointment(
                client_id=caller.id,
                provider_id=plan.provider_id,
                session_date=slot.session_date,
                start_time=slot.start_time,
                end_time=end_time,
                duration_minutes=plan.duration_minutes,
                consultation_method=data.consultation_method,
                session_format=plan.session_format,
                status=PENDING,
                price=per_session,
                payment_required=True,
                payment_status="pending",
                plan_id=plan.id,
                plan_instance_id=plan_instance_id,
                session_ordinal=ordinal,
                total_sessions_in_plan=plan.sessions_per_month,
            )
            for ordinal, (slot, end_time) in enumerate(slots, start=1)
        ]

        self.db.add(subscription)
        self.db.add_all(appointments)
        self.scheduling.commit_booking()
        self.db.refresh(subscription)
        logger.info(
            f"✅ Subscription {subscription.id} opened for client {caller.id} on plan {plan.id} "
            f"with {len(appointments)} sessions booked"
        )
        return subscription, appointments

    def _validate_slots(self, plan: Plan, sessions: list, now: datetime, expiry: datetime) -> list[tuple]:
        """Check each requested slot (and the slots against each other); returns (slot, end_time) pairs"""
        resolved = []
        for slot in sessions:
            end_time, _ = resolve_session_times(slot.start_time, plan.duration_minutes)
            ensure_future(slot.session_date, slot.start_time, now)
            ensure_within_hours(self.db, plan.provider_id, slot.session_date, slot.start_time, end_time)
            if combine(slot.session_date, slot.start_time) >= expiry:
                raise ValidationError("Session falls after the plan period ends", code="after_expiry")
            self.scheduling.lock_provider_day(plan.provider_id, slot.session_date)
            ensure_slot_available(
                self.db, plan.provider_id, slot.session_date, slot.start_time, end_time, plan.session_format
            )
            resolved.append((slot, end_time))

        if plan.session_format == "one_to_one":
            for i, (a, a_end) in enumerate(resolved):
                for b, b_end in resolved[i + 1 :]:
                    if a.session_date == b.session_date and overlaps(
                        parse_hhmm(a.start_time), parse_hhmm(a_end), parse_hhmm(b.start_time), parse_hhmm(b_end)
                    ):
                        raise ValidationError("Requested sessions overlap each other", code="overlapping_sessions")
        return resolved

    def book_plan_session(
        self, subscription_id: int, caller: Caller, data: PlanSessionRequest, now: Optional[datetime] = None
    ) -> Appointment:
        """Schedule another session against an active entry with sessions left"""
        now = now or utcnow()
        subscription = self.get_subscription(subscription_id, caller, now)
        if subscription.client_id != caller.id:
            raise PermissionDeniedError("Only the subscriber can book plan sessions")

        # Row lock serializes capacity checks for one entry until the booking commits
        subscription = (
            self.db.query(UserSubscription)
            .filter(UserSubscription.id == subscription.id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        if subscription.status != ACTIVE:
            raise ValidationError(f"Subscription is {subscription.status}", code="subscription_not_active")
        if sessions_booked(self.db, subscription.plan_instance_id) >= subscription.total_sessions:
            raise ValidationError("No sessions remaining on this plan", code="no_sessions_remaining")

        plan = subscription.plan
        slot = self._validate_slots(plan, [data], now, subscription.expiry_date)
        end_time = slot[0][1]
        paid = is_paid(self.db, subscription)

        appointment = Appointment(
            client_id=caller.id,
            provider_id=subscription.provider_id,
            session_date=data.session_date,
            start_time=data.start_time,
            end_time=end_time,
            duration_minutes=plan.duration_minutes,
            consultation_method=data.consultation_method,
            session_format=plan.session_format,
            status=CONFIRMED if paid else PENDING,
            price=price_per_session(plan),
            payment_required=True,
            payment_status="paid" if paid else "pending",
            plan_id=plan.id,
            plan_instance_id=subscription.plan_instance_id,
            session_ordinal=self.repo.next_ordinal(self.db, subscription.plan_instance_id),
            total_sessions_in_plan=subscription.total_sessions,
            confirmed_at=now if paid else None,
        )
        self.db.add(appointment)
        if paid:
            self.db.flush()
            assign_channel(appointment)
            emit_for_both(self.db, "confirmed", appointment)
        self.scheduling.commit_booking()
        self.db.refresh(appointment)
        logger.info(f"✅ Plan session {appointment.id} booked on subscription {subscription.id} ({appointment.status})")
        return appointment

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_subscription(
        self, subscription_id: int, caller: Caller, reason: Optional[str] = None, now: Optional[datetime] = None
    ) -> UserSubscription:
        """
        Cancel an active entry and every future live session under it.

        Sessions that already started and completed ones are left as they are.
        """
        now = now or utcnow()
        subscription = self.get_subscription(subscription_id, caller, now)
        if caller.is_admin:
            actor = "admin"
        elif caller.id == subscription.client_id:
            actor = "client"
        else:
            actor = "provider"
        reason = (reason or "").strip() or None

        changed = (
            self.db.query(UserSubscription)
            .filter(UserSubscription.id == subscription.id, UserSubscription.status == ACTIVE)
            .update(
                {
                    "status": CANCELLED,
                    "cancelled_at": now,
                    "cancelled_by": actor,
                    "cancellation_reason": reason,
                    "auto_renewal": False,
                    "next_billing_date": None,
                },
                synchronize_session=False,
            )
        )
        if changed != 1:
            self.db.rollback()
            self.db.refresh(subscription)
            raise StateTransitionError(subscription.status, CANCELLED, code="subscription_not_active")

        session_reason = reason or DEFAULT_CANCELLATION_REASON
        cascaded = 0
        live = self.scheduling.repo.get_plan_instance_appointments(
            self.db, subscription.plan_instance_id, LIVE_STATUSES
        )
        for appointment in live:
            # Only sessions still ahead are cancelled; undated dynamic rows count as ahead
            starts_at = appointment.starts_at
            if starts_at is not None and starts_at < now:
                continue
            moved = self.scheduling.repo.transition(
                self.db,
                appointment.id,
                (appointment.status,),
                {
                    "status": CANCELLED,
                    "cancelled_by": actor,
                    "cancellation_reason": session_reason,
                    "cancelled_at": now,
                },
            )
            if moved == 1:
                self.db.refresh(appointment)
                notify_cancellation(self.db, appointment, actor, session_reason)
                cascaded += 1

        self.db.commit()
        self.db.refresh(subscription)
        logger.info(f"✅ Subscription {subscription.id} cancelled by {actor}; {cascaded} future sessions cancelled")
        return subscription
