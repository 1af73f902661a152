import uuid

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    JSON,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .utils.time_calculator import combine


def generate_public_id():
    """Generate a unique correlation id (plan instances, group sessions)"""
    return str(uuid.uuid4())


# A one-to-one slot can be held by at most one live booking. Losers of a
# concurrent insert get an IntegrityError which the booking service maps to a conflict.
LIVE_ONE_TO_ONE_SLOT = text("session_format = 'one_to_one' AND status IN ('pending', 'confirmed')")


class Plan(Base):
    __tablename__ = "plans"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(String(128), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    kind = Column(String(20), nullable=False)  # single, monthly
    session_format = Column(String(20), nullable=False, default="one_to_one")  # one_to_one, one_to_many
    duration_minutes = Column(Integer, nullable=False, default=30)
    price = Column(Float, nullable=True)  # single sessions
    sessions_per_month = Column(Integer, nullable=True)  # monthly plans
    monthly_price = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Recurring slot shared by every dynamic group appointment on this plan
    group_session_date = Column(Date, nullable=True)
    group_start_time = Column(String(5), nullable=True)  # HH:MM
    group_end_time = Column(String(5), nullable=True)

    # Set when a commercial edit replaced this row with a new version
    superseded_by_id = Column(Integer, ForeignKey("plans.id"), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointments = relationship("Appointment", back_populates="plan")
    subscriptions = relationship("UserSubscription", back_populates="plan")

    @property
    def has_group_slot(self) -> bool:
        return bool(self.group_session_date and self.group_start_time and self.group_end_time)


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index(
            "uq_appointments_live_one_to_one_slot",
            "provider_id",
            "session_date",
            "start_time",
            unique=True,
            sqlite_where=LIVE_ONE_TO_ONE_SLOT,
            postgresql_where=LIVE_ONE_TO_ONE_SLOT,
        ),
        Index("ix_appointments_provider_date", "provider_id", "session_date"),
    )

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String(128), nullable=False, index=True)
    provider_id = Column(String(128), nullable=False, index=True)

    # Timing (null for dynamic group appointments - read from the plan's slot)
    session_date = Column(Date, nullable=True)
    start_time = Column(String(5), nullable=True)  # HH:MM
    end_time = Column(String(5), nullable=True)
    duration_minutes = Column(Integer, nullable=True)

    consultation_method = Column(String(20), nullable=False, default="video")  # video, audio, chat, in_person
    session_format = Column(String(20), nullable=False, default="one_to_one")
    status = Column(String(20), nullable=False, default="pending", index=True)
    # pending, confirmed, completed, cancelled, rejected

    price = Column(Float, default=0, nullable=False)  # Snapshot at booking time
    payment_required = Column(Boolean, default=True, nullable=False)
    payment_status = Column(String(20), default="pending", nullable=False)  # pending, paid, failed, refunded

    # Plan linkage; plan_instance_id is a correlation key shared with the ledger entry
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)
    plan_instance_id = Column(String(36), nullable=True, index=True)
    session_ordinal = Column(Integer, nullable=True)
    total_sessions_in_plan = Column(Integer, nullable=True)
    group_session_id = Column(String(36), nullable=True, index=True)
    is_dynamic_group = Column(Boolean, default=False, nullable=False)

    # Cancellation / rejection
    cancelled_by = Column(String(20), nullable=True)  # client, provider, admin, system
    cancellation_reason = Column(String(1000), nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    refund_requested_at = Column(DateTime, nullable=True)

    channel_name = Column(String(255), nullable=True)
    notes = Column(String(1000), nullable=True)

    feedback_rating = Column(Integer, nullable=True)  # 1..5
    feedback_comment = Column(String(2000), nullable=True)
    feedback_submitted_at = Column(DateTime, nullable=True)

    # Scheduler stamps - each fact fires once per audience
    client_reminder_sent_at = Column(DateTime, nullable=True)
    provider_reminder_sent_at = Column(DateTime, nullable=True)
    client_join_nudge_sent_at = Column(DateTime, nullable=True)
    provider_join_nudge_sent_at = Column(DateTime, nullable=True)

    confirmed_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    plan = relationship("Plan", back_populates="appointments")

    @property
    def _reads_plan_slot(self) -> bool:
        # Dynamic group rows carry no timing of their own until completion snapshots it
        return self.is_dynamic_group and self.session_date is None and self.plan is not None

    @property
    def effective_date(self):
        if self._reads_plan_slot:
            return self.plan.group_session_date
        return self.session_date

    @property
    def effective_start_time(self):
        if self._reads_plan_slot:
            return self.plan.group_start_time
        return self.start_time

    @property
    def effective_end_time(self):
        if self._reads_plan_slot:
            return self.plan.group_end_time
        return self.end_time

    @property
    def starts_at(self):
        day, start = self.effective_date, self.effective_start_time
        if not day or not start:
            return None
        return combine(day, start)

    @property
    def ends_at(self):
        day, end = self.effective_date, self.effective_end_time
        if not day or not end:
            return None
        return combine(day, end)


class UserSubscription(Base):
    """Ledger entry for a purchased monthly plan"""

    __tablename__ = "user_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(String(128), nullable=False, index=True)
    provider_id = Column(String(128), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    plan_instance_id = Column(String(36), unique=True, nullable=False, default=generate_public_id)
    plan_name = Column(String(255), nullable=False)
    plan_kind = Column(String(20), nullable=False, default="monthly")
    total_sessions = Column(Integer, nullable=False)
    monthly_price = Column(Float, nullable=False)

    start_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False, index=True)
    next_billing_date = Column(DateTime, nullable=True)
    status = Column(String(20), default="active", nullable=False, index=True)  # active, expired, cancelled
    auto_renewal = Column(Boolean, default=False, nullable=False)

    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(20), nullable=True)
    cancellation_reason = Column(String(1000), nullable=True)
    # Expiry date the "expiring soon" fact was emitted for (one per cycle)
    expiry_reminder_sent_for = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    plan = relationship("Plan", back_populates="subscriptions")


class ProviderSchedule(Base):
    """Weekly open hours and hourly rate a provider publishes for direct bookings"""

    __tablename__ = "provider_schedules"

    id = Column(Integer, primary_key=True, index=True)
    provider_id = Column(String(128), unique=True, nullable=False, index=True)
    hourly_rate = Column(Float, nullable=False, default=0.0)
    # {"monday": [{"start_time": "09:00", "end_time": "13:00"}, ...], ...}; a missing day is closed
    weekly_hours = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
