"""
Payment and notification outbox models
"""

from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Payment(Base):
    """A gateway order for one appointment or one ledger entry (never both)"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    payer_id = Column(String(128), nullable=False, index=True)
    provider_id = Column(String(128), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=True)

    # Dodo references
    # Our own correlation id, sent to the gateway as metadata.payment_ref
    reference = Column(String(36), unique=True, nullable=False, index=True)
    gateway_order_id = Column(String(255), unique=True, nullable=False, index=True)  # Checkout session id
    gateway_payment_id = Column(String(255), unique=True, nullable=True, index=True)
    checkout_url = Column(String(1000), nullable=True)

    amount = Column(Float, nullable=False)  # Major units
    currency = Column(String(10), default="INR")
    status = Column(String(20), default="pending", nullable=False)
    # pending, processing, completed, failed, refunded, cancelled (superseded by a newer order)
    description = Column(Text, nullable=True)
    failure_reason = Column(Text, nullable=True)

    paid_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    # Money captured for a target that was already paid, cancelled or expired
    refund_requested_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment")
    subscription = relationship("UserSubscription")


class NotificationEvent(Base):
    """Outbox row: a notification fact written with the state change it describes"""

    __tablename__ = "notification_events"

    id = Column(Integer, primary_key=True, index=True)
    kind = Column(String(30), nullable=False)
    # reminder, join_now, confirmed, cancelled, refund_requested, expiring, expired
    audience = Column(String(20), nullable=False)  # client, provider
    recipient_id = Column(String(128), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=True)
    subscription_id = Column(Integer, ForeignKey("user_subscriptions.id"), nullable=True)
    payload = Column(JSON, default=dict, nullable=False)
    dedupe_key = Column(String(255), unique=True, nullable=False)

    created_at = Column(DateTime, server_default=func.now())
    claimed_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
