"""Scheduling repository - Database operations for appointments"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Appointment, UserSubscription


class AppointmentRepository:
    """Repository for appointment database operations"""

    @staticmethod
    def get_appointment(db: Session, appointment_id: int) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def list_appointments(
        db: Session,
        client_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[Appointment], int]:
        query = db.query(Appointment)
        if client_id is not None:
            query = query.filter(Appointment.client_id == client_id)
        if provider_id is not None:
            query = query.filter(Appointment.provider_id == provider_id)
        if status:
            query = query.filter(Appointment.status == status)

        total = query.count()
        items = (
            query.order_by(Appointment.created_at.desc(), Appointment.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    @staticmethod
    def transition(db: Session, appointment_id: int, from_statuses: tuple, values: dict) -> int:
        """
        Compare-and-swap on status: apply values only while the row is still in
        one of from_statuses. Returns the number of rows changed (0 or 1).
        """
        return (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.status.in_(from_statuses))
            .update(values, synchronize_session=False)
        )

    @staticmethod
    def get_plan_instance_appointments(db: Session, plan_instance_id: str, statuses: Optional[tuple] = None):
        query = db.query(Appointment).filter(Appointment.plan_instance_id == plan_instance_id)
        if statuses:
            query = query.filter(Appointment.status.in_(statuses))
        return query.order_by(Appointment.session_ordinal, Appointment.id).all()

    @staticmethod
    def get_active_plan_subscribers(db: Session, plan_id: int, now) -> list[UserSubscription]:
        return (
            db.query(UserSubscription)
            .filter(
                UserSubscription.plan_id == plan_id,
                UserSubscription.status == "active",
                UserSubscription.expiry_date >= now,
            )
            .order_by(UserSubscription.id)
            .all()
        )
