"""Payment repository - Database operations for payments"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models_payment import Payment


class PaymentRepository:
    """Repository for payment database operations"""

    @staticmethod
    def get_by_order_id(db: Session, order_id: str) -> Optional[Payment]:
        return db.query(Payment).filter(Payment.gateway_order_id == order_id).first()

    @staticmethod
    def create_payment(db: Session, **payment_data) -> Payment:
        payment = Payment(**payment_data)
        db.add(payment)
        db.commit()
        db.refresh(payment)
        return payment

    @staticmethod
    def history(db: Session, payer_id: Optional[str] = None, provider_id: Optional[str] = None, limit: int = 50):
        query = db.query(Payment)
        if payer_id is not None:
            query = query.filter(Payment.payer_id == payer_id)
        if provider_id is not None:
            query = query.filter(Payment.provider_id == provider_id)
        return query.order_by(Payment.created_at.desc(), Payment.id.desc()).limit(limit).all()

    @staticmethod
    def payments_for_target(
        db: Session,
        appointment_id: Optional[int] = None,
        subscription_id: Optional[int] = None,
        statuses: Optional[tuple] = None,
    ) -> list[Payment]:
        query = db.query(Payment)
        if appointment_id is not None:
            query = query.filter(Payment.appointment_id == appointment_id)
        else:
            query = query.filter(Payment.subscription_id == subscription_id)
        if statuses:
            query = query.filter(Payment.status.in_(statuses))
        return query.order_by(Payment.id).all()
