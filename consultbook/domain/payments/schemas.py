"""Payment domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, model_validator


class CreateOrderRequest(BaseModel):
    """Pay for exactly one appointment or one ledger entry"""

    appointment_id: Optional[int] = None
    subscription_id: Optional[int] = None
    return_path: Optional[str] = None  # e.g. "/bookings?payment=done"

    @model_validator(mode="after")
    def validate_target(self):
        if (self.appointment_id is None) == (self.subscription_id is None):
            raise ValueError("Provide exactly one of appointment_id or subscription_id")
        return self


class VerifyPaymentRequest(BaseModel):
    order_id: str
    payment_id: str


class PaymentResponse(BaseModel):
    id: int
    payer_id: str
    provider_id: str
    appointment_id: Optional[int] = None
    subscription_id: Optional[int] = None
    plan_id: Optional[int] = None
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    checkout_url: Optional[str] = None
    amount: float
    currency: str
    status: str
    description: Optional[str] = None
    failure_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    refund_requested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReconcileResponse(BaseModel):
    status: str
    payment_id: int
    order_id: str
    appointment_ids: list[int] = []
    refund_requested: bool = False
