"""Payment router - orders, verification, history and the gateway webhook"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...auth import Caller, get_current_caller, require_role
from ...config import DODO_PAYMENTS_WEBHOOK_SECRET
from ...database import get_db
from ...webhook_security import verify_dodo_webhook
from .gateway import DodoPaymentsGateway, get_payment_gateway
from .schemas import CreateOrderRequest, PaymentResponse, ReconcileResponse, VerifyPaymentRequest
from .service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])
webhooks_router = APIRouter(tags=["Webhooks"])


def get_payment_service(
    db: Session = Depends(get_db), gateway: DodoPaymentsGateway = Depends(get_payment_gateway)
) -> PaymentService:
    """Dependency injection for PaymentService"""
    return PaymentService(db, gateway)


@router.post("/orders", response_model=PaymentResponse, status_code=201)
async def create_order(
    body: CreateOrderRequest,
    caller: Caller = Depends(require_role("client")),
    service: PaymentService = Depends(get_payment_service),
):
    """Create a gateway checkout for an appointment or subscription"""
    return await service.create_payment(caller, body)


@router.post("/verify", response_model=ReconcileResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    caller: Caller = Depends(get_current_caller),
    service: PaymentService = Depends(get_payment_service),
):
    """Client callback after checkout; safe to call repeatedly"""
    return await service.verify(caller, body.order_id, body.payment_id)


@router.get("/history", response_model=list[PaymentResponse])
async def payment_history(
    caller: Caller = Depends(get_current_caller),
    service: PaymentService = Depends(get_payment_service),
):
    return service.payment_history(caller)


@webhooks_router.post("/webhooks/payments")
async def payment_webhook(request: Request, service: PaymentService = Depends(get_payment_service)):
    """
    Gateway webhook (Standard Webhooks signature).

    Deliveries can repeat or race the client-side verify call; reconciliation
    is idempotent so both paths are always safe.
    """
    if not DODO_PAYMENTS_WEBHOOK_SECRET:
        logger.error("❌ DODO_PAYMENTS_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    _, raw_body = await verify_dodo_webhook(request, DODO_PAYMENTS_WEBHOOK_SECRET, raise_on_failure=True)

    try:
        event = json.loads(raw_body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Failed to parse webhook JSON: {e}")
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from e

    webhook_id = request.headers.get("webhook-id", "unknown")
    logger.info(f"🔔 Webhook received id={webhook_id} type={event.get('type')}")
    return service.handle_gateway_event(event)
