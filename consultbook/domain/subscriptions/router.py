"""Subscription router - FastAPI endpoints for the plan ledger"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import Caller, get_current_caller, require_role
from ...database import get_db
from ..scheduling.router import appointment_response
from ..scheduling.schemas import AppointmentResponse
from .schemas import (
    CancelSubscriptionRequest,
    PlanSessionRequest,
    ProviderStatsResponse,
    PurchaseRequest,
    SubscriptionResponse,
)
from .service import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


def get_subscription_service(db: Session = Depends(get_db)) -> SubscriptionService:
    """Dependency injection for SubscriptionService"""
    return SubscriptionService(db)


@router.post("/purchase", status_code=201)
async def purchase_plan(
    body: PurchaseRequest,
    caller: Caller = Depends(require_role("client")),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Purchase a monthly plan; pay for it through POST /payments/orders"""
    subscription, appointments = service.purchase_monthly_plan(caller, body)
    return {
        "subscription": SubscriptionResponse(**service.to_response(subscription)),
        "appointments": [appointment_response(a) for a in appointments],
    }


@router.get("/mine", response_model=list[SubscriptionResponse])
async def list_my_subscriptions(
    status: Optional[str] = Query(None),
    caller: Caller = Depends(get_current_caller),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Ledger entries of the caller (as client, or as provider for providers)"""
    if caller.role == "provider":
        entries = service.list_for_provider(caller, status)
    else:
        entries = service.list_for_client(caller, status)
    return [service.to_response(s) for s in entries]


@router.get("/provider/stats", response_model=ProviderStatsResponse)
async def provider_stats(
    caller: Caller = Depends(require_role("provider")),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.provider_stats(caller)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: int,
    caller: Caller = Depends(get_current_caller),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return service.to_response(service.get_subscription(subscription_id, caller))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: int,
    body: CancelSubscriptionRequest,
    caller: Caller = Depends(get_current_caller),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel the entry and every future session booked under it"""
    return service.to_response(service.cancel_subscription(subscription_id, caller, body.reason))


@router.get("/{subscription_id}/sessions", response_model=list[AppointmentResponse])
async def list_subscription_sessions(
    subscription_id: int,
    caller: Caller = Depends(get_current_caller),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return [appointment_response(a) for a in service.list_sessions(subscription_id, caller)]


@router.post("/{subscription_id}/sessions", response_model=AppointmentResponse, status_code=201)
async def book_plan_session(
    subscription_id: int,
    body: PlanSessionRequest,
    caller: Caller = Depends(require_role("client")),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return appointment_response(service.book_plan_session(subscription_id, caller, body))
