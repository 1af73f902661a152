"""Plan router - FastAPI endpoints for the plan catalog"""

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import Caller, require_role
from ...database import get_db
from ..scheduling.service import SchedulingService
from .schemas import GroupSlotUpdate, PlanCreate, PlanResponse, PlanUpdate
from .service import PlanService, plan_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["Plans"])


def get_plan_service(db: Session = Depends(get_db)) -> PlanService:
    """Dependency injection for PlanService"""
    return PlanService(db)


@router.post("", response_model=PlanResponse, status_code=201)
async def create_plan(
    body: PlanCreate,
    caller: Caller = Depends(require_role("provider")),
    service: PlanService = Depends(get_plan_service),
):
    return plan_response(service.create_plan(body, caller))


@router.get("", response_model=list[PlanResponse])
async def list_my_plans(
    include_inactive: bool = Query(False),
    caller: Caller = Depends(require_role("provider")),
    service: PlanService = Depends(get_plan_service),
):
    """The calling provider's own catalog"""
    return [plan_response(p) for p in service.list_provider_plans(caller.id, active_only=not include_inactive)]


@router.get("/provider/{provider_id}", response_model=list[PlanResponse])
async def list_provider_plans(
    provider_id: str,
    include_inactive: bool = Query(False),
    service: PlanService = Depends(get_plan_service),
):
    """Plans a provider currently offers"""
    return [plan_response(p) for p in service.list_provider_plans(provider_id, active_only=not include_inactive)]


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: int, service: PlanService = Depends(get_plan_service)):
    return plan_response(service.get_plan(plan_id))


@router.put("/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: int,
    body: PlanUpdate,
    caller: Caller = Depends(require_role("provider", "admin")),
    service: PlanService = Depends(get_plan_service),
):
    """Update a plan; returns the new version when a sold plan's pricing or format changed"""
    return plan_response(service.update_plan(plan_id, body, caller))


@router.post("/{plan_id}/deactivate", response_model=PlanResponse)
async def deactivate_plan(
    plan_id: int,
    caller: Caller = Depends(require_role("provider", "admin")),
    service: PlanService = Depends(get_plan_service),
):
    return plan_response(service.deactivate_plan(plan_id, caller))


@router.put("/{plan_id}/group-slot", response_model=PlanResponse)
async def reschedule_group_slot(
    plan_id: int,
    body: GroupSlotUpdate,
    caller: Caller = Depends(require_role("provider")),
    db: Session = Depends(get_db),
):
    """Move the recurring slot of a dynamic group plan"""
    plan = SchedulingService(db).reschedule_plan_slot(
        plan_id, caller, body.session_date, body.start_time, body.end_time
    )
    return plan_response(plan)
