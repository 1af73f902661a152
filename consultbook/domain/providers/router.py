"""Provider router - published weekly hours"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ...auth import Caller, require_role
from ...database import get_db
from .schemas import ScheduleResponse, ScheduleUpdate
from .service import ProviderService

router = APIRouter(prefix="/providers", tags=["Providers"])


def get_provider_service(db: Session = Depends(get_db)) -> ProviderService:
    """Dependency injection for ProviderService"""
    return ProviderService(db)


@router.put("/me/schedule", response_model=ScheduleResponse)
async def set_my_schedule(
    body: ScheduleUpdate,
    caller: Caller = Depends(require_role("provider")),
    service: ProviderService = Depends(get_provider_service),
):
    return service.set_schedule(caller, body)


@router.get("/{provider_id}/schedule", response_model=ScheduleResponse)
async def get_schedule(provider_id: str, service: ProviderService = Depends(get_provider_service)):
    return service.get_schedule(provider_id)
