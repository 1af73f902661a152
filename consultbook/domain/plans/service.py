"""Plan catalog service - plan definitions and their versioning"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import Caller
from ...config import MAX_SESSION_MINUTES, MIN_SESSION_MINUTES, SLOT_STEP_MINUTES
from ...errors import NotFoundError, PermissionDeniedError, ValidationError
from ...models import Plan
from ...utils.time_calculator import minutes_between
from .repository import PlanRepository
from .schemas import PlanCreate, PlanUpdate

logger = logging.getLogger(__name__)

# Changing any of these on a plan that has been sold creates a new version
COMMERCIAL_FIELDS = (
    "session_format",
    "duration_minutes",
    "price",
    "sessions_per_month",
    "monthly_price",
)
MAX_SESSIONS_PER_MONTH = 100


def price_per_session(plan: Plan) -> float:
    """Per-session price snapshot for an appointment booked under the plan"""
    if plan.kind == "monthly":
        return round(float(plan.monthly_price) / plan.sessions_per_month, 2)
    return round(float(plan.price or 0), 2)


def validate_plan_fields(fields: dict) -> None:
    """Raise ValidationError unless the plan definition is internally consistent"""
    kind = fields.get("kind")
    duration = fields.get("duration_minutes")

    if duration is None or duration < MIN_SESSION_MINUTES or duration > MAX_SESSION_MINUTES:
        raise ValidationError(
            f"duration_minutes must be between {MIN_SESSION_MINUTES} and {MAX_SESSION_MINUTES}",
            code="invalid_duration",
        )
    if duration % SLOT_STEP_MINUTES:
        raise ValidationError(f"duration_minutes must be a multiple of {SLOT_STEP_MINUTES}", code="invalid_duration")
    if fields.get("session_format") not in ("one_to_one", "one_to_many"):
        raise ValidationError("session_format is required", code="invalid_plan")

    if kind == "monthly":
        sessions = fields.get("sessions_per_month")
        if sessions is None or sessions < 1 or sessions > MAX_SESSIONS_PER_MONTH:
            raise ValidationError(
                f"sessions_per_month must be between 1 and {MAX_SESSIONS_PER_MONTH}", code="invalid_plan"
            )
        if fields.get("monthly_price") is None or fields["monthly_price"] < 0:
            raise ValidationError("monthly_price is required for monthly plans", code="invalid_plan")
    elif kind == "single":
        if fields.get("price") is None or fields["price"] < 0:
            raise ValidationError("price is required for single-session plans", code="invalid_plan")
    else:
        raise ValidationError("kind must be 'single' or 'monthly'", code="invalid_plan")

    slot = [fields.get("group_session_date"), fields.get("group_start_time"), fields.get("group_end_time")]
    if any(slot):
        if not all(slot):
            raise ValidationError("Group slot needs a date, start time and end time", code="invalid_plan")
        if kind != "monthly" or fields.get("session_format") != "one_to_many":
            raise ValidationError("Only one-to-many monthly plans carry a group slot", code="invalid_plan")
        if minutes_between(fields["group_start_time"], fields["group_end_time"]) <= 0:
            raise ValidationError("End time must be after start time", code="invalid_time_range")


class PlanService:
    """Service layer for the plan catalog"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = PlanRepository()

    def get_plan(self, plan_id: int) -> Plan:
        plan = self.repo.get_plan(self.db, plan_id)
        if not plan:
            raise NotFoundError("Plan not found", code="plan_not_found")
        return plan

    def get_owned_plan(self, plan_id: int, caller: Caller) -> Plan:
        plan = self.get_plan(plan_id)
        if plan.provider_id != caller.id and not caller.is_admin:
            raise PermissionDeniedError("Only the plan's provider can change it")
        return plan

    def list_provider_plans(self, provider_id: str, active_only: bool = True) -> list[Plan]:
        return self.repo.get_provider_plans(self.db, provider_id, active_only)

    def create_plan(self, data: PlanCreate, caller: Caller) -> Plan:
        fields = data.model_dump()
        validate_plan_fields(fields)
        if fields["kind"] == "single":
            fields.update(sessions_per_month=None, monthly_price=None)
        else:
            fields["price"] = None

        plan = self.repo.create_plan(self.db, provider_id=caller.id, **fields)
        logger.info(f"✅ Plan {plan.id} ({plan.kind}) created for provider {caller.id}")
        return plan

    def update_plan(self, plan_id: int, data: PlanUpdate, caller: Caller) -> Plan:
        """
        Update a plan.

        Commercial changes to a plan that appointments or ledger entries already
        reference create a new row; the old one is deactivated and points at it.
        """
        plan = self.get_owned_plan(plan_id, caller)
        if plan.superseded_by_id:
            raise ValidationError("Plan has been replaced by a newer version", code="plan_superseded")

        updates = data.model_dump(exclude_unset=True)
        commercial = {k: v for k, v in updates.items() if k in COMMERCIAL_FIELDS and v != getattr(plan, k)}

        merged = {column: getattr(plan, column) for column in self._definition_columns()}
        merged.update(updates)
        validate_plan_fields(merged)

        if commercial and self.repo.is_referenced(self.db, plan.id):
            return self._create_version(plan, merged)

        for key, value in updates.items():
            setattr(plan, key, value)
        self.db.commit()
        self.db.refresh(plan)
        logger.info(f"✅ Plan {plan.id} updated in place")
        return plan

    def _create_version(self, plan: Plan, merged: dict) -> Plan:
        merged.pop("is_active", None)
        successor = Plan(provider_id=plan.provider_id, is_active=True, **merged)
        self.db.add(successor)
        self.db.flush()

        plan.is_active = False
        plan.superseded_by_id = successor.id
        self.db.commit()
        self.db.refresh(successor)
        logger.info(f"🔄 Plan {plan.id} superseded by version {successor.id}")
        return successor

    @staticmethod
    def _definition_columns() -> tuple:
        return (
            "name",
            "description",
            "kind",
            "is_active",
            "group_session_date",
            "group_start_time",
            "group_end_time",
        ) + COMMERCIAL_FIELDS

    def deactivate_plan(self, plan_id: int, caller: Caller) -> Plan:
        plan = self.get_owned_plan(plan_id, caller)
        plan.is_active = False
        self.db.commit()
        self.db.refresh(plan)
        return plan


def plan_response(plan: Plan, per_session: Optional[float] = None) -> dict:
    data = {column.name: getattr(plan, column.name) for column in Plan.__table__.columns}
    data.pop("updated_at", None)
    data["price_per_session"] = per_session if per_session is not None else price_per_session(plan)
    return data
