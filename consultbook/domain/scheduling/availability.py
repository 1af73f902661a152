"""
Slot availability checker

Pure reads: decides whether a provider can take a session at a given time.
Ranges are half-open [start, end), so back-to-back sessions never collide.
"""

from datetime import date
from typing import Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ...errors import ConflictError
from ...models import Appointment, Plan
from ...utils.time_calculator import format_hhmm, overlaps, parse_hhmm
from ..providers.repository import ProviderScheduleRepository
from ..providers.service import open_ranges
from .state_machine import LIVE_STATUSES


def _blocks(candidate_format: str, existing_format: str) -> bool:
    """Group bookings share a provider's time with each other, never with a private session"""
    return not (candidate_format == "one_to_many" and existing_format == "one_to_many")


def _live_bookings(db: Session, provider_id: str, session_date: date, exclude_id: Optional[int] = None):
    """Live appointments on the date, dynamic group ones resolved through their plan's slot"""
    query = (
        db.query(Appointment)
        .outerjoin(Plan, Appointment.plan_id == Plan.id)
        .filter(
            Appointment.provider_id == provider_id,
            Appointment.status.in_(LIVE_STATUSES),
            or_(
                and_(Appointment.is_dynamic_group.is_(False), Appointment.session_date == session_date),
                and_(Appointment.is_dynamic_group.is_(True), Plan.group_session_date == session_date),
            ),
        )
    )
    if exclude_id is not None:
        query = query.filter(Appointment.id != exclude_id)
    return query.all()


def find_conflicts(
    db: Session,
    provider_id: str,
    session_date: date,
    start_time: str,
    end_time: str,
    session_format: str = "one_to_one",
    exclude_id: Optional[int] = None,
) -> list[Appointment]:
    """Live appointments of the provider that collide with [start_time, end_time)"""
    start, end = parse_hhmm(start_time), parse_hhmm(end_time)
    conflicts = []
    for booking in _live_bookings(db, provider_id, session_date, exclude_id):
        b_start, b_end = booking.effective_start_time, booking.effective_end_time
        if not b_start or not b_end:
            continue
        if not _blocks(session_format, booking.session_format):
            continue
        if overlaps(start, end, parse_hhmm(b_start), parse_hhmm(b_end)):
            conflicts.append(booking)
    return conflicts


def is_slot_available(db: Session, provider_id: str, session_date: date, start_time: str, end_time: str, **kwargs) -> bool:
    return not find_conflicts(db, provider_id, session_date, start_time, end_time, **kwargs)


def ensure_slot_available(
    db: Session,
    provider_id: str,
    session_date: date,
    start_time: str,
    end_time: str,
    session_format: str = "one_to_one",
    exclude_id: Optional[int] = None,
) -> None:
    if find_conflicts(db, provider_id, session_date, start_time, end_time, session_format, exclude_id):
        raise ConflictError(
            f"Provider already has a session overlapping {start_time}-{end_time} on {session_date.isoformat()}",
            code="slot_unavailable",
        )


def free_intervals(
    db: Session,
    provider_id: str,
    session_date: date,
    window_start: Optional[str] = None,
    window_end: Optional[str] = None,
    slot_minutes: int = 30,
    session_format: str = "one_to_one",
) -> list[dict]:
    """
    Free slots of slot_minutes length inside the provider's open hours for the day.

    An optional window narrows the open ranges. Slots step back to back from the
    start of each range; a provider without a schedule has no slots.
    """
    ranges = open_ranges(ProviderScheduleRepository.get_schedule(db, provider_id), session_date)
    lower = parse_hhmm(window_start) if window_start else 0
    upper = parse_hhmm(window_end) if window_end else 24 * 60

    busy = [
        (parse_hhmm(b.effective_start_time), parse_hhmm(b.effective_end_time))
        for b in _live_bookings(db, provider_id, session_date)
        if b.effective_start_time and b.effective_end_time and _blocks(session_format, b.session_format)
    ]

    slots = []
    for range_start, range_end in ranges:
        cursor, limit = max(range_start, lower), min(range_end, upper)
        while cursor + slot_minutes <= limit:
            slot_end = cursor + slot_minutes
            if not any(overlaps(cursor, slot_end, b_start, b_end) for b_start, b_end in busy):
                slots.append({"start_time": format_hhmm(cursor), "end_time": format_hhmm(slot_end)})
            cursor = slot_end
    return slots
