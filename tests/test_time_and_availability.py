import random
from datetime import date

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import CLIENT, NOW, PROVIDER, SESSION_DAY
from consultbook.auth import Caller
from consultbook.domain.providers.schemas import ScheduleUpdate
from consultbook.domain.providers.service import ProviderService
from consultbook.domain.scheduling.availability import find_conflicts, free_intervals, is_slot_available
from consultbook.domain.scheduling.schemas import BookingRequest, RescheduleRequest
from consultbook.domain.scheduling.service import SchedulingService, resolve_session_times
from consultbook.errors import ConflictError, PermissionDeniedError, StateTransitionError, ValidationError
from consultbook.models import Appointment
from consultbook.utils.time_calculator import (
    add_minutes,
    format_hhmm,
    overlaps,
    parse_hhmm,
    validate_time_range,
)


def _book(db, start, duration=30, client=CLIENT, day=SESSION_DAY):
    return SchedulingService(db).book_single(
        client,
        BookingRequest(provider_id=PROVIDER.id, session_date=day, start_time=start, duration_minutes=duration),
        now=NOW,
    )


def test_parse_and_format_round_trip_edges():
    assert parse_hhmm("00:00") == 0
    assert parse_hhmm("23:59") == 1439
    assert format_hhmm(615) == "10:15"
    assert add_minutes("10:00", 30) == "10:30"


@pytest.mark.parametrize("value", ["24:00", "9:60", "", "10-00", None])
def test_parse_rejects_malformed_times(value):
    with pytest.raises(ValidationError):
        parse_hhmm(value)


def test_session_cannot_cross_midnight():
    with pytest.raises(ValidationError) as exc:
        add_minutes("23:45", 30)
    assert exc.value.code == "invalid_time_range"


def test_time_range_requires_end_after_start():
    with pytest.raises(ValidationError) as exc:
        validate_time_range("10:30", "10:00", 30, 5)
    assert exc.value.code == "invalid_time_range"

    with pytest.raises(ValidationError):
        validate_time_range("10:00", "10:00", None, 5)


def test_time_range_duration_tolerance():
    assert validate_time_range("10:00", "10:33", 30, 5) == 33
    with pytest.raises(ValidationError) as exc:
        validate_time_range("10:00", "10:40", 30, 5)
    assert exc.value.code == "duration_mismatch"


def test_resolve_session_times_bounds():
    assert resolve_session_times("10:00", 45) == ("10:45", 45)
    for bad in (10, 500, 40):
        with pytest.raises(ValidationError) as exc:
            resolve_session_times("10:00", bad)
        assert exc.value.code == "invalid_duration"


def test_adjacent_ranges_do_not_overlap():
    assert not overlaps(600, 630, 630, 660)
    assert overlaps(600, 630, 615, 645)
    assert overlaps(600, 660, 615, 630)


def test_overlap_matches_brute_force_minutes():
    rng = random.Random(20250110)
    for _ in range(2000):
        a_start = rng.randrange(0, 1400)
        a_end = a_start + rng.randrange(1, 40)
        b_start = rng.randrange(0, 1400)
        b_end = b_start + rng.randrange(1, 40)
        shared = set(range(a_start, a_end)) & set(range(b_start, b_end))
        assert overlaps(a_start, a_end, b_start, b_end) == bool(shared)


def test_accepted_bookings_never_overlap(db):
    """Random booking attempts: whatever the checker lets through is pairwise disjoint"""
    rng = random.Random(7)
    clients = [Caller(id=f"client-{i}", role="client") for i in range(40)]
    for client in clients:
        start = format_hhmm(rng.randrange(8 * 4, 18 * 4) * 15)
        try:
            _book(db, start, duration=rng.choice((15, 30, 45, 60)), client=client)
        except ConflictError:
            pass

    booked = db.query(Appointment).filter(Appointment.provider_id == PROVIDER.id).all()
    assert booked
    spans = sorted((parse_hhmm(a.start_time), parse_hhmm(a.end_time)) for a in booked)
    for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
        assert prev_end <= next_start


def test_scenario_b_overlap_rejected_adjacent_accepted(db):
    _book(db, "10:00")

    with pytest.raises(ConflictError) as exc:
        _book(db, "10:15", client=Caller(id="client-2", role="client"))
    assert exc.value.code == "slot_unavailable"
    assert exc.value.retryable

    adjacent = _book(db, "10:30", client=Caller(id="client-2", role="client"))
    assert adjacent.status == "pending"
    assert adjacent.end_time == "11:00"


def test_cancelled_booking_frees_the_slot(db):
    first = _book(db, "10:00")
    SchedulingService(db).cancel(first.id, CLIENT, now=NOW)
    assert is_slot_available(db, PROVIDER.id, SESSION_DAY, "10:00", "10:30")
    assert _book(db, "10:00", client=Caller(id="client-3", role="client")).status == "pending"


def test_group_sessions_share_time_but_block_private_sessions(db, group_plan):
    assert find_conflicts(db, PROVIDER.id, SESSION_DAY, "18:00", "19:00", "one_to_many") == []

    db.add(
        Appointment(
            client_id="client-9",
            provider_id=PROVIDER.id,
            session_format="one_to_many",
            status="confirmed",
            plan_id=group_plan.id,
            is_dynamic_group=True,
            payment_status="paid",
        )
    )
    db.commit()

    assert find_conflicts(db, PROVIDER.id, SESSION_DAY, "18:30", "19:00", "one_to_many") == []
    assert len(find_conflicts(db, PROVIDER.id, SESSION_DAY, "18:30", "19:00", "one_to_one")) == 1
    assert is_slot_available(db, PROVIDER.id, date(2025, 1, 11), "18:30", "19:00")


def test_free_intervals_skip_booked_time(db):
    _book(db, "10:00", duration=60)
    slots = free_intervals(db, PROVIDER.id, SESSION_DAY, "09:00", "12:00", slot_minutes=30)
    starts = [s["start_time"] for s in slots]
    assert starts == ["09:00", "09:30", "11:00", "11:30"]


def _publish(db, weekly_hours, hourly_rate=0.0, provider=PROVIDER):
    return ProviderService(db).set_schedule(
        provider, ScheduleUpdate(hourly_rate=hourly_rate, weekly_hours=weekly_hours)
    )


def test_bookings_must_fit_inside_open_hours(db):
    # SESSION_DAY is a Friday
    _publish(db, {"friday": [{"start_time": "09:00", "end_time": "12:00"}, {"start_time": "14:00", "end_time": "17:00"}]})

    assert _book(db, "11:30").end_time == "12:00"
    for start in ("03:00", "11:45", "12:30"):
        with pytest.raises(ValidationError) as exc:
            _book(db, start)
        assert exc.value.code == "outside_hours"

    with pytest.raises(ValidationError) as exc:
        _book(db, "10:00", day=date(2025, 1, 11))
    assert exc.value.code == "day_closed"


def test_provider_without_schedule_cannot_be_booked(db):
    with pytest.raises(ValidationError) as exc:
        SchedulingService(db).book_single(
            CLIENT,
            BookingRequest(provider_id="provider-2", session_date=SESSION_DAY, start_time="10:00", duration_minutes=30),
            now=NOW,
        )
    assert exc.value.code == "provider_unavailable"
    assert free_intervals(db, "provider-2", SESSION_DAY) == []


def test_reschedule_must_fit_inside_open_hours(db):
    appointment = _book(db, "10:00")
    with pytest.raises(ValidationError) as exc:
        SchedulingService(db).reschedule(
            appointment.id, CLIENT, RescheduleRequest(session_date=SESSION_DAY, start_time="21:00"), now=NOW
        )
    assert exc.value.code == "outside_hours"

    db.refresh(appointment)
    assert appointment.start_time == "10:00"


def test_free_intervals_follow_published_hours(db):
    _publish(db, {"friday": [{"start_time": "09:00", "end_time": "10:00"}, {"start_time": "15:00", "end_time": "16:00"}]})
    starts = [s["start_time"] for s in free_intervals(db, PROVIDER.id, SESSION_DAY)]
    assert starts == ["09:00", "09:30", "15:00", "15:30"]

    narrowed = free_intervals(db, PROVIDER.id, SESSION_DAY, "09:30", "15:30")
    assert [s["start_time"] for s in narrowed] == ["09:30", "15:00"]
    assert free_intervals(db, PROVIDER.id, date(2025, 1, 11)) == []


def test_direct_booking_is_priced_from_hourly_rate(db):
    _publish(db, {"friday": [{"start_time": "08:00", "end_time": "20:00"}]}, hourly_rate=1200)
    appointment = _book(db, "10:00", duration=45)
    assert appointment.price == 900.0
    assert appointment.payment_required

    with pytest.raises(StateTransitionError) as exc:
        SchedulingService(db).accept(appointment.id, PROVIDER, now=NOW)
    assert exc.value.code == "awaiting_payment"


def test_free_provider_bookings_need_no_payment(db):
    appointment = _book(db, "10:00")
    assert appointment.price == 0.0
    assert not appointment.payment_required


def test_schedule_rejects_overlapping_or_unknown_days():
    with pytest.raises(PydanticValidationError):
        ScheduleUpdate(
            weekly_hours={"monday": [{"start_time": "09:00", "end_time": "11:00"}, {"start_time": "10:00", "end_time": "12:00"}]}
        )
    with pytest.raises(PydanticValidationError):
        ScheduleUpdate(weekly_hours={"someday": [{"start_time": "09:00", "end_time": "11:00"}]})
    with pytest.raises(PydanticValidationError):
        ScheduleUpdate(weekly_hours={"monday": [{"start_time": "11:00", "end_time": "09:00"}]})

    adjacent = ScheduleUpdate(
        weekly_hours={"Monday": [{"start_time": "13:00", "end_time": "15:00"}, {"start_time": "09:00", "end_time": "13:00"}]}
    )
    assert [r.start_time for r in adjacent.weekly_hours["monday"]] == ["09:00", "13:00"]


def test_only_providers_publish_hours(db):
    with pytest.raises(PermissionDeniedError):
        _publish(db, {}, provider=CLIENT)
