from datetime import date

import pytest

from app.availability.conflicts import (
    BufferViolation,
    ConflictPolicy,
    DirectOverlap,
    NoConflict,
    SetupConflict,
    build_day_record,
    classify,
    classify_booking,
    conflict_to_dict,
    is_available,
)
from app.availability.settings import EngineSettings
from app.availability.store import BookingSnapshot
from app.availability.slots import TimeSlot


EVENT_DAY = date(2024, 2, 15)
POLICY = ConflictPolicy(buffer_minutes=30, setup_lead_minutes=60, multi_service_setup_extra_minutes=30)


def _booking(booking_id=1, start="14:00", end="18:00", status="CONFIRMED", **overrides):
    start_h, start_m = (int(part) for part in start.split(":"))
    end_h, end_m = (int(part) for part in end.split(":"))
    values = {
        "id": booking_id,
        "event_date": EVENT_DAY,
        "start_minute": start_h * 60 + start_m,
        "end_minute": end_h * 60 + end_m,
        "services": ("DJ",),
        "status": status,
    }
    values.update(overrides)
    return BookingSnapshot(**values)


def _slot(start, end, day=EVENT_DAY):
    start_h, start_m = (int(part) for part in start.split(":"))
    end_h, end_m = (int(part) for part in end.split(":"))
    return TimeSlot(day, start_h * 60 + start_m, end_h * 60 + end_m)


def test_request_inside_confirmed_booking_is_direct_overlap():
    result = classify_booking(_slot("15:00", "17:00"), _booking(), POLICY)

    assert isinstance(result, DirectOverlap)
    assert result.hard is True
    assert result.overlap_minutes == 120


def test_adjacent_request_is_buffer_violation_not_overlap():
    result = classify_booking(_slot("13:30", "14:00"), _booking(), POLICY)

    assert isinstance(result, BufferViolation)
    assert result.gap_minutes == 0
    assert result.required_minutes == 30


def test_gap_within_setup_lead_is_setup_conflict():
    result = classify_booking(_slot("11:00", "13:15"), _booking(), POLICY)

    assert isinstance(result, SetupConflict)
    assert result.gap_minutes == 45
    assert result.setup_lead_minutes == 60


def test_setup_lead_only_applies_before_the_booking():
    result = classify_booking(_slot("18:45", "20:00"), _booking(), POLICY)

    assert isinstance(result, NoConflict)


def test_buffer_applies_after_the_booking():
    result = classify_booking(_slot("18:15", "20:00"), _booking(), POLICY)

    assert isinstance(result, BufferViolation)
    assert result.gap_minutes == 15


def test_gap_exactly_equal_to_buffer_is_not_a_violation():
    result = classify_booking(_slot("18:30", "20:00"), _booking(), POLICY)

    assert isinstance(result, NoConflict)


def test_pending_booking_yields_advisory_conflict():
    conflicts = classify(_slot("15:00", "17:00"), [_booking(status="PENDING")], POLICY)

    assert len(conflicts) == 1
    assert conflicts[0].hard is False
    assert is_available(conflicts)
    assert conflict_to_dict(conflicts[0])["severity"] == "advisory"


@pytest.mark.parametrize("status", ["CANCELLED", "COMPLETED"])
def test_inactive_bookings_are_ignored(status):
    assert classify(_slot("15:00", "17:00"), [_booking(status=status)], POLICY) == []


def test_other_dates_never_conflict():
    booking = _booking(event_date=date(2024, 2, 16))

    assert classify(_slot("15:00", "17:00"), [booking], POLICY) == []


def test_per_booking_buffer_override_wins():
    booking = _booking(buffer_minutes=0, setup_lead_minutes=0)

    assert classify(_slot("12:00", "14:00"), [booking], POLICY) == []


def test_multi_service_booking_extends_setup_lead():
    booking = _booking(services=("DJ", "KARAOKE", "PHOTOGRAPHY"))

    result = classify_booking(_slot("10:00", "12:45"), booking, POLICY)

    assert isinstance(result, SetupConflict)
    assert result.setup_lead_minutes == 90


def test_classify_orders_conflicts_chronologically():
    morning = _booking(booking_id=7, start="09:00", end="11:00")
    evening = _booking(booking_id=3, start="12:00", end="16:00")

    conflicts = classify(_slot("10:30", "13:00"), [evening, morning], POLICY)

    assert [c.booking_id for c in conflicts] == [7, 3]
    assert not is_available(conflicts)


def test_conflict_to_dict_carries_interval_and_alternatives():
    conflict = classify_booking(_slot("15:00", "17:00"), _booking(), POLICY)
    alternative = _slot("18:30", "20:30")

    payload = conflict_to_dict(conflict, [alternative])

    assert payload["type"] == "direct-overlap"
    assert payload["conflicting_interval"] == {"start": "14:00", "end": "18:00"}
    assert payload["suggested_alternatives"] == [
        {"date": "2024-02-15", "start": "18:30", "end": "20:30"}
    ]


def test_day_record_marks_slots_around_confirmed_booking():
    settings = EngineSettings(business_hours={3: (8, 23)})

    record = build_day_record(EVENT_DAY, [_booking()], POLICY, settings)
    by_start = {item.slot.start: item for item in record.slots}

    assert by_start["15:00"].available is False
    assert by_start["13:45"].available is False
    assert [v.booking_id for v in by_start["13:45"].buffer_violations] == [1]
    assert by_start["18:15"].available is False
    assert by_start["18:30"].available is True
    assert by_start["08:00"].available is True


def test_pending_booking_at_same_start_is_hard():
    conflicts = classify(_slot("14:00", "16:00"), [_booking(status="PENDING")], POLICY)

    assert isinstance(conflicts[0], DirectOverlap)
    assert conflicts[0].hard is True
    assert not is_available(conflicts)


def test_pending_booking_at_shifted_start_stays_advisory():
    conflicts = classify(_slot("14:15", "16:15"), [_booking(status="PENDING")], POLICY)

    assert conflicts[0].hard is False
    assert is_available(conflicts)
