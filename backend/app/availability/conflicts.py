"""
Conflict classification between a candidate slot and existing bookings.

Precedence for a single booking: direct overlap, then buffer violation,
then setup conflict. CONFIRMED bookings produce hard conflicts; PENDING
bookings produce advisory conflicts that are reported but never make a
slot unavailable, except when the candidate starts at the same minute: the
active-slot unique index reserves that start for the PENDING row. CANCELLED
and COMPLETED bookings are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, ClassVar, Iterable, Sequence

from app.availability.settings import EngineSettings
from app.availability.slots import TimeSlot, generate_slots
from app.availability.store import BookingSnapshot


@dataclass(frozen=True)
class ConflictPolicy:
    buffer_minutes: int
    setup_lead_minutes: int
    multi_service_setup_extra_minutes: int = 0

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "ConflictPolicy":
        return cls(
            buffer_minutes=settings.buffer_minutes,
            setup_lead_minutes=settings.setup_lead_minutes,
            multi_service_setup_extra_minutes=settings.multi_service_setup_extra_minutes,
        )

    def buffer_for(self, booking: BookingSnapshot) -> int:
        if booking.buffer_minutes is not None:
            return booking.buffer_minutes
        return self.buffer_minutes

    def setup_lead_for(self, booking: BookingSnapshot) -> int:
        if booking.setup_lead_minutes is not None:
            return booking.setup_lead_minutes
        if len(booking.services) >= 3:
            return self.setup_lead_minutes + self.multi_service_setup_extra_minutes
        return self.setup_lead_minutes


@dataclass(frozen=True)
class NoConflict:
    booking_id: int

    kind: ClassVar[str] = "none"


@dataclass(frozen=True)
class DirectOverlap:
    booking_id: int
    booking_slot: TimeSlot
    hard: bool
    overlap_minutes: int

    kind: ClassVar[str] = "direct-overlap"


@dataclass(frozen=True)
class BufferViolation:
    booking_id: int
    booking_slot: TimeSlot
    hard: bool
    gap_minutes: int
    required_minutes: int

    kind: ClassVar[str] = "buffer-violation"


@dataclass(frozen=True)
class SetupConflict:
    booking_id: int
    booking_slot: TimeSlot
    hard: bool
    gap_minutes: int
    setup_lead_minutes: int

    kind: ClassVar[str] = "setup-conflict"


Conflict = DirectOverlap | BufferViolation | SetupConflict
ConflictResult = NoConflict | Conflict


@dataclass(frozen=True)
class SlotAvailability:
    slot: TimeSlot
    available: bool
    conflicts: tuple[Conflict, ...] = ()
    blocked_reason: str | None = None

    @property
    def buffer_violations(self) -> tuple[BufferViolation, ...]:
        return tuple(c for c in self.conflicts if isinstance(c, BufferViolation))


@dataclass(frozen=True)
class DayRecord:
    date: date
    slots: tuple[SlotAvailability, ...]
    blocked_reason: str | None = None

    def by_slot(self) -> dict[TimeSlot, SlotAvailability]:
        return {item.slot: item for item in self.slots}


def classify_booking(
    candidate: TimeSlot,
    booking: BookingSnapshot,
    policy: ConflictPolicy,
) -> ConflictResult:
    if booking.event_date != candidate.date or not booking.constrains:
        return NoConflict(booking_id=booking.id)

    booking_slot = TimeSlot(booking.event_date, booking.start_minute, booking.end_minute)
    overlap = min(candidate.end_minute, booking.end_minute) - max(
        candidate.start_minute, booking.start_minute
    )
    if overlap > 0:
        return DirectOverlap(
            booking_id=booking.id,
            booking_slot=booking_slot,
            hard=booking.is_hard or booking.start_minute == candidate.start_minute,
            overlap_minutes=overlap,
        )

    ends_before = candidate.end_minute <= booking.start_minute
    if ends_before:
        gap = booking.start_minute - candidate.end_minute
    else:
        gap = candidate.start_minute - booking.end_minute

    required = policy.buffer_for(booking)
    if gap < required:
        return BufferViolation(
            booking_id=booking.id,
            booking_slot=booking_slot,
            hard=booking.is_hard,
            gap_minutes=gap,
            required_minutes=required,
        )

    lead = policy.setup_lead_for(booking)
    if ends_before and gap < lead:
        return SetupConflict(
            booking_id=booking.id,
            booking_slot=booking_slot,
            hard=booking.is_hard,
            gap_minutes=gap,
            setup_lead_minutes=lead,
        )

    return NoConflict(booking_id=booking.id)


def classify(
    candidate: TimeSlot,
    bookings: Iterable[BookingSnapshot],
    policy: ConflictPolicy,
) -> list[Conflict]:
    ordered = sorted(bookings, key=lambda b: (b.event_date, b.start_minute, b.id))
    conflicts: list[Conflict] = []
    for booking in ordered:
        result = classify_booking(candidate, booking, policy)
        if not isinstance(result, NoConflict):
            conflicts.append(result)
    return conflicts


def is_available(conflicts: Sequence[Conflict]) -> bool:
    return not any(conflict.hard for conflict in conflicts)


def hard_conflicts(conflicts: Sequence[Conflict]) -> list[Conflict]:
    return [conflict for conflict in conflicts if conflict.hard]


def build_day_record(
    target_date: date,
    bookings: Iterable[BookingSnapshot],
    policy: ConflictPolicy,
    settings: EngineSettings,
) -> DayRecord:
    same_day = [b for b in bookings if b.event_date == target_date]
    slots = []
    for slot in generate_slots(target_date, settings):
        conflicts = classify(slot, same_day, policy)
        slots.append(
            SlotAvailability(
                slot=slot,
                available=is_available(conflicts),
                conflicts=tuple(conflicts),
            )
        )
    return DayRecord(date=target_date, slots=tuple(slots))


def conflict_to_dict(
    conflict: Conflict,
    alternatives: Sequence[TimeSlot] = (),
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "type": conflict.kind,
        "booking_id": conflict.booking_id,
        "severity": "hard" if conflict.hard else "advisory",
        "conflicting_interval": {
            "start": conflict.booking_slot.start,
            "end": conflict.booking_slot.end,
        },
        "suggested_alternatives": [slot.to_dict() for slot in alternatives],
    }
    if isinstance(conflict, DirectOverlap):
        payload["overlap_minutes"] = conflict.overlap_minutes
    elif isinstance(conflict, BufferViolation):
        payload["gap_minutes"] = conflict.gap_minutes
        payload["required_minutes"] = conflict.required_minutes
    elif isinstance(conflict, SetupConflict):
        payload["gap_minutes"] = conflict.gap_minutes
        payload["setup_lead_minutes"] = conflict.setup_lead_minutes
    else:
        raise TypeError(f"Unhandled conflict type: {type(conflict).__name__}")
    return payload


def slot_availability_to_dict(item: SlotAvailability) -> dict[str, Any]:
    return {
        "start": item.slot.start,
        "end": item.slot.end,
        "available": item.available,
        "blocked_reason": item.blocked_reason,
        "conflicts": [conflict_to_dict(c) for c in item.conflicts],
        "buffer_violations": [c.booking_id for c in item.buffer_violations],
    }
