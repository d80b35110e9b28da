from __future__ import annotations

import logging
import secrets
import string
import time as time_module
from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.availability.admission import AdmissionGate
from app.availability.engine import AvailabilityEngine, SlotCheck
from app.availability.errors import SlotTaken
from app.availability.slots import (
    DateRange,
    minutes_to_time,
    minutes_to_time_str,
    normalize_services,
    parse_clock_time,
)
from app.db.models import Booking, CalendarBlock


logger = logging.getLogger("bookingengine.bookings")

ADMISSION_ACTION = "booking_create"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
BookingStatus = Literal["PENDING", "CONFIRMED", "COMPLETED", "CANCELLED"]


class CreateBookingArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    client_name: str = Field(min_length=1, max_length=255)
    client_email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    client_phone: str | None = Field(default=None, max_length=32)
    event_type: str = Field(min_length=1, max_length=100)
    event_date: date
    start_time: str = Field(min_length=1)
    end_time: str = Field(min_length=1)
    services: list[str] = Field(min_length=1)
    notes: str | None = None


class AdminCreateBookingArgs(CreateBookingArgs):
    status: BookingStatus = "PENDING"
    buffer_minutes: int | None = Field(default=None, ge=0)
    setup_lead_minutes: int | None = Field(default=None, ge=0)


class UpdateBookingArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: BookingStatus | None = None
    event_date: date | None = None
    start_time: str | None = None
    end_time: str | None = None
    services: list[str] | None = Field(default=None, min_length=1)
    buffer_minutes: int | None = Field(default=None, ge=0)
    setup_lead_minutes: int | None = Field(default=None, ge=0)
    notes: str | None = None

    @model_validator(mode="after")
    def validate_changes_present(self) -> "UpdateBookingArgs":
        if not self.model_fields_set:
            raise ValueError("At least one change is required.")
        return self


class BlockDateArgs(BaseModel):
    reason: str | None = Field(default=None, max_length=255)


def map_validation_error(error: ValidationError) -> dict[str, str]:
    return {
        "error_code": "INVALID_ARGS",
        "human_message": f"Invalid args: {error.errors()[0]['msg']}",
    }


def parse_create_booking_args(raw_args: dict[str, Any]) -> CreateBookingArgs:
    return CreateBookingArgs.model_validate(raw_args)


def parse_admin_create_booking_args(raw_args: dict[str, Any]) -> AdminCreateBookingArgs:
    return AdminCreateBookingArgs.model_validate(raw_args)


def parse_update_booking_args(raw_args: dict[str, Any]) -> UpdateBookingArgs:
    return UpdateBookingArgs.model_validate(raw_args)


def generate_booking_reference() -> str:
    timestamp = str(int(time_module.time() * 1000))[-6:]
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(3))
    return f"DSE-{timestamp}-{suffix}"


def create_booking(
    db: Session,
    engine: AvailabilityEngine,
    gate: AdmissionGate | None,
    args: CreateBookingArgs,
    client_identifier: str,
) -> dict[str, Any]:
    """Admin callers pass gate=None and skip admission."""
    decision = gate.check(client_identifier, ADMISSION_ACTION) if gate is not None else None
    if decision is not None and not decision.allowed:
        return {
            "ok": False,
            "error_code": "RATE_LIMITED",
            "human_message": "Too many booking attempts. Please try again later.",
            "retry_after_seconds": decision.retry_after_seconds,
        }

    check = engine.check_slot(args.event_date, args.start_time, args.end_time, args.services)
    if not check.available:
        return _unavailable_response(check)

    status = getattr(args, "status", "PENDING")
    booking = Booking(
        booking_reference=generate_booking_reference(),
        client_name=args.client_name,
        client_email=args.client_email,
        client_phone=args.client_phone,
        event_type=args.event_type,
        event_date=args.event_date,
        start_time=minutes_to_time(check.slot.start_minute),
        end_time=minutes_to_time(check.slot.end_minute),
        services=list(check.services),
        status=status,
        buffer_minutes=getattr(args, "buffer_minutes", None),
        setup_lead_minutes=getattr(args, "setup_lead_minutes", None),
        notes=args.notes,
    )
    db.add(booking)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_slot_uniqueness_violation(exc):
            raise
        logger.info(
            "Slot taken at write time for %s %s-%s",
            args.event_date,
            check.slot.start,
            check.slot.end,
        )
        return _slot_taken_response(engine, args.event_date, args.start_time, args.end_time, args.services)

    engine.booking_mutated(
        [booking.event_date],
        {"event": "booking.created", "booking_id": booking.id, "status": booking.status},
    )

    response = {"ok": True, "data": {"booking": serialize_booking(booking)}}
    advisory = [c for c in check.to_dict()["conflicts"] if c["severity"] == "advisory"]
    if advisory:
        response["data"]["advisory_conflicts"] = advisory
    if decision is not None and decision.limited:
        response["data"]["admission"] = decision.to_dict()
    return response


def update_booking(
    db: Session,
    engine: AvailabilityEngine,
    booking_id: int,
    args: UpdateBookingArgs,
) -> dict[str, Any]:
    booking = db.get(Booking, booking_id)
    if booking is None:
        return _not_found()

    patch = args.model_dump(exclude_unset=True)
    old_date = booking.event_date
    new_date = patch.get("event_date") or booking.event_date
    new_start = patch.get("start_time") or booking.start_time
    new_end = patch.get("end_time") or booking.end_time
    new_services = patch.get("services") or booking.services
    new_status = patch.get("status") or booking.status

    moved = any(field in patch for field in ("event_date", "start_time", "end_time"))
    confirming = new_status == "CONFIRMED" and booking.status != "CONFIRMED"
    if new_status != "CANCELLED" and (moved or confirming):
        check = engine.check_slot(
            new_date,
            new_start,
            new_end,
            new_services,
            exclude_booking_id=booking.id,
        )
        if not check.available:
            return _unavailable_response(check)
        start_minute, end_minute = check.slot.start_minute, check.slot.end_minute
        new_services = list(check.services)
    else:
        start_minute = parse_clock_time(new_start)
        end_minute = parse_clock_time(new_end)
        new_services = list(normalize_services(new_services))

    booking.event_date = new_date
    booking.start_time = minutes_to_time(start_minute)
    booking.end_time = minutes_to_time(end_minute)
    booking.services = new_services
    booking.status = new_status
    for field in ("buffer_minutes", "setup_lead_minutes", "notes"):
        if field in patch:
            setattr(booking, field, patch[field])

    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if not _is_slot_uniqueness_violation(exc):
            raise
        return _slot_taken_response(
            engine,
            new_date,
            minutes_to_time_str(start_minute),
            minutes_to_time_str(end_minute),
            new_services,
            exclude_booking_id=booking_id,
        )

    engine.booking_mutated(
        {old_date, booking.event_date},
        {"event": "booking.updated", "booking_id": booking.id, "status": booking.status},
    )
    return {"ok": True, "data": {"booking": serialize_booking(booking)}}


def delete_booking(db: Session, engine: AvailabilityEngine, booking_id: int) -> dict[str, Any]:
    booking = db.get(Booking, booking_id)
    if booking is None:
        return _not_found()

    if booking.status == "CONFIRMED":
        return {
            "ok": False,
            "error_code": "BOOKING_CONFIRMED",
            "human_message": (
                "Cannot delete confirmed booking. Please cancel the booking first, then delete."
            ),
        }

    event_date = booking.event_date
    db.delete(booking)
    db.commit()

    engine.booking_mutated(
        [event_date],
        {"event": "booking.deleted", "booking_id": booking_id, "status": None},
    )
    return {"ok": True, "data": {"booking_id": booking_id, "deleted": True}}


def get_booking(db: Session, booking_id: int) -> Booking | None:
    return db.get(Booking, booking_id)


def list_bookings(db: Session, date_range: DateRange) -> list[Booking]:
    return (
        db.query(Booking)
        .filter(Booking.event_date >= date_range.start)
        .filter(Booking.event_date <= date_range.end)
        .order_by(Booking.event_date, Booking.start_time, Booking.id)
        .all()
    )


def block_date(
    db: Session,
    engine: AvailabilityEngine,
    target_date: date,
    args: BlockDateArgs,
) -> dict[str, Any]:
    block = _find_block(db, target_date)
    if block is None:
        db.add(CalendarBlock(blocked_date=target_date, reason=args.reason))
    else:
        block.reason = args.reason
    try:
        db.commit()
    except IntegrityError:
        # another request inserted the block first; update its reason instead
        db.rollback()
        block = _find_block(db, target_date)
        if block is None:
            raise
        block.reason = args.reason
        db.commit()

    engine.booking_mutated(
        [target_date],
        {"event": "calendar.blocked", "booking_id": None, "reason": args.reason},
    )
    return {
        "ok": True,
        "data": {"date": target_date.isoformat(), "available": False, "blocked_reason": args.reason},
    }


def _find_block(db: Session, target_date: date) -> CalendarBlock | None:
    return db.query(CalendarBlock).filter(CalendarBlock.blocked_date == target_date).first()


def unblock_date(db: Session, engine: AvailabilityEngine, target_date: date) -> dict[str, Any]:
    deleted = (
        db.query(CalendarBlock)
        .filter(CalendarBlock.blocked_date == target_date)
        .delete(synchronize_session=False)
    )
    db.commit()

    if deleted:
        engine.booking_mutated(
            [target_date],
            {"event": "calendar.unblocked", "booking_id": None},
        )
    return {"ok": True, "data": {"date": target_date.isoformat(), "unblocked": bool(deleted)}}


def serialize_booking(booking: Booking) -> dict[str, Any]:
    return {
        "id": booking.id,
        "reference": booking.booking_reference,
        "client_name": booking.client_name,
        "client_email": booking.client_email,
        "client_phone": booking.client_phone,
        "event_type": booking.event_type,
        "event_date": booking.event_date.isoformat(),
        "start_time": booking.start_time.strftime("%H:%M"),
        "end_time": booking.end_time.strftime("%H:%M"),
        "services": list(booking.services or []),
        "status": booking.status,
        "buffer_minutes": booking.buffer_minutes,
        "setup_lead_minutes": booking.setup_lead_minutes,
        "notes": booking.notes,
    }


def _unavailable_response(check: SlotCheck) -> dict[str, Any]:
    return {
        "ok": False,
        "error_code": "SLOT_UNAVAILABLE",
        "human_message": check.blocked_reason or "Requested time conflicts with an existing booking.",
        "availability": check.to_dict(),
    }


def _slot_taken_response(
    engine: AvailabilityEngine,
    event_date: date,
    start_time: str,
    end_time: str,
    services: list[str],
    exclude_booking_id: int | None = None,
) -> dict[str, Any]:
    engine.cache.invalidate(DateRange.single(event_date))
    recheck = engine.check_slot(
        event_date,
        start_time,
        end_time,
        services,
        use_cache=False,
        exclude_booking_id=exclude_booking_id,
    )
    return {**SlotTaken().to_response(), "availability": recheck.to_dict()}


def _is_slot_uniqueness_violation(exc: IntegrityError) -> bool:
    message = str(exc).lower()
    return "uq_bookings_active_slot" in message or "bookings.event_date" in message


def _not_found() -> dict[str, Any]:
    return {
        "ok": False,
        "error_code": "BOOKING_NOT_FOUND",
        "human_message": "Booking not found.",
    }
