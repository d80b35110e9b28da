from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.availability.errors import StoreUnavailable
from app.availability.slots import DateRange, parse_clock_time
from app.db.models import Booking, CalendarBlock


logger = logging.getLogger("bookingengine.availability.store")

HARD_STATUSES = frozenset({"CONFIRMED"})
ADVISORY_STATUSES = frozenset({"PENDING"})


@dataclass(frozen=True)
class BookingSnapshot:
    id: int
    event_date: date
    start_minute: int
    end_minute: int
    services: tuple[str, ...]
    status: str
    buffer_minutes: int | None = None
    setup_lead_minutes: int | None = None
    client_name: str | None = None
    event_type: str | None = None

    @property
    def is_hard(self) -> bool:
        """Only CONFIRMED bookings block a slot outright."""
        return self.status in HARD_STATUSES

    @property
    def is_advisory(self) -> bool:
        return self.status in ADVISORY_STATUSES

    @property
    def constrains(self) -> bool:
        return self.is_hard or self.is_advisory


@dataclass(frozen=True)
class CalendarBlockSnapshot:
    date: date
    reason: str | None


def snapshot_booking(row: Any) -> BookingSnapshot:
    return BookingSnapshot(
        id=row.id,
        event_date=row.event_date,
        start_minute=parse_clock_time(row.start_time),
        end_minute=parse_clock_time(row.end_time),
        services=tuple(row.services or ()),
        status=str(row.status or "").upper(),
        buffer_minutes=row.buffer_minutes,
        setup_lead_minutes=row.setup_lead_minutes,
        client_name=getattr(row, "client_name", None),
        event_type=getattr(row, "event_type", None),
    )


class AvailabilityStore:
    """Read-only view over bookings and calendar blocks."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def bookings_overlapping(self, date_range: DateRange) -> list[BookingSnapshot]:
        db = self.session_factory()
        try:
            rows = (
                db.query(Booking)
                .filter(Booking.event_date >= date_range.start)
                .filter(Booking.event_date <= date_range.end)
                .order_by(Booking.event_date, Booking.start_time, Booking.id)
                .all()
            )
            return [snapshot_booking(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception(
                "Booking lookup failed for %s..%s", date_range.start, date_range.end
            )
            raise StoreUnavailable() from exc
        finally:
            db.close()

    def blocks_in(self, date_range: DateRange) -> dict[date, CalendarBlockSnapshot]:
        db = self.session_factory()
        try:
            rows = (
                db.query(CalendarBlock)
                .filter(CalendarBlock.blocked_date >= date_range.start)
                .filter(CalendarBlock.blocked_date <= date_range.end)
                .all()
            )
            return {
                row.blocked_date: CalendarBlockSnapshot(date=row.blocked_date, reason=row.reason)
                for row in rows
            }
        except SQLAlchemyError as exc:
            logger.exception(
                "Calendar block lookup failed for %s..%s", date_range.start, date_range.end
            )
            raise StoreUnavailable() from exc
        finally:
            db.close()
