from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Sequence

from app.availability.broadcaster import UpdateBroadcaster
from app.availability.cache import AvailabilityCache, CacheKey
from app.availability.conflicts import (
    Conflict,
    ConflictPolicy,
    DayRecord,
    SlotAvailability,
    build_day_record,
    classify,
    conflict_to_dict,
    is_available,
    slot_availability_to_dict,
)
from app.availability.errors import InvalidRange, OperationCancelled
from app.availability.resolver import Resolution, suggest_alternatives
from app.availability.settings import EngineSettings
from app.availability.slots import (
    DateRange,
    TimeSlot,
    business_window,
    normalize_services,
    parse_date,
    parse_interval,
)
from app.availability.store import AvailabilityStore, BookingSnapshot, CalendarBlockSnapshot


logger = logging.getLogger("bookingengine.availability.engine")

PAST_DATE = "Past date"
PAST_TIME = "Past time"
CLOSED = "Closed"
OUTSIDE_HOURS = "Outside business hours"
FULLY_BOOKED = "Fully booked"
BLOCKED_BY_ADMIN = "Blocked by admin"


class CancellationToken:
    """Cooperative cancellation flag shared between a request and its worker."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled()


@dataclass(frozen=True)
class DayStatus:
    date: date
    is_available: bool
    blocked_reason: str | None = None
    booking: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "isAvailable": self.is_available,
            "blockedReason": self.blocked_reason,
            "booking": self.booking,
        }


@dataclass(frozen=True)
class RangeAvailability:
    start_date: date
    end_date: date
    days: tuple[DayStatus, ...]
    bookings: tuple[dict[str, Any], ...] | None = None

    @property
    def total_days(self) -> int:
        return len(self.days)

    @property
    def available_days(self) -> int:
        return sum(1 for day in self.days if day.is_available)

    @property
    def booked_days(self) -> int:
        return self.total_days - self.available_days

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "startDate": self.start_date.isoformat(),
            "endDate": self.end_date.isoformat(),
            "calendar": [day.to_dict() for day in self.days],
            "totalDays": self.total_days,
            "availableDays": self.available_days,
            "bookedDays": self.booked_days,
        }
        if self.bookings is not None:
            payload["bookings"] = list(self.bookings)
        return payload


@dataclass(frozen=True)
class SlotCheck:
    slot: TimeSlot
    services: tuple[str, ...]
    available: bool
    conflicts: tuple[Conflict, ...] = ()
    resolution: Resolution | None = None
    blocked_reason: str | None = None

    @property
    def alternatives(self) -> tuple[TimeSlot, ...]:
        return self.resolution.alternatives if self.resolution else ()

    def to_dict(self) -> dict[str, Any]:
        conflicts = []
        for conflict in self.conflicts:
            alternatives = self.alternatives if conflict.hard else ()
            conflicts.append(conflict_to_dict(conflict, alternatives))
        payload: dict[str, Any] = {
            "date": self.slot.date.isoformat(),
            "start_time": self.slot.start,
            "end_time": self.slot.end,
            "services": list(self.services),
            "available": self.available,
            "blocked_reason": self.blocked_reason,
            "conflicts": conflicts,
            "buffer_violations": [
                c.booking_id for c in self.conflicts if c.kind == "buffer-violation"
            ],
        }
        if self.resolution is not None:
            payload["resolution"] = self.resolution.to_dict()
        return payload


def booking_summary(booking: BookingSnapshot) -> dict[str, Any]:
    return {
        "id": booking.id,
        "clientName": booking.client_name,
        "eventType": booking.event_type,
        "start": TimeSlot(booking.event_date, booking.start_minute, booking.end_minute).start,
        "end": TimeSlot(booking.event_date, booking.start_minute, booking.end_minute).end,
        "status": booking.status,
    }


class AvailabilityEngine:
    """
    Availability service object.

    One instance per process (or per test). Owns the cache and the update
    broadcaster; reads bookings through the store.
    """

    def __init__(
        self,
        store: AvailabilityStore,
        settings: EngineSettings,
        cache: AvailabilityCache | None = None,
        broadcaster: UpdateBroadcaster | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.settings = settings
        self.policy = ConflictPolicy.from_settings(settings)
        self.cache = cache or AvailabilityCache(default_ttl_seconds=settings.cache_ttl_seconds)
        self.broadcaster = broadcaster or UpdateBroadcaster()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ── Time ─────────────────────────────────────────────────────────────

    def now_local(self) -> datetime:
        return self.clock().astimezone(self.settings.tzinfo).replace(tzinfo=None)

    def today(self) -> date:
        return self.now_local().date()

    # ── Range check ──────────────────────────────────────────────────────

    def check_range(
        self,
        start_date: Any,
        end_date: Any,
        include_bookings: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> RangeAvailability:
        start = parse_date(start_date)
        end = parse_date(end_date)
        if start >= end:
            raise InvalidRange("startDate must be before endDate")

        date_range = DateRange(start, end)
        now = self.now_local()
        key = CacheKey(date_range, (), ("range", bool(include_bookings), now.date()))
        cached = self.cache.get(key)
        if cached is not None:
            return cached.value

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        generation = self.cache.generation()
        bookings = self.store.bookings_overlapping(date_range)
        blocks = self.store.blocks_in(date_range)

        by_date = _group_by_date(bookings)
        days = []
        for day in date_range.days():
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            days.append(
                self._day_status(day, by_date.get(day, []), blocks.get(day), now, include_bookings)
            )

        result = RangeAvailability(
            start_date=start,
            end_date=end,
            days=tuple(days),
            bookings=(
                tuple(booking_summary(b) for b in bookings if b.constrains)
                if include_bookings
                else None
            ),
        )
        self.cache.put(key, result, generation=generation)
        return result

    def _day_status(
        self,
        day: date,
        bookings: Sequence[BookingSnapshot],
        block: CalendarBlockSnapshot | None,
        now: datetime,
        include_bookings: bool,
    ) -> DayStatus:
        summary = None
        if include_bookings:
            confirmed = [b for b in bookings if b.is_hard]
            if confirmed:
                summary = booking_summary(confirmed[0])

        if day < now.date():
            return DayStatus(day, False, PAST_DATE, summary)
        if block is not None:
            return DayStatus(day, False, block.reason or BLOCKED_BY_ADMIN, summary)
        if business_window(day, self.settings) is None:
            return DayStatus(day, False, CLOSED, summary)
        if not self._has_open_window(day, bookings, now):
            return DayStatus(day, False, FULLY_BOOKED, summary)
        return DayStatus(day, True, None, summary)

    def _has_open_window(
        self,
        day: date,
        bookings: Sequence[BookingSnapshot],
        now: datetime,
    ) -> bool:
        window = business_window(day, self.settings)
        if window is None:
            return False
        open_minute, close_minute = window
        duration = self.settings.min_event_minutes
        for start in range(open_minute, close_minute - duration + 1, self.settings.granularity_minutes):
            slot = TimeSlot(day, start, start + duration)
            if slot.start_datetime() <= now:
                continue
            if is_available(classify(slot, bookings, self.policy)):
                return True
        return False

    # ── Fine-grained check ───────────────────────────────────────────────

    def check_slot(
        self,
        target_date: Any,
        start_time: Any,
        end_time: Any,
        services: Iterable[str],
        use_cache: bool = True,
        exclude_booking_id: int | None = None,
    ) -> SlotCheck:
        """
        Classify one requested window. exclude_booking_id ignores a booking
        being rescheduled and always bypasses the cache.
        """
        day = parse_date(target_date)
        start_minute, end_minute = parse_interval(start_time, end_time)
        service_set = normalize_services(services)
        slot = TimeSlot(day, start_minute, end_minute)

        now = self.now_local()
        if day < now.date():
            return SlotCheck(slot, service_set, False, blocked_reason=PAST_DATE)
        if slot.start_datetime() <= now:
            return SlotCheck(slot, service_set, False, blocked_reason=PAST_TIME)

        window = business_window(day, self.settings)
        if window is None:
            return SlotCheck(slot, service_set, False, blocked_reason=CLOSED)
        if start_minute < window[0] or end_minute > window[1]:
            return SlotCheck(slot, service_set, False, blocked_reason=OUTSIDE_HOURS)

        if exclude_booking_id is not None:
            use_cache = False

        search_range = DateRange.around(day, self.settings.search_window_days)
        key = CacheKey(search_range, service_set, ("slot", start_minute, end_minute, now.date()))
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached.value

        generation = self.cache.generation()
        result = self._compute_slot_check(slot, service_set, search_range, now, exclude_booking_id)
        if use_cache:
            self.cache.put(key, result, generation=generation)
        return result

    def _compute_slot_check(
        self,
        slot: TimeSlot,
        services: tuple[str, ...],
        search_range: DateRange,
        now: datetime,
        exclude_booking_id: int | None = None,
    ) -> SlotCheck:
        bookings = [
            b for b in self.store.bookings_overlapping(search_range) if b.id != exclude_booking_id
        ]
        blocks = self.store.blocks_in(search_range)

        block = blocks.get(slot.date)
        if block is not None:
            return SlotCheck(slot, services, False, blocked_reason=block.reason or BLOCKED_BY_ADMIN)

        conflicts = classify(slot, bookings, self.policy)
        if is_available(conflicts):
            return SlotCheck(slot, services, True, conflicts=tuple(conflicts))

        resolution = suggest_alternatives(
            candidate=slot,
            conflicts=conflicts,
            bookings=bookings,
            policy=self.policy,
            settings=self.settings,
            is_open=lambda day: day >= now.date() and day not in blocks,
            now=now,
        )
        if not resolution.resolved:
            logger.info(
                "No alternative found for %s %s-%s within %s days",
                slot.date,
                slot.start,
                slot.end,
                self.settings.search_window_days,
            )
        return SlotCheck(slot, services, False, conflicts=tuple(conflicts), resolution=resolution)

    # ── Day grid ─────────────────────────────────────────────────────────

    def day_slots(self, target_date: Any) -> DayRecord:
        day = parse_date(target_date)
        now = self.now_local()
        key = CacheKey(DateRange.single(day), (), ("day", now.date()))
        cached = self.cache.get(key)
        if cached is not None:
            return cached.value

        generation = self.cache.generation()
        if day < now.date():
            record = DayRecord(date=day, slots=(), blocked_reason=PAST_DATE)
        else:
            day_range = DateRange.single(day)
            block = self.store.blocks_in(day_range).get(day)
            if block is not None:
                record = DayRecord(date=day, slots=(), blocked_reason=block.reason or BLOCKED_BY_ADMIN)
            else:
                bookings = self.store.bookings_overlapping(day_range)
                record = _mark_past_slots(
                    build_day_record(day, bookings, self.policy, self.settings), now
                )

        self.cache.put(key, record, generation=generation)
        return record

    # ── Mutation hook ────────────────────────────────────────────────────

    def booking_mutated(self, dates: Iterable[date], payload: dict[str, Any]) -> None:
        """Invalidate cached availability and notify subscribers for every touched date."""
        for day in sorted(set(dates)):
            self.cache.invalidate(DateRange.single(day))
            delivered = self.broadcaster.notify(day, {**payload, "date": day.isoformat()})
            logger.info(
                "Availability update event=%s date=%s delivered=%s",
                payload.get("event"),
                day,
                delivered,
            )


def day_record_to_dict(record: DayRecord) -> dict[str, Any]:
    return {
        "date": record.date.isoformat(),
        "blocked_reason": record.blocked_reason,
        "slots": [slot_availability_to_dict(item) for item in record.slots],
    }


def _mark_past_slots(record: DayRecord, now: datetime) -> DayRecord:
    if record.date != now.date():
        return record
    slots = []
    for item in record.slots:
        if item.slot.start_datetime() <= now:
            item = SlotAvailability(
                slot=item.slot,
                available=False,
                conflicts=item.conflicts,
                blocked_reason=PAST_TIME,
            )
        slots.append(item)
    return DayRecord(date=record.date, slots=tuple(slots), blocked_reason=record.blocked_reason)


def _group_by_date(bookings: Iterable[BookingSnapshot]) -> dict[date, list[BookingSnapshot]]:
    grouped: dict[date, list[BookingSnapshot]] = {}
    for booking in bookings:
        grouped.setdefault(booking.event_date, []).append(booking)
    return grouped
