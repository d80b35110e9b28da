"""
Alternative slot search for a conflicting request.

Candidates keep the requested duration and sit on the slot grid inside
business hours. The search widens in tiers: the requested day first (later
starts, then earlier starts), then day +/-1, +/-2, ... up to the search
window, stopping at the first tier that fills the quota. The returned list is
ordered by distance from the requested start, then chronologically.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Sequence

from app.availability.conflicts import ConflictPolicy, classify, is_available
from app.availability.settings import EngineSettings
from app.availability.slots import TimeSlot, business_window
from app.availability.store import BookingSnapshot


RESOLVED = "RESOLVED"
NO_CONFLICT = "NO_CONFLICT"
MANUAL_RESOLUTION_REQUIRED = "MANUAL_RESOLUTION_REQUIRED"


@dataclass(frozen=True)
class Resolution:
    resolved: bool
    outcome: str
    alternatives: tuple[TimeSlot, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "resolved": self.resolved,
            "outcome": self.outcome,
            "alternatives": [slot.to_dict() for slot in self.alternatives],
        }


def suggest_alternatives(
    candidate: TimeSlot,
    conflicts: Sequence,
    bookings: Iterable[BookingSnapshot],
    policy: ConflictPolicy,
    settings: EngineSettings,
    search_window_days: int | None = None,
    max_results: int | None = None,
    is_open: Callable[[date], bool] | None = None,
    now: datetime | None = None,
) -> Resolution:
    """
    Args:
        candidate: The requested slot
        conflicts: Conflicts already found for the requested slot
        bookings: Bookings covering the whole search window
        is_open: Extra day filter (past dates, admin blocks)
        now: Naive business-local time; starts at or before it are skipped
    """
    if is_available(conflicts):
        return Resolution(resolved=True, outcome=NO_CONFLICT)

    window = settings.search_window_days if search_window_days is None else search_window_days
    limit = settings.max_alternatives if max_results is None else max_results
    if limit <= 0:
        return Resolution(resolved=False, outcome=MANUAL_RESOLUTION_REQUIRED)

    by_date: dict[date, list[BookingSnapshot]] = {}
    for booking in bookings:
        by_date.setdefault(booking.event_date, []).append(booking)

    requested_start = candidate.start_datetime()
    found: list[TimeSlot] = []
    for tier in _search_tiers(candidate.date, window):
        for day in tier:
            if is_open is not None and not is_open(day):
                continue
            for slot in _day_candidates(candidate, day, settings):
                if slot == candidate:
                    continue
                if now is not None and slot.start_datetime() <= now:
                    continue
                if is_available(classify(slot, by_date.get(day, ()), policy)):
                    found.append(slot)
        if len(found) >= limit:
            break

    if not found:
        return Resolution(resolved=False, outcome=MANUAL_RESOLUTION_REQUIRED)

    found.sort(key=lambda slot: (_distance(slot, requested_start), slot.start_datetime()))
    return Resolution(resolved=True, outcome=RESOLVED, alternatives=tuple(found[:limit]))


def _search_tiers(origin: date, window: int) -> list[list[date]]:
    tiers = [[origin]]
    for offset in range(1, window + 1):
        tiers.append([origin + timedelta(days=offset), origin - timedelta(days=offset)])
    return tiers


def _day_candidates(candidate: TimeSlot, day: date, settings: EngineSettings) -> list[TimeSlot]:
    window = business_window(day, settings)
    if window is None:
        return []
    open_minute, close_minute = window
    step = settings.granularity_minutes
    duration = candidate.duration_minutes

    starts = range(open_minute, close_minute - duration + 1, step)
    if day != candidate.date:
        return [candidate.shifted(day, start) for start in starts]

    later = [s for s in starts if s > candidate.start_minute]
    earlier = [s for s in reversed(starts) if s < candidate.start_minute]
    return [candidate.shifted(day, start) for start in later + earlier]


def _distance(slot: TimeSlot, requested_start: datetime) -> float:
    return abs((slot.start_datetime() - requested_start).total_seconds())
