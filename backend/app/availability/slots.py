from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Iterator

import dateparser

from app.availability.errors import InvalidInput, InvalidRange
from app.availability.settings import SERVICE_CATALOGUE, EngineSettings


MINUTES_PER_DAY = 24 * 60
_TIME_24H = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)(?::00)?$")


@dataclass(frozen=True, order=True)
class TimeSlot:
    date: date
    start_minute: int
    end_minute: int

    @property
    def start(self) -> str:
        return minutes_to_time_str(self.start_minute)

    @property
    def end(self) -> str:
        return minutes_to_time_str(self.end_minute)

    @property
    def duration_minutes(self) -> int:
        return self.end_minute - self.start_minute

    def start_datetime(self) -> datetime:
        return datetime.combine(self.date, time.min) + timedelta(minutes=self.start_minute)

    def shifted(self, target_date: date, start_minute: int) -> "TimeSlot":
        return TimeSlot(target_date, start_minute, start_minute + self.duration_minutes)

    def to_dict(self) -> dict[str, str]:
        return {"date": self.date.isoformat(), "start": self.start, "end": self.end}


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates."""

    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise InvalidRange("Date range start must not be after its end.")

    @classmethod
    def single(cls, target_date: date) -> "DateRange":
        return cls(target_date, target_date)

    @classmethod
    def around(cls, target_date: date, days: int) -> "DateRange":
        return cls(target_date - timedelta(days=days), target_date + timedelta(days=days))

    def intersects(self, other: "DateRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def contains(self, target_date: date) -> bool:
        return self.start <= target_date <= self.end

    def days(self) -> Iterator[date]:
        current = self.start
        while current <= self.end:
            yield current
            current += timedelta(days=1)

    @property
    def total_days(self) -> int:
        return (self.end - self.start).days + 1


def generate_slots(
    target_date: Any,
    settings: EngineSettings,
    granularity_minutes: int | None = None,
) -> tuple[TimeSlot, ...]:
    """Fixed-granularity slots inside business hours for the weekday of target_date."""
    day = parse_date(target_date)
    step = granularity_minutes or settings.granularity_minutes
    if step <= 0 or MINUTES_PER_DAY % step != 0:
        raise InvalidInput(f"Invalid slot granularity: {step} minutes.")

    hours = settings.hours_for(day.weekday())
    if hours is None:
        return ()

    open_minute, close_minute = hours[0] * 60, hours[1] * 60
    return tuple(
        TimeSlot(day, minute, minute + step)
        for minute in range(open_minute, close_minute - step + 1, step)
    )


def business_window(target_date: date, settings: EngineSettings) -> tuple[int, int] | None:
    hours = settings.hours_for(target_date.weekday())
    if hours is None:
        return None
    return hours[0] * 60, hours[1] * 60


def parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError as exc:
            raise InvalidInput(f"Invalid date: {value!r}. Use YYYY-MM-DD.") from exc
    raise InvalidInput(f"Invalid date: {value!r}.")


def parse_clock_time(value: Any) -> int:
    """Minutes since midnight for "HH:MM", "h:mm AM/PM" or a time object."""
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"Invalid time: {value!r}.")

    text = value.strip()
    match = _TIME_24H.match(text)
    if match:
        return int(match.group(1)) * 60 + int(match.group(2))

    if not re.search(r"\d", text) or not re.search(r"(?i)\b[ap]\.?m\.?\b|[ap]m$", text):
        raise InvalidInput(f"Invalid time: {value!r}. Use HH:MM or h:mm AM/PM.")

    parsed = dateparser.parse(
        text,
        languages=["en"],
        settings={"RELATIVE_BASE": datetime(2000, 1, 1), "RETURN_AS_TIMEZONE_AWARE": False},
    )
    if parsed is None:
        raise InvalidInput(f"Invalid time: {value!r}. Use HH:MM or h:mm AM/PM.")
    return parsed.hour * 60 + parsed.minute


def parse_interval(start: Any, end: Any) -> tuple[int, int]:
    start_minute = parse_clock_time(start)
    end_minute = parse_clock_time(end)
    if start_minute >= end_minute:
        raise InvalidRange("Start time must be before end time.")
    return start_minute, end_minute


def normalize_services(services: Iterable[str] | None) -> tuple[str, ...]:
    if services is None or isinstance(services, str):
        raise InvalidInput("Services must be a list of service names.")
    cleaned: set[str] = set()
    for service in services:
        if not isinstance(service, str) or not service.strip():
            raise InvalidInput("Service names must be non-empty strings.")
        name = service.strip().upper()
        if name not in SERVICE_CATALOGUE:
            raise InvalidInput(f"Unknown service: {service}.")
        cleaned.add(name)
    if not cleaned:
        raise InvalidInput("At least one service is required.")
    return tuple(sorted(cleaned))


def minutes_to_time_str(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def minutes_to_time(minutes: int) -> time:
    if not 0 <= minutes < MINUTES_PER_DAY:
        raise InvalidInput(f"Time out of range: {minutes} minutes.")
    return time(minutes // 60, minutes % 60)
